"""Protocol repositories: the Game Store and User Directory as seen by the services."""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from src.core.models import GameModel, UserModel
from src.core.shared_types import UserStatus


class GameRepository(Protocol):
    """Persistence of game records"""

    def get_game(self, game_id: UUID) -> GameModel | None:
        """Get game by ID, if record exists."""
        ...

    def create_game(self, game: GameModel) -> tuple[GameModel, UUID]:
        """Store new game and return the stored data + newly created game ID."""
        ...

    def update_game(self, game_id: UUID, game: GameModel) -> GameModel | None:
        """Overwrite an existing record."""
        ...

    def games_for_user(self, user_id: UUID, limit: int = 20) -> list[tuple[UUID, GameModel]]:
        """Games the user took part in, most recent first."""
        ...


class UserRepository(Protocol):
    """Persistence of the account fields the game server cares about"""

    def get_user(self, user_id: UUID) -> UserModel | None:
        ...

    def get_user_by_username(self, username: str) -> UserModel | None:
        ...

    def create_user(self, user: UserModel) -> UserModel:
        ...

    def set_status(
        self,
        user_id: UUID,
        status: UserStatus,
        current_game_id: Optional[UUID] = None,
        touch: bool = True,
    ) -> UserModel | None:
        """Change the presence status (and the game the user is in). 'touch' also refreshes last_active."""
        ...

    def touch(self, user_id: UUID) -> None:
        """Refresh last_active."""
        ...

    def record_result(
        self, user_id: UUID, score: float, new_rating: Optional[int] = None
    ) -> UserModel | None:
        """Atomically bump the game counters for one finished game (score 1, 0.5 or 0) and optionally store a new rating."""
        ...

    def active_users(self, since: datetime, limit: int) -> list[UserModel]:
        """Users not offline and seen after 'since', most recently active first."""
        ...

    def count_online(self) -> int:
        ...

    def mark_stale_offline(self, cutoff: datetime) -> list[UUID]:
        """Set every non-offline user whose last_active is before 'cutoff' to offline. Returns the affected IDs."""
        ...

    def rankings(self, limit: int) -> list[UserModel]:
        """Users with at least one finished game, by wins (desc) then games played (asc)."""
        ...
