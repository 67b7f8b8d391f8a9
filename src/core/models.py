"""
Boundary layer data model(s).

These objects can be used to communicate with the Services.
Hence, the realtime layer (higher) and the db layer (lower) will use model(s) defined here to send to/receive from the Services
(Decouples the data model specific to the DB layer or the transport layer from the information needed to send across boundaries)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from src.core.shared_types import (
    Color,
    GameResult,
    GameStatus,
    ResultReason,
    UserStatus,
)

STARTING_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlayerModel:
    """One seat at the board, with a snapshot of the rating the player had when the game was created."""

    user_id: UUID
    username: str
    color: Color
    rating: int
    time_remaining: int
    draw_offered: bool = False
    disconnected: bool = False


@dataclass
class MoveRecord:
    """Entry of the append-only move log."""

    from_square: str
    to_square: str
    piece: str
    color: Color
    san: str
    uci: str
    timestamp: datetime
    captured: Optional[str] = None
    promotion: Optional[str] = None


@dataclass
class GameModel:
    """Transport-safe representation of a persisted game record."""

    players: list[PlayerModel]
    moves: list[MoveRecord]
    position: str
    move_log: str
    status: GameStatus
    time_control: str
    is_ranked: bool
    result: Optional[GameResult] = None
    result_reason: Optional[ResultReason] = None
    draw_offers: list[UUID] = field(default_factory=list)
    last_move_at: Optional[datetime] = None
    starting_position: str = STARTING_FEN

    def player(self, user_id: UUID) -> Optional[PlayerModel]:
        return next((p for p in self.players if p.user_id == user_id), None)

    def player_by_color(self, color: Color) -> PlayerModel:
        return next(p for p in self.players if p.color == color)


@dataclass
class UserModel:
    """The parts of an account record this application reads and writes."""

    user_id: UUID
    username: str
    rating: int = 1200
    games_played: int = 0
    games_won: int = 0
    games_lost: int = 0
    games_drawn: int = 0
    status: UserStatus = UserStatus.OFFLINE
    last_active: Optional[datetime] = None
    current_game_id: Optional[UUID] = None

    @property
    def win_rate(self) -> int:
        """Percentage of games won, rounded."""
        if self.games_played == 0:
            return 0
        return round(self.games_won / self.games_played * 100)
