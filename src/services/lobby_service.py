"""Matchmaking and lobby queries: pairing waiting players, and who is around."""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from src.api.models import (
    ActivePlayer,
    GameSummary,
    MatchedPlayer,
    MatchResponse,
    PlayerView,
    RankingEntry,
)
from src.core.config import Settings
from src.core.exceptions import (
    GameError,
    MatchCreationError,
    PlayerNotFoundError,
    RepositoryError,
)
from src.core.models import utc_now
from src.core.shared_types import MatchMode, UserStatus
from src.db.repository import GameRepository, UserRepository
from src.services.matchmaking import Match, MatchmakingQueue
from src.services.session_registry import GameOptions, SessionRegistry

logger = logging.getLogger(__name__)


class LobbyService:
    def __init__(
        self,
        registry: SessionRegistry,
        queue: MatchmakingQueue,
        games: GameRepository,
        users: UserRepository,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.queue = queue
        self.games = games
        self.users = users
        self.settings = settings or Settings()

    # --- matchmaking ---
    async def enqueue_for_match(
        self, user_id: UUID, mode: MatchMode, time_control: str
    ) -> Optional[MatchResponse]:
        """
        Put the user in the waiting list of 'mode' and try to pair them right away.
        ----
        Returns None while the user keeps waiting. On a match the game is created and both players are 'in_game'.
        If the game cannot be created both players are set back to 'online' and MatchCreationError is raised.
        """
        if self.users.get_user(user_id) is None:
            raise PlayerNotFoundError(f"User with id={user_id} not found.")

        self.users.set_status(user_id, UserStatus.LOOKING_FOR_MATCH)
        match = await self.queue.enqueue(user_id, mode, time_control)
        if match is None:
            return None
        return await self._start_game(match)

    async def cancel_matchmaking(self, user_id: UUID) -> bool:
        removed = await self.queue.dequeue(user_id)
        self.users.set_status(user_id, UserStatus.ONLINE)
        return removed

    def queue_position(self, user_id: UUID) -> Optional[int]:
        return self.queue.position(user_id)

    # --- lobby queries ---
    def get_active_players(self, limit: Optional[int] = None) -> list[ActivePlayer]:
        """Users not offline that were seen within the liveness threshold."""
        since = utc_now() - timedelta(seconds=self.settings.liveness_threshold_seconds)
        try:
            users = self.users.active_users(since, limit or self.settings.active_players_limit)
        except RepositoryError:
            logger.exception("Could not load the active players")
            return []
        return [ActivePlayer(id=u.user_id, username=u.username, status=u.status) for u in users]

    def count_online_users(self) -> int:
        try:
            return self.users.count_online()
        except RepositoryError:
            logger.exception("Could not count online users")
            return 0

    def mark_inactive_offline(self) -> list[UUID]:
        """Liveness sweep: users silent for longer than the threshold go offline."""
        cutoff = utc_now() - timedelta(seconds=self.settings.liveness_threshold_seconds)
        user_ids = self.users.mark_stale_offline(cutoff)
        if user_ids:
            logger.info("Marked %d inactive user(s) offline", len(user_ids))
        return user_ids

    def player_rankings(self, limit: int = 50) -> list[RankingEntry]:
        return [
            RankingEntry(
                rank=index + 1,
                id=user.user_id,
                username=user.username,
                rating=user.rating,
                games_played=user.games_played,
                games_won=user.games_won,
                games_lost=user.games_lost,
                games_drawn=user.games_drawn,
                win_rate=user.win_rate,
            )
            for index, user in enumerate(self.users.rankings(limit))
        ]

    def list_user_games(self, user_id: UUID, limit: int = 20) -> list[GameSummary]:
        return [
            GameSummary(
                game_id=game_id,
                players=[
                    PlayerView(
                        id=p.user_id,
                        username=p.username,
                        color=p.color,
                        rating=p.rating,
                        time_remaining=p.time_remaining,
                        disconnected=p.disconnected,
                    )
                    for p in game.players
                ],
                status=game.status,
                result=game.result,
                result_reason=game.result_reason,
                time_control=game.time_control,
                is_ranked=game.is_ranked,
                move_count=len(game.moves),
                last_move_at=game.last_move_at,
            )
            for game_id, game in self.games.games_for_user(user_id, limit)
        ]

    # -- Internal helpers --
    async def _start_game(self, match: Match) -> MatchResponse:
        options = GameOptions(match.time_control, is_ranked=match.mode == MatchMode.RANKED)
        try:
            game_id = await self.registry.create(*match.user_ids, options)
        except (GameError, RepositoryError) as e:
            logger.error("Could not create a game for %s and %s: %s", *match.user_ids, e)
            self._revert_to_online(match.user_ids)
            raise MatchCreationError("Failed to create game.", match.user_ids) from e

        for user_id in match.user_ids:
            try:
                self.users.set_status(user_id, UserStatus.IN_GAME, game_id)
            except RepositoryError:
                logger.exception("Could not mark user %s as in game", user_id)

        session = await self.registry.get(game_id)
        return MatchResponse(
            game_id=game_id,
            mode=match.mode,
            time_control=match.time_control,
            players=[
                MatchedPlayer(id=p.user_id, username=p.username, color=p.color, rating=p.rating)
                for p in session.players
            ],
        )

    def _revert_to_online(self, user_ids: tuple[UUID, UUID]) -> None:
        for user_id in user_ids:
            try:
                self.users.set_status(user_id, UserStatus.ONLINE)
            except RepositoryError:
                logger.exception("Could not reset the status of user %s", user_id)
