"""
In-memory registry of live game sessions.

Each session wraps a rules oracle plus the player/status metadata needed to answer questions without a
round trip to the Game Store. All mutations of one game go through `locked()`, which serializes them per game ID.
"""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional
from uuid import UUID

from src.core.config import Settings
from src.core.exceptions import GameNotFoundError, PlayerNotFoundError
from src.core.models import STARTING_FEN, GameModel, PlayerModel
from src.core.shared_types import Color, GameStatus
from src.core.time_control import time_control_seconds
from src.db.repository import GameRepository, UserRepository
from src.rules.oracle import RulesOracle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GameOptions:
    time_control: str
    is_ranked: bool = False


@dataclass(frozen=True)
class SessionPlayer:
    user_id: UUID
    username: str
    color: Color
    rating: int


@dataclass
class GameSession:
    """Live representation of one game. Lives only in process memory."""

    session_id: UUID
    oracle: RulesOracle
    players: tuple[SessionPlayer, SessionPlayer]
    status: GameStatus
    options: GameOptions
    last_activity: float
    undo_requested_by: Optional[UUID] = None

    def player(self, user_id: UUID) -> Optional[SessionPlayer]:
        return next((p for p in self.players if p.user_id == user_id), None)

    def player_by_color(self, color: Color) -> SessionPlayer:
        return next(p for p in self.players if p.color == color)

    @property
    def is_over(self) -> bool:
        return self.status in (GameStatus.COMPLETED, GameStatus.ABORTED)


class SessionRegistry:
    """Cache of live sessions in front of the Game Store."""

    def __init__(
        self,
        games: GameRepository,
        users: UserRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.games = games
        self.users = users
        self.settings = settings or Settings()
        self.clock = clock
        self.rng = rng or random.Random()
        self._sessions: dict[UUID, GameSession] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}
        # operations holding or waiting for a game lock
        self._pending: dict[UUID, int] = {}

    def __contains__(self, game_id: UUID) -> bool:
        return game_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # --- reads ---
    async def get(self, game_id: UUID) -> GameSession:
        """Cached session (activity refreshed), or one rebuilt from the Game Store on a cache miss."""
        session = self._sessions.get(game_id)
        if session is not None:
            session.last_activity = self.clock()
            return session

        model = self.games.get_game(game_id)
        if model is None:
            raise GameNotFoundError(f"Game with {game_id=} not found.")

        session = self._build_session(game_id, model)
        self._sessions[game_id] = session
        logger.debug("Loaded game %s into the session registry", game_id)
        return session

    # --- writes ---
    async def create(
        self, player1_id: UUID, player2_id: UUID, options: GameOptions
    ) -> UUID:
        """Persist a new game between two users (colors drawn at random) and cache its session."""
        player1 = self.users.get_user(player1_id)
        player2 = self.users.get_user(player2_id)
        if player1 is None or player2 is None:
            missing = player1_id if player1 is None else player2_id
            raise PlayerNotFoundError(f"User with id={missing} not found.")

        white, black = (player1, player2) if self.rng.random() < 0.5 else (player2, player1)
        seconds = time_control_seconds(options.time_control)
        oracle = RulesOracle.reconstruct(STARTING_FEN)
        model = GameModel(
            players=[
                PlayerModel(white.user_id, white.username, Color.WHITE, white.rating, seconds),
                PlayerModel(black.user_id, black.username, Color.BLACK, black.rating, seconds),
            ],
            moves=[],
            position=oracle.position,
            move_log=oracle.pgn(),
            status=GameStatus.ACTIVE,
            time_control=options.time_control,
            is_ranked=options.is_ranked,
        )
        stored, game_id = self.games.create_game(model)

        self._sessions[game_id] = self._build_session(game_id, stored, oracle)
        logger.info(
            "Game %s created: %s (white) vs %s (black), %s, %s",
            game_id,
            white.username,
            black.username,
            options.time_control,
            "ranked" if options.is_ranked else "casual",
        )
        return game_id

    @asynccontextmanager
    async def locked(self, game_id: UUID) -> AsyncIterator[GameSession]:
        """
        Exclusive access to one game's session.
        ----
        Operations on the same game ID run strictly one at a time, in arrival order (asyncio.Lock is FIFO).
        Other games are not blocked.
        """
        lock = self._locks.setdefault(game_id, asyncio.Lock())
        self._pending[game_id] = self._pending.get(game_id, 0) + 1
        try:
            async with lock:
                yield await self.get(game_id)
        finally:
            self._pending[game_id] -= 1
            if not self._pending[game_id]:
                del self._pending[game_id]
                if game_id not in self._sessions:
                    self._locks.pop(game_id, None)

    def discard(self, game_id: UUID) -> None:
        """Drop the cached session so the next read reloads it from the Game Store."""
        self._sessions.pop(game_id, None)

    # --- cache maintenance ---
    def evict_inactive(self) -> list[UUID]:
        """Remove sessions idle longer than the inactivity window. Games with an operation in flight are skipped."""
        cutoff = self.clock() - self.settings.session_inactivity_seconds
        evicted = []
        for game_id, session in list(self._sessions.items()):
            if session.last_activity >= cutoff:
                continue
            if game_id in self._pending:
                continue
            del self._sessions[game_id]
            self._locks.pop(game_id, None)
            evicted.append(game_id)

        if evicted:
            logger.info(
                "Evicted %d inactive session(s). Active sessions: %d",
                len(evicted),
                len(self._sessions),
            )
        return evicted

    async def run_eviction(self) -> None:
        """Background loop; cancel the task to stop it."""
        while True:
            await asyncio.sleep(self.settings.eviction_period_seconds)
            self.evict_inactive()

    # -- Internal helpers --
    def _build_session(
        self, game_id: UUID, model: GameModel, oracle: Optional[RulesOracle] = None
    ) -> GameSession:
        white = model.player_by_color(Color.WHITE)
        black = model.player_by_color(Color.BLACK)
        return GameSession(
            session_id=game_id,
            oracle=oracle if oracle is not None else self._restore_oracle(game_id, model),
            players=(
                SessionPlayer(white.user_id, white.username, white.color, white.rating),
                SessionPlayer(black.user_id, black.username, black.color, black.rating),
            ),
            status=model.status,
            options=GameOptions(model.time_control, model.is_ranked),
            last_activity=self.clock(),
        )

    def _restore_oracle(self, game_id: UUID, model: GameModel) -> RulesOracle:
        """Replay the move log. Fall back to the stored position if the log does not reproduce it."""
        try:
            oracle = RulesOracle.replay(
                [move.uci for move in model.moves], model.starting_position
            )
        except ValueError as e:
            logger.warning("Move log of game %s cannot be replayed (%s)", game_id, e)
        else:
            if oracle.position == model.position:
                return oracle
            logger.warning(
                "Move log of game %s does not reproduce its stored position", game_id
            )
        return RulesOracle.reconstruct(model.position)
