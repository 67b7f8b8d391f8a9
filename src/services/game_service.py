"""
Move / result pipeline.

Orchestrates the session registry (live oracle), the Game Store and the User Directory for everything that
happens inside a game: moves, resignation, draws, timeouts, undo, and the rating update when a game ends.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from src.api.models import (
    DrawDeclinedResponse,
    DrawOfferResponse,
    GameOverResponse,
    GameView,
    MoveResponse,
    MoveView,
    PlayerView,
    UndoDeclinedResponse,
    UndoRequestResponse,
)
from src.core.config import Settings
from src.core.exceptions import (
    CannotAcceptOwnOfferError,
    GameAlreadyCompletedError,
    GameNotFoundError,
    IllegalMoveError,
    NoDrawOfferedError,
    NotAParticipantError,
    NothingToUndoError,
    NotYourTurnError,
    NoUndoRequestedError,
    RepositoryError,
)
from src.core.models import GameModel, MoveRecord, PlayerModel, utc_now
from src.core.shared_types import (
    Color,
    GameResult,
    GameStatus,
    ResultReason,
    UserStatus,
)
from src.db.repository import GameRepository, UserRepository
from src.rules.oracle import OracleMove, RulesOracle
from src.services.rating import scores_for, updated_ratings
from src.services.session_registry import (
    GameOptions,
    GameSession,
    SessionPlayer,
    SessionRegistry,
)

logger = logging.getLogger(__name__)


def terminal_result(oracle: RulesOracle) -> Optional[tuple[GameResult, ResultReason]]:
    """
    Translate the oracle's ending into a result, or None if the game goes on.
    ----
    Draw reasons are checked in a fixed priority: stalemate, repetition, insufficient material, fifty-move rule.
    """
    if not oracle.is_terminal():
        return None
    if oracle.is_checkmate():
        # the side to move is the side that got mated
        return GameResult.win_for(oracle.side_to_move.opponent), ResultReason.CHECKMATE

    draw_checks = [
        (oracle.is_stalemate, ResultReason.STALEMATE),
        (oracle.is_threefold_repetition, ResultReason.REPETITION),
        (oracle.is_insufficient_material, ResultReason.INSUFFICIENT_MATERIAL),
        (oracle.is_draw_by_rule, ResultReason.FIFTY_MOVE),
    ]
    for predicate, reason in draw_checks:
        if predicate():
            return GameResult.DRAW, reason
    return None


class GameService:
    """Orchestration of the layers for everything that happens inside one game."""

    def __init__(
        self,
        registry: SessionRegistry,
        games: GameRepository,
        users: UserRepository,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.games = games
        self.users = users
        self.settings = settings or Settings()

    # --- lifecycle ---
    async def create_game(
        self, player1_id: UUID, player2_id: UUID, options: GameOptions
    ) -> UUID:
        return await self.registry.create(player1_id, player2_id, options)

    async def get_game_view(self, game_id: UUID, user_id: Optional[UUID] = None) -> GameView:
        """Full current view of a game. When 'user_id' is given it must belong to one of the players."""
        session = await self.registry.get(game_id)
        if user_id is not None:
            self._participant(session, user_id)
        record = self._fetch_game(game_id)
        return self._game_view(game_id, session, record)

    # --- moves ---
    async def apply_move(
        self,
        game_id: UUID,
        user_id: UUID,
        from_square: str,
        to_square: str,
        promotion: Optional[str] = None,
    ) -> MoveResponse:
        """
        Validate and play a move
        -----
        1. the game must still be in progress and the user must be one of its players
        2. it must be the user's turn (side to move according to the oracle)
        3. the oracle decides legality
        4. append the move to the persisted log, store the new position and game text
        5. if the oracle reports the game is over: complete the game (and update ratings when ranked)
        """
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            player = self._participant(session, user_id)
            if session.oracle.side_to_move != player.color:
                raise NotYourTurnError(
                    f"It is not your turn. Waiting for {session.oracle.side_to_move} to move first."
                )

            record = self._fetch_game(game_id)
            move = session.oracle.apply_move(from_square, to_square, promotion)
            if move is None:
                suffix = f"={promotion}" if promotion else ""
                raise IllegalMoveError(f"Move not allowed: {from_square}-{to_square}{suffix}")

            now = utc_now()
            record.moves.append(_move_record(move, now))
            record.position = session.oracle.position
            record.move_log = session.oracle.pgn()
            record.last_move_at = now
            session.undo_requested_by = None

            ending = terminal_result(session.oracle)
            if ending is not None:
                self._mark_completed(record, *ending)
            self._save(game_id, record)
            logger.info("Game %s: %s played %s", game_id, player.username, move.san)

            if ending is not None:
                session.status = GameStatus.COMPLETED
                self._finish(game_id, record)

            return MoveResponse(
                game_id=game_id,
                last_move=_move_view(move),
                position=session.oracle.position,
                current_turn=session.oracle.side_to_move,
                in_check=session.oracle.in_check(),
                legal_moves={} if ending is not None else session.oracle.legal_move_map(),
                game_over=ending is not None,
                result=record.result,
                result_reason=record.result_reason,
            )

    # --- endings decided by the players ---
    async def resign(self, game_id: UUID, user_id: UUID) -> GameOverResponse:
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            player = self._participant(session, user_id)
            return self._complete(
                game_id,
                session,
                GameResult.win_for(player.color.opponent),
                ResultReason.RESIGNATION,
            )

    async def handle_timeout(self, game_id: UUID, player_id: UUID) -> GameOverResponse:
        """The player 'player_id' ran out of time: the opponent wins."""
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            player = self._participant(session, player_id)
            return self._complete(
                game_id,
                session,
                GameResult.win_for(player.color.opponent),
                ResultReason.TIMEOUT,
            )

    async def offer_draw(self, game_id: UUID, user_id: UUID) -> DrawOfferResponse:
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            record = self._fetch_game(game_id)
            if user_id not in record.draw_offers:
                record.draw_offers.append(user_id)
                _set_draw_flag(record, user_id, True)
                self._save(game_id, record)
                logger.info("Game %s: draw offered by %s", game_id, user_id)
            return DrawOfferResponse(game_id=game_id, offered_by=user_id)

    async def accept_draw(self, game_id: UUID, user_id: UUID) -> GameOverResponse:
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            record = self._fetch_game(game_id)
            self._ensure_open_offer(record, user_id)
            return self._complete(
                game_id, session, GameResult.DRAW, ResultReason.AGREEMENT, record
            )

    async def decline_draw(self, game_id: UUID, user_id: UUID) -> DrawDeclinedResponse:
        """Declining clears every outstanding offer."""
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            record = self._fetch_game(game_id)
            self._ensure_open_offer(record, user_id)
            _clear_draw_offers(record)
            self._save(game_id, record)
            logger.info("Game %s: draw declined by %s", game_id, user_id)
            return DrawDeclinedResponse(game_id=game_id, declined_by=user_id)

    # --- undo (needs the opponent's consent) ---
    async def request_undo(self, game_id: UUID, user_id: UUID) -> UndoRequestResponse:
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            record = self._fetch_game(game_id)
            if not record.moves:
                raise NothingToUndoError("There is no move to take back.")
            session.undo_requested_by = user_id
            logger.info("Game %s: undo requested by %s", game_id, user_id)
            return UndoRequestResponse(game_id=game_id, requester_id=user_id)

    async def accept_undo(self, game_id: UUID, user_id: UUID) -> GameView:
        """
        Take back the last move.
        ----
        The oracle is rebuilt by replaying the shortened move log from the starting position; moves are never inverted.
        """
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            self._ensure_pending_undo(session, user_id)
            record = self._fetch_game(game_id)
            if not record.moves:
                session.undo_requested_by = None
                raise NothingToUndoError("There is no move to take back.")

            taken_back = record.moves.pop()
            oracle = RulesOracle.replay(
                [move.uci for move in record.moves], record.starting_position
            )
            record.position = oracle.position
            record.move_log = oracle.pgn()
            record.last_move_at = utc_now()
            self._save(game_id, record)

            session.oracle = oracle
            session.undo_requested_by = None
            logger.info("Game %s: %s taken back", game_id, taken_back.san)
            return self._game_view(game_id, session, record)

    async def decline_undo(self, game_id: UUID, user_id: UUID) -> UndoDeclinedResponse:
        async with self.registry.locked(game_id) as session:
            self._ensure_in_progress(session)
            self._participant(session, user_id)
            self._ensure_pending_undo(session, user_id)
            session.undo_requested_by = None
            logger.info("Game %s: undo declined by %s", game_id, user_id)
            return UndoDeclinedResponse(game_id=game_id, declined_by=user_id)

    # --- presence ---
    async def mark_disconnected(self, game_id: UUID, user_id: UUID, disconnected: bool = True) -> None:
        """Flag (or clear) a player as disconnected on the persisted game. Informational only."""
        async with self.registry.locked(game_id) as session:
            self._participant(session, user_id)
            record = self._fetch_game(game_id)
            seat = record.player(user_id)
            if seat is None or seat.disconnected == disconnected:
                return
            seat.disconnected = disconnected
            self._save(game_id, record)

    # -- Internal helpers --
    def _fetch_game(self, game_id: UUID) -> GameModel:
        """Attempt to find the game in the repository and raise error if it fails."""
        record = self.games.get_game(game_id)
        if record is None:
            raise GameNotFoundError(f"Game with {game_id=} not found.")
        return record

    def _save(self, game_id: UUID, record: GameModel) -> None:
        """Persist the record. On failure the cached session is dropped so it cannot drift from the store."""
        try:
            stored = self.games.update_game(game_id, record)
        except RepositoryError:
            self.registry.discard(game_id)
            raise
        if stored is None:
            self.registry.discard(game_id)
            raise GameNotFoundError(f"Game with {game_id=} not found.")

    def _ensure_in_progress(self, session: GameSession) -> None:
        if session.is_over:
            raise GameAlreadyCompletedError(
                f"Game {session.session_id} is already {session.status}."
            )

    def _participant(self, session: GameSession, user_id: UUID) -> SessionPlayer:
        player = session.player(user_id)
        if player is None:
            raise NotAParticipantError(
                f"User {user_id} is not a player of game {session.session_id}."
            )
        return player

    def _ensure_open_offer(self, record: GameModel, user_id: UUID) -> None:
        if not record.draw_offers:
            raise NoDrawOfferedError("No draw has been offered.")
        if user_id in record.draw_offers:
            raise CannotAcceptOwnOfferError("You cannot answer your own draw offer.")

    def _ensure_pending_undo(self, session: GameSession, user_id: UUID) -> None:
        if session.undo_requested_by is None:
            raise NoUndoRequestedError("No undo has been requested.")
        if session.undo_requested_by == user_id:
            raise CannotAcceptOwnOfferError("You cannot answer your own undo request.")

    def _complete(
        self,
        game_id: UUID,
        session: GameSession,
        result: GameResult,
        reason: ResultReason,
        record: Optional[GameModel] = None,
    ) -> GameOverResponse:
        """End the game for a reason the oracle does not know about (resignation, timeout, agreement)."""
        record = record or self._fetch_game(game_id)
        self._mark_completed(record, result, reason)
        self._save(game_id, record)
        session.status = GameStatus.COMPLETED
        self._finish(game_id, record)
        return GameOverResponse(
            game_id=game_id,
            result=result,
            result_reason=reason,
            winner=result.winner,
        )

    def _mark_completed(
        self, record: GameModel, result: GameResult, reason: ResultReason
    ) -> None:
        record.status = GameStatus.COMPLETED
        record.result = result
        record.result_reason = reason
        _clear_draw_offers(record)

    def _finish(self, game_id: UUID, record: GameModel) -> None:
        """
        Bookkeeping once a game is completed: counters, ratings (ranked only) and presence.
        ----
        Runs exactly once per game, right after the status changed to completed under the game lock.
        Failures are logged and never undo the result: the game record is the source of truth.
        """
        logger.info(
            "Game %s completed: %s (%s)", game_id, record.result, record.result_reason
        )
        scores = scores_for(record.result) if record.result else None
        new_ratings = self._new_ratings(game_id, record) if scores else None

        for seat in record.players:
            try:
                if scores is not None:
                    rating = new_ratings[seat.color] if new_ratings else None
                    if self.users.record_result(seat.user_id, scores[seat.color], rating) is None:
                        logger.error(
                            "Game %s: user %s disappeared before the result was recorded",
                            game_id,
                            seat.user_id,
                        )
                self._release_seat(seat.user_id)
            except RepositoryError:
                logger.exception(
                    "Game %s: could not update user %s after the game", game_id, seat.user_id
                )

    def _release_seat(self, user_id: UUID) -> None:
        """The game no longer holds the user. Someone who already went offline stays offline."""
        user = self.users.get_user(user_id)
        if user is not None and user.status == UserStatus.OFFLINE:
            self.users.set_status(user_id, UserStatus.OFFLINE, None, touch=False)
        else:
            self.users.set_status(user_id, UserStatus.ONLINE, None)

    def _new_ratings(self, game_id: UUID, record: GameModel) -> Optional[dict[Color, int]]:
        if not record.is_ranked or record.result is None:
            return None
        try:
            white = self.users.get_user(record.player_by_color(Color.WHITE).user_id)
            black = self.users.get_user(record.player_by_color(Color.BLACK).user_id)
        except RepositoryError:
            logger.exception("Game %s: could not load players for the rating update", game_id)
            return None
        if white is None or black is None:
            logger.error("Game %s: a player is missing, ratings left unchanged", game_id)
            return None

        ratings = updated_ratings(
            white.rating, black.rating, record.result, self.settings.elo_k_factor
        )
        if ratings is not None:
            logger.info(
                "Game %s: ratings %s %d -> %d, %s %d -> %d",
                game_id,
                white.username,
                white.rating,
                ratings[Color.WHITE],
                black.username,
                black.rating,
                ratings[Color.BLACK],
            )
        return ratings

    def _game_view(self, game_id: UUID, session: GameSession, record: GameModel) -> GameView:
        oracle = session.oracle
        return GameView(
            game_id=game_id,
            players=[_player_view(seat) for seat in record.players],
            position=oracle.position,
            current_turn=oracle.side_to_move,
            moves=[_move_view(move) for move in record.moves],
            legal_moves={} if session.is_over else oracle.legal_move_map(),
            in_check=oracle.in_check(),
            status=record.status,
            time_control=record.time_control,
            is_ranked=record.is_ranked,
            result=record.result,
            result_reason=record.result_reason,
            draw_offers=list(record.draw_offers),
        )


# --- conversions ---
def _set_draw_flag(record: GameModel, user_id: UUID, offered: bool) -> None:
    seat = record.player(user_id)
    if seat is not None:
        seat.draw_offered = offered


def _clear_draw_offers(record: GameModel) -> None:
    record.draw_offers = []
    for seat in record.players:
        seat.draw_offered = False


def _move_record(move: OracleMove, timestamp: datetime) -> MoveRecord:
    return MoveRecord(
        from_square=move.from_square,
        to_square=move.to_square,
        piece=move.piece,
        color=move.color,
        san=move.san,
        uci=move.uci,
        timestamp=timestamp,
        captured=move.captured,
        promotion=move.promotion,
    )


def _move_view(move: OracleMove | MoveRecord) -> MoveView:
    return MoveView(
        from_square=move.from_square,
        to_square=move.to_square,
        piece=move.piece,
        color=move.color,
        san=move.san,
        captured=move.captured,
        promotion=move.promotion,
    )


def _player_view(seat: PlayerModel) -> PlayerView:
    return PlayerView(
        id=seat.user_id,
        username=seat.username,
        color=seat.color,
        rating=seat.rating,
        time_remaining=seat.time_remaining,
        disconnected=seat.disconnected,
    )
