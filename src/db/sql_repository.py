"""Implementation of the Game and User repositories using SQLAlchemy"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Optional
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.exceptions import RepositoryError
from src.core.models import GameModel, MoveRecord, PlayerModel, UserModel, utc_now
from src.core.shared_types import (
    Color,
    GameResult,
    GameStatus,
    ResultReason,
    UserStatus,
)
from src.db.schema import DBGame, DBUser

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(db: Session, action: str) -> Generator[None, None, None]:
    """Roll back and surface any database failure as a RepositoryError."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Database failure while trying to %s: %s", action, e)
        raise RepositoryError(f"Could not {action}.") from e


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes. Everything stored here is UTC."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


class SQLGameRepository:
    """Game records stored using SQL / methods implemented using SQLAlchemy"""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get_game(self, game_id: UUID) -> GameModel | None:
        """Get game by ID, if record exists."""
        with _translate_errors(self.db, f"load game {game_id}"):
            game_db = self._fetch_game(game_id)
        if game_db:
            return self._to_model(game_db)
        return None

    def create_game(self, game: GameModel) -> tuple[GameModel, UUID]:
        """Store new game and return the stored data + newly created game ID."""
        new_id = uuid4()
        game_db = DBGame(id=new_id)
        self._copy_onto(game, game_db)
        with _translate_errors(self.db, "create a game"):
            self.db.add(game_db)
            self.db.commit()
            self.db.refresh(game_db)
        return self._to_model(game_db), new_id

    def update_game(self, game_id: UUID, game: GameModel) -> GameModel | None:
        """Overwrite an existing record."""
        with _translate_errors(self.db, f"update game {game_id}"):
            game_db = self._fetch_game(game_id)
            if not game_db:
                return None
            self._copy_onto(game, game_db)
            self.db.commit()
            self.db.refresh(game_db)
        return self._to_model(game_db)

    def games_for_user(self, user_id: UUID, limit: int = 20) -> list[tuple[UUID, GameModel]]:
        """Games the user took part in, most recent first."""
        query = (
            select(DBGame)
            .where(or_(DBGame.white_id == user_id, DBGame.black_id == user_id))
            .order_by(DBGame.created_at.desc())
            .limit(limit)
        )
        with _translate_errors(self.db, f"list games of user {user_id}"):
            rows = self.db.scalars(query).all()
        return [(row.id, self._to_model(row)) for row in rows]

    # -- Internal helpers --
    def _fetch_game(self, game_id: UUID) -> DBGame | None:
        query = select(DBGame).where(DBGame.id == game_id)
        return self.db.scalar(query)

    def _copy_onto(self, game: GameModel, game_db: DBGame) -> None:
        game_db.players = [_player_to_json(p) for p in game.players]
        game_db.white_id = _seat(game, Color.WHITE)
        game_db.black_id = _seat(game, Color.BLACK)
        game_db.moves = [_move_to_json(m) for m in game.moves]
        game_db.starting_position = game.starting_position
        game_db.position = game.position
        game_db.move_log = game.move_log
        game_db.status = game.status.value
        game_db.result = game.result.value if game.result else None
        game_db.result_reason = game.result_reason.value if game.result_reason else None
        game_db.time_control = game.time_control
        game_db.is_ranked = game.is_ranked
        game_db.draw_offers = [str(user_id) for user_id in game.draw_offers]
        game_db.last_move_at = game.last_move_at

    def _to_model(self, game_db: DBGame) -> GameModel:
        """Convert SQLAlchemy model to data transfer model. Enum fields are validated here."""
        try:
            return GameModel(
                players=[_player_from_json(p) for p in game_db.players],
                moves=[_move_from_json(m) for m in game_db.moves],
                position=game_db.position,
                move_log=game_db.move_log,
                status=GameStatus(game_db.status),
                time_control=game_db.time_control,
                is_ranked=game_db.is_ranked,
                result=GameResult(game_db.result) if game_db.result else None,
                result_reason=(
                    ResultReason(game_db.result_reason) if game_db.result_reason else None
                ),
                draw_offers=[UUID(user_id) for user_id in game_db.draw_offers],
                last_move_at=_aware(game_db.last_move_at),
                starting_position=game_db.starting_position,
            )
        except (KeyError, ValueError) as e:
            raise RepositoryError(f"Stored game {game_db.id} is corrupt: {e}") from e


class SQLUserRepository:
    """User records stored using SQL / methods implemented using SQLAlchemy"""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get_user(self, user_id: UUID) -> UserModel | None:
        with _translate_errors(self.db, f"load user {user_id}"):
            user_db = self.db.get(DBUser, user_id)
        return self._to_model(user_db) if user_db else None

    def get_user_by_username(self, username: str) -> UserModel | None:
        query = select(DBUser).where(DBUser.username == username)
        with _translate_errors(self.db, f"load user {username!r}"):
            user_db = self.db.scalar(query)
        return self._to_model(user_db) if user_db else None

    def create_user(self, user: UserModel) -> UserModel:
        user_db = DBUser(
            id=user.user_id,
            username=user.username,
            rating=user.rating,
            games_played=user.games_played,
            games_won=user.games_won,
            games_lost=user.games_lost,
            games_drawn=user.games_drawn,
            status=user.status.value,
            last_active=user.last_active,
            current_game_id=user.current_game_id,
        )
        with _translate_errors(self.db, f"create user {user.username!r}"):
            self.db.add(user_db)
            self.db.commit()
            self.db.refresh(user_db)
        return self._to_model(user_db)

    def set_status(
        self,
        user_id: UUID,
        status: UserStatus,
        current_game_id: Optional[UUID] = None,
        touch: bool = True,
    ) -> UserModel | None:
        values: dict[str, Any] = {
            "status": status.value,
            "current_game_id": current_game_id,
        }
        if touch:
            values["last_active"] = utc_now()
        return self._update(user_id, values, f"set status of user {user_id}")

    def touch(self, user_id: UUID) -> None:
        self._update(user_id, {"last_active": utc_now()}, f"touch user {user_id}")

    def record_result(
        self, user_id: UUID, score: float, new_rating: Optional[int] = None
    ) -> UserModel | None:
        values: dict[str, Any] = {
            "games_played": DBUser.games_played + 1,
            "games_won": DBUser.games_won + (1 if score == 1 else 0),
            "games_lost": DBUser.games_lost + (1 if score == 0 else 0),
            "games_drawn": DBUser.games_drawn + (1 if score == 0.5 else 0),
        }
        if new_rating is not None:
            values["rating"] = new_rating
        return self._update(user_id, values, f"record result for user {user_id}")

    def active_users(self, since: datetime, limit: int) -> list[UserModel]:
        query = (
            select(DBUser)
            .where(DBUser.status != UserStatus.OFFLINE.value)
            .where(DBUser.last_active >= since)
            .order_by(DBUser.last_active.desc())
            .limit(limit)
        )
        with _translate_errors(self.db, "list active users"):
            rows = self.db.scalars(query).all()
        return [self._to_model(row) for row in rows]

    def count_online(self) -> int:
        query = select(DBUser.id).where(DBUser.status != UserStatus.OFFLINE.value)
        with _translate_errors(self.db, "count online users"):
            return len(self.db.scalars(query).all())

    def mark_stale_offline(self, cutoff: datetime) -> list[UUID]:
        stale = (
            select(DBUser.id)
            .where(DBUser.status != UserStatus.OFFLINE.value)
            .where(or_(DBUser.last_active < cutoff, DBUser.last_active.is_(None)))
        )
        with _translate_errors(self.db, "mark stale users offline"):
            user_ids = list(self.db.scalars(stale).all())
            if user_ids:
                self.db.execute(
                    update(DBUser)
                    .where(DBUser.id.in_(user_ids))
                    .values(status=UserStatus.OFFLINE.value)
                )
                self.db.commit()
        return user_ids

    def rankings(self, limit: int) -> list[UserModel]:
        query = (
            select(DBUser)
            .where(DBUser.games_played > 0)
            .order_by(DBUser.games_won.desc(), DBUser.games_played.asc())
            .limit(limit)
        )
        with _translate_errors(self.db, "load rankings"):
            rows = self.db.scalars(query).all()
        return [self._to_model(row) for row in rows]

    # -- Internal helpers --
    def _update(self, user_id: UUID, values: dict[str, Any], action: str) -> UserModel | None:
        with _translate_errors(self.db, action):
            result = self.db.execute(
                update(DBUser).where(DBUser.id == user_id).values(**values)
            )
            self.db.commit()
            if result.rowcount == 0:
                return None
            user_db = self.db.get(DBUser, user_id, populate_existing=True)
        return self._to_model(user_db) if user_db else None

    def _to_model(self, user_db: DBUser) -> UserModel:
        return UserModel(
            user_id=user_db.id,
            username=user_db.username,
            rating=user_db.rating,
            games_played=user_db.games_played,
            games_won=user_db.games_won,
            games_lost=user_db.games_lost,
            games_drawn=user_db.games_drawn,
            status=UserStatus(user_db.status),
            last_active=_aware(user_db.last_active),
            current_game_id=user_db.current_game_id,
        )


# --- JSON column (de)serialization ---
def _seat(game: GameModel, color: Color) -> Optional[UUID]:
    return next((p.user_id for p in game.players if p.color == color), None)


def _player_to_json(player: PlayerModel) -> dict[str, Any]:
    return {
        "user_id": str(player.user_id),
        "username": player.username,
        "color": player.color.value,
        "rating": player.rating,
        "time_remaining": player.time_remaining,
        "draw_offered": player.draw_offered,
        "disconnected": player.disconnected,
    }


def _player_from_json(data: dict[str, Any]) -> PlayerModel:
    return PlayerModel(
        user_id=UUID(data["user_id"]),
        username=data["username"],
        color=Color(data["color"]),
        rating=data["rating"],
        time_remaining=data["time_remaining"],
        draw_offered=data.get("draw_offered", False),
        disconnected=data.get("disconnected", False),
    )


def _move_to_json(move: MoveRecord) -> dict[str, Any]:
    return {
        "from": move.from_square,
        "to": move.to_square,
        "piece": move.piece,
        "color": move.color.value,
        "san": move.san,
        "uci": move.uci,
        "captured": move.captured,
        "promotion": move.promotion,
        "timestamp": move.timestamp.isoformat(),
    }


def _move_from_json(data: dict[str, Any]) -> MoveRecord:
    return MoveRecord(
        from_square=data["from"],
        to_square=data["to"],
        piece=data["piece"],
        color=Color(data["color"]),
        san=data["san"],
        uci=data["uci"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
        captured=data.get("captured"),
        promotion=data.get("promotion"),
    )
