"""Requests and Response models"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from src.core.exceptions import InvalidGameIdError, InvalidRequestError
from src.core.shared_types import (
    Color,
    GameResult,
    GameStatus,
    MatchMode,
    ResultReason,
    UserStatus,
)

SquareName = str


def parse_game_id(value: Any) -> UUID:
    """Game IDs travel as strings. Anything that is not a UUID is rejected before touching a service."""
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidGameIdError("A game ID is required.")
    try:
        return UUID(value.strip())
    except ValueError:
        raise InvalidGameIdError(f"Malformed game ID: {value!r}") from None


# --- REQUEST MODELS ---
class GameIdRequest(BaseModel):
    game_id: UUID = Field(default=None, validate_default=True)

    @field_validator("game_id", mode="before")
    @classmethod
    def validate_game_id(cls, value: Any) -> UUID:
        return parse_game_id(value)


class FindMatchRequest(BaseModel):
    mode: MatchMode = MatchMode.CASUAL
    time_control: str = "10min"

    @field_validator("time_control")
    @classmethod
    def validate_time_control(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise InvalidRequestError("Time control cannot be empty.")
        return value


class MoveRequest(GameIdRequest):
    from_square: SquareName
    to_square: SquareName
    promotion: Optional[str] = None

    @field_validator(*["from_square", "to_square"])
    @classmethod
    def validate_square(cls, value: str) -> str:
        def _is_algebraic_notation(value: str) -> bool:
            if len(value) != 2:
                return False

            file_character = value[0]
            rank_character = value[1]
            return file_character in "abcdefgh" and rank_character in "12345678"

        value = value.strip().lower()
        if not _is_algebraic_notation(value):
            raise InvalidRequestError(
                f"Cannot interpret {value!r} as a valid square name."
            )
        return value

    @field_validator("promotion")
    @classmethod
    def validate_promotion(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().lower()
        if value not in {"q", "r", "b", "n"}:
            raise InvalidRequestError(
                f"Cannot promote to {value!r}. Pick one of q, r, b, n."
            )
        return value


# --- RESPONSE MODELS ---
class PlayerView(BaseModel):
    id: UUID
    username: str
    color: Color
    rating: int
    time_remaining: Optional[int] = None
    disconnected: bool = False


class MoveView(BaseModel):
    from_square: SquareName
    to_square: SquareName
    piece: str
    color: Color
    san: str
    captured: Optional[str] = None
    promotion: Optional[str] = None


class GameView(BaseModel):
    """Everything a client needs to draw a game from scratch."""

    game_id: UUID
    players: list[PlayerView]
    position: str
    current_turn: Color
    moves: list[MoveView]
    legal_moves: dict[SquareName, list[SquareName]]
    in_check: bool
    status: GameStatus
    time_control: str
    is_ranked: bool
    result: Optional[GameResult] = None
    result_reason: Optional[ResultReason] = None
    draw_offers: list[UUID] = []


class MoveResponse(BaseModel):
    game_id: UUID
    last_move: MoveView
    position: str
    current_turn: Color
    in_check: bool
    legal_moves: dict[SquareName, list[SquareName]]
    game_over: bool
    result: Optional[GameResult] = None
    result_reason: Optional[ResultReason] = None


class GameOverResponse(BaseModel):
    game_id: UUID
    result: GameResult
    result_reason: ResultReason
    winner: Optional[Color] = None


class DrawOfferResponse(BaseModel):
    game_id: UUID
    offered_by: UUID


class DrawDeclinedResponse(BaseModel):
    game_id: UUID
    declined_by: UUID


class UndoRequestResponse(BaseModel):
    game_id: UUID
    requester_id: UUID


class UndoDeclinedResponse(BaseModel):
    game_id: UUID
    declined_by: UUID


class MatchedPlayer(BaseModel):
    id: UUID
    username: str
    color: Color
    rating: int


class MatchResponse(BaseModel):
    game_id: UUID
    mode: MatchMode
    time_control: str
    players: list[MatchedPlayer]

    def opponent_of(self, user_id: UUID) -> MatchedPlayer:
        return next(p for p in self.players if p.id != user_id)

    def seat_of(self, user_id: UUID) -> MatchedPlayer:
        return next(p for p in self.players if p.id == user_id)


class ActivePlayer(BaseModel):
    id: UUID
    username: str
    status: UserStatus


class RankingEntry(BaseModel):
    rank: int
    id: UUID
    username: str
    rating: int
    games_played: int
    games_won: int
    games_lost: int
    games_drawn: int
    win_rate: int


class GameSummary(BaseModel):
    game_id: UUID
    players: list[PlayerView]
    status: GameStatus
    result: Optional[GameResult] = None
    result_reason: Optional[ResultReason] = None
    time_control: str
    is_ranked: bool
    move_count: int
    last_move_at: Optional[datetime] = None
