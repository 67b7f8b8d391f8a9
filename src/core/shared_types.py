"""
Type definitions used across layers
"""

from enum import StrEnum


class Color(StrEnum):
    WHITE = "white"
    BLACK = "black"

    @property
    def opponent(self) -> "Color":
        return Color.BLACK if self == Color.WHITE else Color.WHITE


class GameStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class GameResult(StrEnum):
    WHITE_WINS = "white-wins"
    BLACK_WINS = "black-wins"
    DRAW = "draw"
    UNRESOLVED = "unresolved"

    @classmethod
    def win_for(cls, color: Color) -> "GameResult":
        return cls.WHITE_WINS if color == Color.WHITE else cls.BLACK_WINS

    @property
    def winner(self) -> "Color | None":
        if self == GameResult.WHITE_WINS:
            return Color.WHITE
        if self == GameResult.BLACK_WINS:
            return Color.BLACK
        return None


class ResultReason(StrEnum):
    CHECKMATE = "checkmate"
    RESIGNATION = "resignation"
    TIMEOUT = "timeout"
    STALEMATE = "stalemate"
    INSUFFICIENT_MATERIAL = "insufficient-material"
    REPETITION = "repetition"
    FIFTY_MOVE = "fifty-move"
    AGREEMENT = "agreement"
    ABANDONMENT = "abandonment"


# --- Presence status as stored on the user record (not the in-memory connection map)
class UserStatus(StrEnum):
    OFFLINE = "offline"
    ONLINE = "online"
    IN_GAME = "in_game"
    LOOKING_FOR_MATCH = "looking_for_match"


class MatchMode(StrEnum):
    CASUAL = "casual"
    RANKED = "ranked"
