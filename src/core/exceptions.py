"""
Exceptions raised by the domain, service and persistence layers.

Every exception carries a stable ``code`` so the realtime layer can forward it to a client
without leaking Python class names.
"""


class ChessAppError(Exception):
    """Top-level exception for anything this application raises on purpose."""

    code = "ERROR"


class InvalidRequestError(ChessAppError):
    code = "INVALID_REQUEST"


class AuthenticationError(ChessAppError):
    code = "authentication_error"


class RepositoryError(ChessAppError):
    """Game Store / User Directory could not be reached or refused the operation."""

    code = "INFRASTRUCTURE_FAILURE"


# --- Game rule / lifecycle violations ---
class GameError(ChessAppError):
    code = "GAME_ERROR"


class GameNotFoundError(GameError):
    code = "GAME_NOT_FOUND"


class PlayerNotFoundError(GameError):
    code = "PLAYER_NOT_FOUND"


class InvalidGameIdError(GameError):
    code = "INVALID_GAME_ID"


class AlreadyQueuedError(GameError):
    code = "ALREADY_QUEUED"


class NotAParticipantError(GameError):
    code = "NOT_A_PARTICIPANT"


class NotYourTurnError(GameError):
    code = "NOT_YOUR_TURN"


class IllegalMoveError(GameError):
    code = "ILLEGAL_MOVE"


class GameAlreadyCompletedError(GameError):
    code = "GAME_ALREADY_COMPLETED"


class NoDrawOfferedError(GameError):
    code = "NO_DRAW_OFFERED"


class CannotAcceptOwnOfferError(GameError):
    code = "CANNOT_ACCEPT_OWN_OFFER"


class NothingToUndoError(GameError):
    code = "NOTHING_TO_UNDO"


class NoUndoRequestedError(GameError):
    code = "NO_UNDO_REQUESTED"


class MatchCreationError(GameError):
    """Two players were paired but their game could not be created. Both are back to 'online'."""

    code = "MATCH_FAILED"

    def __init__(self, message: str, user_ids: tuple) -> None:
        super().__init__(message)
        self.user_ids = user_ids
