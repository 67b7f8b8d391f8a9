"""Event names and the outbound message envelope of the realtime protocol."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional
from uuid import UUID

LOBBY_ROOM = "lobby"


def game_room(game_id: UUID) -> str:
    return f"game:{game_id}"


class ClientEvent(StrEnum):
    LOBBY_JOIN = "lobby:join"
    LOBBY_LEAVE = "lobby:leave"
    FIND_MATCH = "game:findMatch"
    CANCEL_MATCH = "game:cancelMatch"
    JOIN = "game:join"
    LEAVE = "game:leave"
    MOVE = "game:move"
    RESIGN = "game:resign"
    OFFER_DRAW = "game:offerDraw"
    ACCEPT_DRAW = "game:acceptDraw"
    DECLINE_DRAW = "game:declineDraw"
    REQUEST_UNDO = "game:requestUndo"
    ACCEPT_UNDO = "game:acceptUndo"
    DECLINE_UNDO = "game:declineUndo"


class ServerEvent(StrEnum):
    USERS_COUNT = "lobby:usersCount"
    ACTIVE_PLAYERS = "lobby:activePlayers"
    MATCHED = "game:matched"
    SEARCHING = "game:searching"
    MATCH_CANCELLED = "game:matchCancelled"
    DATA = "game:data"
    UPDATE = "game:update"
    OVER = "game:over"
    DRAW_OFFER = "game:drawOffer"
    DRAW_DECLINED = "game:drawDeclined"
    UNDO_REQUEST = "game:undoRequest"
    UNDO_RESPONSE = "game:undoResponse"
    MOVE_REJECTED = "game:moveRejected"
    ERROR = "game:error"


@dataclass(frozen=True)
class Outbound:
    """
    One message to deliver.
    ----
    Exactly one of 'connection_id' (a single client) or 'room' (every member of a broadcast group) is set.
    'exclude' drops one connection from a room broadcast, e.g. to reach only the opponent.
    """

    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    connection_id: Optional[str] = None
    room: Optional[str] = None
    exclude: Optional[str] = None

    @classmethod
    def to_connection(cls, connection_id: str, event: str, payload: dict[str, Any]) -> "Outbound":
        return cls(event=event, payload=payload, connection_id=connection_id)

    @classmethod
    def to_room(
        cls, room: str, event: str, payload: dict[str, Any], exclude: Optional[str] = None
    ) -> "Outbound":
        return cls(event=event, payload=payload, room=room, exclude=exclude)
