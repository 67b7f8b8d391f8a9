"""
Realtime session protocol.

Every client event is dispatched through a table of handlers. A handler receives the sender's presence and the
event payload, calls the services, and returns the messages to deliver; it never writes to a socket itself.
That keeps the protocol testable without a transport: the transport only asks `recipients()` where each message goes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from pydantic import BaseModel, ValidationError

from src.api.models import (
    FindMatchRequest,
    GameIdRequest,
    GameOverResponse,
    MoveRequest,
)
from src.core.auth import user_id_from_token
from src.core.config import Settings
from src.core.exceptions import (
    AuthenticationError,
    ChessAppError,
    InvalidRequestError,
    MatchCreationError,
    RepositoryError,
)
from src.core.shared_types import UserStatus
from src.db.repository import UserRepository
from src.realtime.events import (
    LOBBY_ROOM,
    ClientEvent,
    Outbound,
    ServerEvent,
    game_room,
)
from src.realtime.presence import Presence, PresenceTracker
from src.services.game_service import GameService
from src.services.lobby_service import LobbyService

logger = logging.getLogger(__name__)

Handler = Callable[[Presence, dict[str, Any]], Awaitable[list[Outbound]]]
Sink = Callable[[list[Outbound]], Awaitable[None]]

INTERNAL_ERROR = "INTERNAL_ERROR"


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


class RealtimeProtocol:
    def __init__(
        self,
        games: GameService,
        lobby: LobbyService,
        users: UserRepository,
        settings: Optional[Settings] = None,
        presence: Optional[PresenceTracker] = None,
    ) -> None:
        self.games = games
        self.lobby = lobby
        self.users = users
        self.settings = settings or Settings()
        self.presence = presence or PresenceTracker(self.settings.disconnect_grace_seconds)
        self.rooms: dict[str, set[str]] = {}
        self._sink: Optional[Sink] = None
        self._handlers: dict[ClientEvent, Handler] = {
            ClientEvent.LOBBY_JOIN: self._on_lobby_join,
            ClientEvent.LOBBY_LEAVE: self._on_lobby_leave,
            ClientEvent.FIND_MATCH: self._on_find_match,
            ClientEvent.CANCEL_MATCH: self._on_cancel_match,
            ClientEvent.JOIN: self._on_join,
            ClientEvent.LEAVE: self._on_leave,
            ClientEvent.MOVE: self._on_move,
            ClientEvent.RESIGN: self._on_resign,
            ClientEvent.OFFER_DRAW: self._on_offer_draw,
            ClientEvent.ACCEPT_DRAW: self._on_accept_draw,
            ClientEvent.DECLINE_DRAW: self._on_decline_draw,
            ClientEvent.REQUEST_UNDO: self._on_request_undo,
            ClientEvent.ACCEPT_UNDO: self._on_accept_undo,
            ClientEvent.DECLINE_UNDO: self._on_decline_undo,
        }

    def attach_sink(self, send: Sink) -> None:
        """Where to push messages that are not replies to a client event (grace expiry, liveness sweep)."""
        self._sink = send

    def recipients(self, outbound: Outbound) -> list[str]:
        if outbound.connection_id is not None:
            return [outbound.connection_id]
        members = self.rooms.get(outbound.room or "", set())
        return sorted(c for c in members if c != outbound.exclude)

    # --- connection lifecycle ---
    async def connect(self, connection_id: str, token: Optional[str]) -> Presence:
        """
        Authenticate a new connection and bind it to its user.
        ----
        Raises AuthenticationError before any state is touched. A reconnect within the grace period gets
        its rooms back.
        """
        user_id = user_id_from_token(token, self.settings)
        user = self.users.get_user(user_id)
        if user is None:
            raise AuthenticationError("Unknown user.")

        if user.current_game_id is not None:
            self.users.set_status(user.user_id, UserStatus.IN_GAME, user.current_game_id)
            await self._flag_disconnected(user.user_id, user.current_game_id, False)
        elif self.lobby.queue_position(user.user_id) is not None:
            self.users.set_status(user.user_id, UserStatus.LOOKING_FOR_MATCH)
        else:
            self.users.set_status(user.user_id, UserStatus.ONLINE)

        replaced = self.presence.connection_of(user.user_id)
        if replaced is not None and replaced != connection_id:
            # the older tab stops receiving room broadcasts
            self._forget_connection(replaced)

        presence, restored = self.presence.bind(user.user_id, user.username, connection_id)
        if restored:
            for room in presence.rooms:
                self.rooms.setdefault(room, set()).add(connection_id)

        logger.info(
            "User %s connected as %s%s", user.username, connection_id, " (restored)" if restored else ""
        )
        return presence

    def disconnect(self, connection_id: str) -> None:
        """The socket is gone. Room membership is kept on the presence until the grace period runs out."""
        self._forget_connection(connection_id)
        presence = self.presence.release(connection_id, self._go_offline)
        if presence is not None:
            logger.info(
                "User %s disconnected, %ss to reconnect", presence.username, self.presence.grace_seconds
            )

    # --- dispatch ---
    async def handle(
        self, connection_id: str, event: str, payload: Optional[dict[str, Any]] = None
    ) -> list[Outbound]:
        """
        Run the handler of one client event.
        ----
        Failures never reach other clients: they become a single rejection message for the sender,
        'game:moveRejected' for moves and 'game:error' for everything else.
        """
        presence = self.presence.for_connection(connection_id)
        if presence is None:
            return [self._rejection(connection_id, event, AuthenticationError("Not authenticated."))]

        self.presence.touch(presence)
        try:
            self.users.touch(presence.user_id)
        except RepositoryError:
            logger.warning("Could not refresh activity of user %s", presence.username)

        try:
            handler = self._handlers.get(ClientEvent(event))
        except ValueError:
            handler = None
        if handler is None:
            return [self._rejection(connection_id, event, InvalidRequestError(f"Unknown event {event!r}."))]

        try:
            return await handler(presence, payload or {})
        except ValidationError as e:
            return [self._rejection(connection_id, event, InvalidRequestError(_first_error(e)))]
        except ChessAppError as e:
            logger.debug("Event %s from %s rejected: %s", event, presence.username, e)
            return [self._rejection(connection_id, event, e)]
        except Exception as e:
            logger.exception("Event %s from %s failed", event, presence.username)
            return [self._rejection(connection_id, event, e)]

    # --- background tasks ---
    async def liveness_sweep(self) -> list[UUID]:
        """
        Mark users that went quiet as offline and refresh the lobby if anyone changed.
        ----
        An open connection counts as activity, so only users without a live socket can time out.
        """
        for user_id in self.presence.connected_users():
            try:
                self.users.touch(user_id)
            except RepositoryError:
                logger.warning("Could not refresh activity of user %s", user_id)

        try:
            user_ids = self.lobby.mark_inactive_offline()
        except RepositoryError:
            logger.exception("Liveness sweep failed")
            return []
        if user_ids:
            await self._push(self._lobby_refresh())
        return user_ids

    async def run_liveness_sweep(self) -> None:
        """Background loop; cancel the task to stop it."""
        while True:
            await asyncio.sleep(self.settings.liveness_sweep_seconds)
            await self.liveness_sweep()

    def shutdown(self) -> None:
        self.presence.cancel_timers()

    # --- lobby handlers ---
    async def _on_lobby_join(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        self._join_room(presence, LOBBY_ROOM)
        return self._lobby_refresh()

    async def _on_lobby_leave(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        self._leave_room(presence, LOBBY_ROOM)
        return []

    async def _on_find_match(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = FindMatchRequest.model_validate(
            {"time_control": self.settings.default_time_control, **payload}
        )
        try:
            match = await self.lobby.enqueue_for_match(
                presence.user_id, request.mode, request.time_control
            )
        except MatchCreationError as e:
            # both players were waiting; both hear about it
            return [
                self._rejection(connection_id, ClientEvent.FIND_MATCH, e)
                for connection_id in self._connections_of(e.user_ids)
            ]

        if match is None:
            return [
                Outbound.to_connection(
                    presence.connection_id,
                    ServerEvent.SEARCHING,
                    {
                        "mode": request.mode,
                        "time_control": request.time_control,
                        "position": self.lobby.queue_position(presence.user_id),
                    },
                )
            ]

        outbound = []
        for player in match.players:
            seat = self.presence.for_user(player.id)
            if seat is None or not seat.connected:
                logger.warning("Matched user %s has no live connection", player.username)
                continue
            self._join_room(seat, game_room(match.game_id))
            outbound.append(
                Outbound.to_connection(
                    seat.connection_id,
                    ServerEvent.MATCHED,
                    {
                        "game_id": str(match.game_id),
                        "color": player.color,
                        "mode": match.mode,
                        "time_control": match.time_control,
                        "opponent": _dump(match.opponent_of(player.id)),
                    },
                )
            )
        return outbound + self._lobby_refresh()

    async def _on_cancel_match(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        removed = await self.lobby.cancel_matchmaking(presence.user_id)
        return [
            Outbound.to_connection(
                presence.connection_id, ServerEvent.MATCH_CANCELLED, {"removed": removed}
            )
        ]

    # --- game handlers ---
    async def _on_join(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        view = await self.games.get_game_view(request.game_id, presence.user_id)
        self._join_room(presence, game_room(request.game_id))
        return [Outbound.to_connection(presence.connection_id, ServerEvent.DATA, _dump(view))]

    async def _on_leave(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        self._leave_room(presence, game_room(request.game_id))
        return []

    async def _on_move(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = MoveRequest.model_validate(payload)
        response = await self.games.apply_move(
            request.game_id,
            presence.user_id,
            request.from_square,
            request.to_square,
            request.promotion,
        )
        room = game_room(request.game_id)
        outbound = [Outbound.to_room(room, ServerEvent.UPDATE, _dump(response))]
        if response.game_over and response.result and response.result_reason:
            over = GameOverResponse(
                game_id=response.game_id,
                result=response.result,
                result_reason=response.result_reason,
                winner=response.result.winner,
            )
            outbound.append(Outbound.to_room(room, ServerEvent.OVER, _dump(over)))
            outbound += self._lobby_refresh()
        return outbound

    async def _on_resign(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        over = await self.games.resign(request.game_id, presence.user_id)
        return [
            Outbound.to_room(game_room(request.game_id), ServerEvent.OVER, _dump(over)),
            *self._lobby_refresh(),
        ]

    async def _on_offer_draw(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        offer = await self.games.offer_draw(request.game_id, presence.user_id)
        return [
            Outbound.to_room(
                game_room(request.game_id),
                ServerEvent.DRAW_OFFER,
                _dump(offer),
                exclude=presence.connection_id,
            )
        ]

    async def _on_accept_draw(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        over = await self.games.accept_draw(request.game_id, presence.user_id)
        return [
            Outbound.to_room(game_room(request.game_id), ServerEvent.OVER, _dump(over)),
            *self._lobby_refresh(),
        ]

    async def _on_decline_draw(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        declined = await self.games.decline_draw(request.game_id, presence.user_id)
        return [
            Outbound.to_room(
                game_room(request.game_id),
                ServerEvent.DRAW_DECLINED,
                _dump(declined),
                exclude=presence.connection_id,
            )
        ]

    async def _on_request_undo(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        undo = await self.games.request_undo(request.game_id, presence.user_id)
        return [
            Outbound.to_room(
                game_room(request.game_id),
                ServerEvent.UNDO_REQUEST,
                _dump(undo),
                exclude=presence.connection_id,
            )
        ]

    async def _on_accept_undo(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        view = await self.games.accept_undo(request.game_id, presence.user_id)
        room = game_room(request.game_id)
        return [
            Outbound.to_room(room, ServerEvent.UPDATE, _dump(view)),
            Outbound.to_room(
                room,
                ServerEvent.UNDO_RESPONSE,
                {"game_id": str(request.game_id), "accepted": True},
                exclude=presence.connection_id,
            ),
        ]

    async def _on_decline_undo(self, presence: Presence, payload: dict[str, Any]) -> list[Outbound]:
        request = GameIdRequest.model_validate(payload)
        await self.games.decline_undo(request.game_id, presence.user_id)
        return [
            Outbound.to_room(
                game_room(request.game_id),
                ServerEvent.UNDO_RESPONSE,
                {"game_id": str(request.game_id), "accepted": False},
                exclude=presence.connection_id,
            )
        ]

    # -- Internal helpers --
    def _join_room(self, presence: Presence, room: str) -> None:
        presence.rooms.add(room)
        if presence.connection_id is not None:
            self.rooms.setdefault(room, set()).add(presence.connection_id)

    def _leave_room(self, presence: Presence, room: str) -> None:
        presence.rooms.discard(room)
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(presence.connection_id)
        if not members:
            del self.rooms[room]

    def _forget_connection(self, connection_id: str) -> None:
        for room, members in list(self.rooms.items()):
            members.discard(connection_id)
            if not members:
                del self.rooms[room]

    def _connections_of(self, user_ids: tuple[UUID, ...]) -> list[str]:
        connections = (self.presence.connection_of(user_id) for user_id in user_ids)
        return [c for c in connections if c is not None]

    def _lobby_refresh(self) -> list[Outbound]:
        players = self.lobby.get_active_players()
        return [
            Outbound.to_room(
                LOBBY_ROOM, ServerEvent.USERS_COUNT, {"count": self.lobby.count_online_users()}
            ),
            Outbound.to_room(
                LOBBY_ROOM, ServerEvent.ACTIVE_PLAYERS, {"players": [_dump(p) for p in players]}
            ),
        ]

    def _rejection(self, connection_id: str, event: str, error: Exception) -> Outbound:
        if isinstance(error, ChessAppError):
            code, message = error.code, str(error)
        else:
            code, message = INTERNAL_ERROR, "Something went wrong."
        name = ServerEvent.MOVE_REJECTED if event == ClientEvent.MOVE else ServerEvent.ERROR
        return Outbound.to_connection(
            connection_id, name, {"event": event, "code": code, "message": message}
        )

    async def _go_offline(self, presence: Presence) -> None:
        """Grace period ran out without a reconnect."""
        user = self.users.get_user(presence.user_id)
        if self.lobby.queue_position(presence.user_id) is not None:
            await self.lobby.cancel_matchmaking(presence.user_id)
        game_id = user.current_game_id if user else None
        self.users.set_status(presence.user_id, UserStatus.OFFLINE, game_id, touch=False)
        if game_id is not None:
            await self._flag_disconnected(presence.user_id, game_id, True)
        logger.info("User %s is offline", presence.username)
        await self._push(self._lobby_refresh())

    async def _flag_disconnected(self, user_id: UUID, game_id: UUID, disconnected: bool) -> None:
        try:
            await self.games.mark_disconnected(game_id, user_id, disconnected)
        except ChessAppError as e:
            logger.warning("Could not update disconnect flag of %s in game %s: %s", user_id, game_id, e)

    async def _push(self, outbound: list[Outbound]) -> None:
        if self._sink is not None and outbound:
            await self._sink(outbound)


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid request."
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]
