"""Unit tests for src/realtime/protocol.py"""

import asyncio
import random
from datetime import timedelta
from uuid import UUID, uuid4

import pytest

from src.core.auth import create_access_token
from src.core.config import Settings
from src.core.exceptions import AuthenticationError
from src.core.models import UserModel, utc_now
from src.core.shared_types import Color, GameStatus, MatchMode, UserStatus
from src.realtime.events import LOBBY_ROOM, Outbound, ServerEvent, game_room
from src.realtime.protocol import RealtimeProtocol
from src.services.game_service import GameService
from src.services.lobby_service import LobbyService
from src.services.matchmaking import MatchmakingQueue
from src.services.session_registry import SessionRegistry
from tests.fakes import FakeGameRepository, FakeUserRepository


@pytest.fixture
def protocol(
    settings: Settings, game_repo: FakeGameRepository, user_repo: FakeUserRepository
) -> RealtimeProtocol:
    registry = SessionRegistry(game_repo, user_repo, settings, rng=random.Random(11))
    return RealtimeProtocol(
        GameService(registry, game_repo, user_repo, settings),
        LobbyService(registry, MatchmakingQueue(), game_repo, user_repo, settings),
        user_repo,
        settings,
    )


# --- HELPERS ---
async def connect(protocol: RealtimeProtocol, user: UserModel, connection_id: str) -> None:
    await protocol.connect(connection_id, create_access_token(user.user_id, protocol.settings))


def events(outbound: list[Outbound]) -> list[str]:
    return [message.event for message in outbound]


def only(outbound: list[Outbound], event: str) -> Outbound:
    found = [message for message in outbound if message.event == event]
    assert len(found) == 1, f"expected one {event} in {events(outbound)}"
    return found[0]


async def start_match(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> tuple[UUID, dict[Color, tuple[UUID, str]]]:
    """Connect two users and pair them. Returns the game ID and (user_id, connection_id) per color."""
    alice = user_repo.add("alice")
    bob = user_repo.add("bob")
    await connect(protocol, alice, "c-alice")
    await connect(protocol, bob, "c-bob")

    await protocol.handle("c-alice", "game:findMatch", {"mode": "casual", "time_control": "10min"})
    outbound = await protocol.handle(
        "c-bob", "game:findMatch", {"mode": "casual", "time_control": "10min"}
    )
    matched = [m for m in outbound if m.event == ServerEvent.MATCHED]
    seats = {
        Color(m.payload["color"]): (
            alice.user_id if m.connection_id == "c-alice" else bob.user_id,
            m.connection_id,
        )
        for m in matched
    }
    return UUID(matched[0].payload["game_id"]), seats


# --- CONNECTION ---
def test_connect_binds_the_user(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    alice = user_repo.add("alice")
    asyncio.run(connect(protocol, alice, "c1"))

    assert protocol.presence.connection_of(alice.user_id) == "c1"
    assert user_repo.get_user(alice.user_id).status == UserStatus.ONLINE


@pytest.mark.parametrize("token", [None, "garbage", "Bearer garbage"])
def test_connect_with_bad_credentials(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, token: str | None
) -> None:
    alice = user_repo.add("alice")
    with pytest.raises(AuthenticationError):
        asyncio.run(protocol.connect("c1", token))

    assert protocol.presence.for_connection("c1") is None
    assert user_repo.get_user(alice.user_id).status == UserStatus.OFFLINE


def test_connect_as_unknown_user(protocol: RealtimeProtocol, settings: Settings) -> None:
    token = create_access_token(uuid4(), settings)
    with pytest.raises(AuthenticationError):
        asyncio.run(protocol.connect("c1", token))


def test_events_from_unbound_connection_are_rejected(protocol: RealtimeProtocol) -> None:
    outbound = asyncio.run(protocol.handle("nobody", "lobby:join", {}))
    rejection = only(outbound, ServerEvent.ERROR)
    assert rejection.connection_id == "nobody"
    assert rejection.payload["code"] == "authentication_error"


def test_unknown_event(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        return await protocol.handle("c1", "game:teleport", {})

    rejection = only(asyncio.run(scenario()), ServerEvent.ERROR)
    assert rejection.connection_id == "c1"
    assert rejection.payload["code"] == "INVALID_REQUEST"


# --- LOBBY ---
def test_lobby_join_broadcasts_players_and_count(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    alice = user_repo.add("alice")
    bob = user_repo.add("bob")

    async def scenario():
        await connect(protocol, alice, "c-alice")
        await connect(protocol, bob, "c-bob")
        await protocol.handle("c-alice", "lobby:join", {})
        return await protocol.handle("c-bob", "lobby:join", {})

    outbound = asyncio.run(scenario())
    count = only(outbound, ServerEvent.USERS_COUNT)
    players = only(outbound, ServerEvent.ACTIVE_PLAYERS)
    assert count.room == LOBBY_ROOM
    assert count.payload == {"count": 2}
    assert {p["username"] for p in players.payload["players"]} == {"alice", "bob"}
    assert protocol.recipients(players) == ["c-alice", "c-bob"]


def test_lobby_leave(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        await protocol.handle("c1", "lobby:join", {})
        return await protocol.handle("c1", "lobby:leave", {})

    assert asyncio.run(scenario()) == []
    assert LOBBY_ROOM not in protocol.rooms


# --- MATCHMAKING ---
def test_find_match_searching_then_matched(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    alice = user_repo.add("alice")
    bob = user_repo.add("bob")

    async def scenario():
        await connect(protocol, alice, "c-alice")
        await connect(protocol, bob, "c-bob")
        searching = await protocol.handle("c-alice", "game:findMatch", {"time_control": "5min"})
        matched = await protocol.handle("c-bob", "game:findMatch", {"time_control": "5min"})
        return searching, matched

    searching, matched = asyncio.run(scenario())

    ack = only(searching, ServerEvent.SEARCHING)
    assert ack.connection_id == "c-alice"
    assert ack.payload["position"] == 1

    notices = [m for m in matched if m.event == ServerEvent.MATCHED]
    assert sorted(m.connection_id for m in notices) == ["c-alice", "c-bob"]
    game_id = UUID(notices[0].payload["game_id"])
    assert {m.payload["color"] for m in notices} == {"white", "black"}
    to_alice = next(m for m in notices if m.connection_id == "c-alice")
    assert to_alice.payload["opponent"]["username"] == "bob"

    assert protocol.rooms[game_room(game_id)] == {"c-alice", "c-bob"}
    assert user_repo.get_user(alice.user_id).status == UserStatus.IN_GAME
    assert ServerEvent.ACTIVE_PLAYERS in events(matched)


def test_find_match_uses_the_configured_time_control(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    protocol.settings.default_time_control = "3min"
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        return await protocol.handle("c1", "game:findMatch", {"mode": "ranked"})

    ack = only(asyncio.run(scenario()), ServerEvent.SEARCHING)
    assert ack.payload["time_control"] == "3min"
    assert protocol.lobby.queue.snapshot(MatchMode.RANKED)[0].time_control == "3min"


def test_cancel_match(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        await protocol.handle("c1", "game:findMatch", {})
        return await protocol.handle("c1", "game:cancelMatch", {})

    cancelled = only(asyncio.run(scenario()), ServerEvent.MATCH_CANCELLED)
    assert cancelled.payload == {"removed": True}
    assert user_repo.get_user(alice.user_id).status == UserStatus.ONLINE


def test_failed_match_informs_both_players(
    protocol: RealtimeProtocol, game_repo: FakeGameRepository, user_repo: FakeUserRepository
) -> None:
    alice = user_repo.add("alice")
    bob = user_repo.add("bob")
    game_repo.fail_writes = True

    async def scenario():
        await connect(protocol, alice, "c-alice")
        await connect(protocol, bob, "c-bob")
        await protocol.handle("c-alice", "game:findMatch", {})
        return await protocol.handle("c-bob", "game:findMatch", {})

    outbound = asyncio.run(scenario())
    assert events(outbound) == [ServerEvent.ERROR, ServerEvent.ERROR]
    assert sorted(m.connection_id for m in outbound) == ["c-alice", "c-bob"]
    assert all(m.payload["code"] == "MATCH_FAILED" for m in outbound)
    assert user_repo.get_user(alice.user_id).status == UserStatus.ONLINE
    assert user_repo.get_user(bob.user_id).status == UserStatus.ONLINE


def test_invalid_match_request(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        return await protocol.handle("c1", "game:findMatch", {"mode": "bullet-hell"})

    rejection = only(asyncio.run(scenario()), ServerEvent.ERROR)
    assert rejection.payload["code"] == "INVALID_REQUEST"


# --- GAME ---
def test_join_game(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    outsider = user_repo.add("outsider")

    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        await connect(protocol, outsider, "c-outsider")
        return (
            game_id,
            await protocol.handle(seats[Color.WHITE][1], "game:join", {"game_id": str(game_id)}),
            await protocol.handle("c-outsider", "game:join", {"game_id": str(game_id)}),
            await protocol.handle("c-outsider", "game:join", {"game_id": "not-a-uuid"}),
            await protocol.handle("c-outsider", "game:join", {}),
        )

    game_id, joined, outsider_join, malformed, missing = asyncio.run(scenario())

    data = only(joined, ServerEvent.DATA)
    assert data.payload["game_id"] == str(game_id)
    assert data.payload["status"] == GameStatus.ACTIVE
    assert data.payload["current_turn"] == "white"
    assert "e2" in data.payload["legal_moves"]

    assert only(outsider_join, ServerEvent.ERROR).payload["code"] == "NOT_A_PARTICIPANT"
    assert only(malformed, ServerEvent.ERROR).payload["code"] == "INVALID_GAME_ID"
    assert only(missing, ServerEvent.ERROR).payload["code"] == "INVALID_GAME_ID"
    assert "c-outsider" not in protocol.rooms[game_room(game_id)]


def test_moves_are_broadcast_and_rejections_are_private(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white_connection = seats[Color.WHITE][1]
        black_connection = seats[Color.BLACK][1]
        payload = {"game_id": str(game_id), "from_square": "e2", "to_square": "e4"}
        return (
            seats,
            await protocol.handle(black_connection, "game:move", payload),
            await protocol.handle(white_connection, "game:move", {**payload, "to_square": "e5"}),
            await protocol.handle(white_connection, "game:move", {**payload, "to_square": "z9"}),
            await protocol.handle(white_connection, "game:move", payload),
        )

    seats, wrong_turn, illegal, malformed, accepted = asyncio.run(scenario())

    for rejected, code in [
        (wrong_turn, "NOT_YOUR_TURN"),
        (illegal, "ILLEGAL_MOVE"),
        (malformed, "INVALID_REQUEST"),
    ]:
        message = only(rejected, ServerEvent.MOVE_REJECTED)
        assert message.room is None
        assert message.payload["code"] == code

    update = only(accepted, ServerEvent.UPDATE)
    assert update.payload["last_move"]["san"] == "e4"
    assert update.payload["current_turn"] == "black"
    assert protocol.recipients(update) == sorted(c for _, c in seats.values())


def test_checkmate_ends_the_game_for_everyone(
    protocol: RealtimeProtocol, game_repo: FakeGameRepository, user_repo: FakeUserRepository
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        outbound = []
        for ply, (from_square, to_square) in enumerate(
            [("f2", "f3"), ("e7", "e5"), ("g2", "g4"), ("d8", "h4")]
        ):
            color = Color.WHITE if ply % 2 == 0 else Color.BLACK
            outbound = await protocol.handle(
                seats[color][1],
                "game:move",
                {"game_id": str(game_id), "from_square": from_square, "to_square": to_square},
            )
        return game_id, seats, outbound

    game_id, seats, outbound = asyncio.run(scenario())

    over = only(outbound, ServerEvent.OVER)
    assert over.room == game_room(game_id)
    assert over.payload["result"] == "black-wins"
    assert over.payload["result_reason"] == "checkmate"
    assert over.payload["winner"] == "black"
    assert only(outbound, ServerEvent.UPDATE).payload["game_over"]
    assert game_repo.get_game(game_id).status == GameStatus.COMPLETED
    assert user_repo.get_user(seats[Color.WHITE][0]).status == UserStatus.ONLINE


def test_resign(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        return game_id, await protocol.handle(
            seats[Color.BLACK][1], "game:resign", {"game_id": str(game_id)}
        )

    game_id, outbound = asyncio.run(scenario())
    over = only(outbound, ServerEvent.OVER)
    assert over.room == game_room(game_id)
    assert over.payload["result"] == "white-wins"
    assert over.payload["result_reason"] == "resignation"
    assert ServerEvent.USERS_COUNT in events(outbound)


def test_draw_offer_reaches_only_the_opponent(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        payload = {"game_id": str(game_id)}
        offered = await protocol.handle(seats[Color.WHITE][1], "game:offerDraw", payload)
        own = await protocol.handle(seats[Color.WHITE][1], "game:acceptDraw", payload)
        accepted = await protocol.handle(seats[Color.BLACK][1], "game:acceptDraw", payload)
        return seats, offered, own, accepted

    seats, offered, own, accepted = asyncio.run(scenario())

    offer = only(offered, ServerEvent.DRAW_OFFER)
    assert protocol.recipients(offer) == [seats[Color.BLACK][1]]
    assert offer.payload["offered_by"] == str(seats[Color.WHITE][0])
    assert only(own, ServerEvent.ERROR).payload["code"] == "CANNOT_ACCEPT_OWN_OFFER"
    assert only(accepted, ServerEvent.OVER).payload["result"] == "draw"


def test_draw_declined(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        payload = {"game_id": str(game_id)}
        await protocol.handle(seats[Color.WHITE][1], "game:offerDraw", payload)
        return seats, await protocol.handle(seats[Color.BLACK][1], "game:declineDraw", payload)

    seats, outbound = asyncio.run(scenario())
    declined = only(outbound, ServerEvent.DRAW_DECLINED)
    assert protocol.recipients(declined) == [seats[Color.WHITE][1]]


def test_undo_flow(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white, black = seats[Color.WHITE][1], seats[Color.BLACK][1]
        payload = {"game_id": str(game_id)}
        nothing = await protocol.handle(white, "game:requestUndo", payload)
        await protocol.handle(
            white, "game:move", {**payload, "from_square": "e2", "to_square": "e4"}
        )
        requested = await protocol.handle(white, "game:requestUndo", payload)
        accepted = await protocol.handle(black, "game:acceptUndo", payload)
        await protocol.handle(
            white, "game:move", {**payload, "from_square": "d2", "to_square": "d4"}
        )
        await protocol.handle(white, "game:requestUndo", payload)
        declined = await protocol.handle(black, "game:declineUndo", payload)
        return seats, nothing, requested, accepted, declined

    seats, nothing, requested, accepted, declined = asyncio.run(scenario())
    white, black = seats[Color.WHITE][1], seats[Color.BLACK][1]

    assert only(nothing, ServerEvent.ERROR).payload["code"] == "NOTHING_TO_UNDO"
    assert protocol.recipients(only(requested, ServerEvent.UNDO_REQUEST)) == [black]

    update = only(accepted, ServerEvent.UPDATE)
    assert update.payload["moves"] == []
    assert update.payload["current_turn"] == "white"
    response = only(accepted, ServerEvent.UNDO_RESPONSE)
    assert response.payload["accepted"] is True
    assert protocol.recipients(response) == [white]

    refusal = only(declined, ServerEvent.UNDO_RESPONSE)
    assert refusal.payload["accepted"] is False
    assert protocol.recipients(refusal) == [white]


def test_leave_game_room(protocol: RealtimeProtocol, user_repo: FakeUserRepository) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        await protocol.handle(seats[Color.WHITE][1], "game:leave", {"game_id": str(game_id)})
        return game_id, seats

    game_id, seats = asyncio.run(scenario())
    assert protocol.rooms[game_room(game_id)] == {seats[Color.BLACK][1]}


def test_unexpected_failure_becomes_internal_error(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(protocol.games, "resign", broken)

    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        return await protocol.handle(
            seats[Color.WHITE][1], "game:resign", {"game_id": str(game_id)}
        )

    rejection = only(asyncio.run(scenario()), ServerEvent.ERROR)
    assert rejection.payload["code"] == "INTERNAL_ERROR"
    assert "boom" not in rejection.payload["message"]


# --- DISCONNECT / RECONNECT ---
def test_reconnect_within_grace_restores_rooms(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, settings: Settings
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white_id, white_connection = seats[Color.WHITE]
        await protocol.handle(white_connection, "lobby:join", {})

        protocol.disconnect(white_connection)
        assert white_connection not in protocol.rooms[game_room(game_id)]

        await protocol.connect("c-new", create_access_token(white_id, settings))
        await asyncio.sleep(settings.disconnect_grace_seconds * 2)
        return game_id, white_id

    game_id, white_id = asyncio.run(scenario())
    assert "c-new" in protocol.rooms[game_room(game_id)]
    assert "c-new" in protocol.rooms[LOBBY_ROOM]
    user = user_repo.get_user(white_id)
    assert user.status == UserStatus.IN_GAME
    assert user.current_game_id == game_id


def test_second_tab_takes_over_the_rooms(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, settings: Settings
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white_id, old_tab = seats[Color.WHITE]
        _, black_connection = seats[Color.BLACK]
        await protocol.handle(old_tab, "lobby:join", {})

        await protocol.connect("c-second-tab", create_access_token(white_id, settings))
        outbound = await protocol.handle(black_connection, "game:offerDraw", {"game_id": str(game_id)})
        return game_id, old_tab, black_connection, outbound

    game_id, old_tab, black_connection, outbound = asyncio.run(scenario())
    assert protocol.rooms[game_room(game_id)] == {"c-second-tab", black_connection}
    assert old_tab not in protocol.rooms[LOBBY_ROOM]
    assert protocol.recipients(only(outbound, ServerEvent.DRAW_OFFER)) == ["c-second-tab"]

    # closing the old tab later changes nothing for the new one
    protocol.disconnect(old_tab)
    assert "c-second-tab" in protocol.rooms[game_room(game_id)]


def test_grace_expiry_takes_the_user_offline(
    protocol: RealtimeProtocol,
    game_repo: FakeGameRepository,
    user_repo: FakeUserRepository,
    settings: Settings,
) -> None:
    pushed: list[Outbound] = []

    async def sink(outbound: list[Outbound]) -> None:
        pushed.extend(outbound)

    protocol.attach_sink(sink)

    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white_id, white_connection = seats[Color.WHITE]
        protocol.disconnect(white_connection)
        await asyncio.sleep(settings.disconnect_grace_seconds * 4)
        return game_id, white_id

    game_id, white_id = asyncio.run(scenario())

    assert user_repo.get_user(white_id).status == UserStatus.OFFLINE
    stored = game_repo.get_game(game_id)
    assert stored.player(white_id).disconnected
    assert stored.status == GameStatus.ACTIVE
    assert ServerEvent.ACTIVE_PLAYERS in events(pushed)
    assert protocol.presence.for_user(white_id) is None


def test_player_who_went_offline_stays_offline_when_the_game_ends(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, settings: Settings
) -> None:
    async def scenario():
        game_id, seats = await start_match(protocol, user_repo)
        white_id, white_connection = seats[Color.WHITE]
        black_id, black_connection = seats[Color.BLACK]
        protocol.disconnect(white_connection)
        await asyncio.sleep(settings.disconnect_grace_seconds * 4)
        last_seen = user_repo.get_user(white_id).last_active

        outbound = await protocol.handle(black_connection, "game:resign", {"game_id": str(game_id)})
        return white_id, black_id, last_seen, outbound

    white_id, black_id, last_seen, outbound = asyncio.run(scenario())
    assert only(outbound, ServerEvent.OVER).payload["result_reason"] == "resignation"

    white = user_repo.get_user(white_id)
    assert white.status == UserStatus.OFFLINE
    assert white.current_game_id is None
    assert white.last_active == last_seen
    assert user_repo.get_user(black_id).status == UserStatus.ONLINE
    active = [p["username"] for p in only(outbound, ServerEvent.ACTIVE_PLAYERS).payload["players"]]
    assert user_repo.get_user(white_id).username not in active


def test_waiting_player_leaves_the_queue_after_grace(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository, settings: Settings
) -> None:
    alice = user_repo.add("alice")

    async def scenario():
        await connect(protocol, alice, "c1")
        await protocol.handle("c1", "game:findMatch", {})
        protocol.disconnect("c1")
        await asyncio.sleep(settings.disconnect_grace_seconds * 4)

    asyncio.run(scenario())
    assert protocol.lobby.queue_position(alice.user_id) is None
    assert user_repo.get_user(alice.user_id).status == UserStatus.OFFLINE


def test_liveness_sweep(
    protocol: RealtimeProtocol, user_repo: FakeUserRepository
) -> None:
    pushed: list[Outbound] = []

    async def sink(outbound: list[Outbound]) -> None:
        pushed.extend(outbound)

    protocol.attach_sink(sink)
    connected = user_repo.add("connected")
    stale = user_repo.add(
        "stale", status=UserStatus.ONLINE, last_active=utc_now() - timedelta(minutes=5)
    )

    async def scenario():
        await connect(protocol, connected, "c1")
        # connected but silent for a while
        user_repo._users[connected.user_id].last_active = utc_now() - timedelta(minutes=5)
        return await protocol.liveness_sweep(), await protocol.liveness_sweep()

    first, second = asyncio.run(scenario())
    assert first == [stale.user_id]
    assert second == []
    assert user_repo.get_user(stale.user_id).status == UserStatus.OFFLINE
    assert user_repo.get_user(connected.user_id).status == UserStatus.ONLINE
    assert events(pushed) == [ServerEvent.USERS_COUNT, ServerEvent.ACTIVE_PLAYERS]
