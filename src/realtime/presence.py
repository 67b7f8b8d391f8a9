"""
Connection <-> user mapping.

One entry per connected user. A disconnected entry is kept for the grace period so a reconnect can pick up
its rooms; the entry is dropped when the grace timer fires.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass
class Presence:
    user_id: UUID
    username: str
    connection_id: Optional[str]
    last_active: float
    rooms: set[str] = field(default_factory=set)
    grace_timer: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self.connection_id is not None


ExpiryCallback = Callable[[Presence], Awaitable[None]]


class PresenceTracker:
    def __init__(
        self, grace_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.grace_seconds = grace_seconds
        self.clock = clock
        self._by_user: dict[UUID, Presence] = {}
        self._by_connection: dict[str, UUID] = {}

    def bind(self, user_id: UUID, username: str, connection_id: str) -> tuple[Presence, bool]:
        """
        Attach a new connection to the user.
        ----
        Returns the presence entry and whether it was restored from a previous connection
        (a pending grace timer is cancelled in that case).
        """
        existing = self._by_user.get(user_id)
        if existing is None:
            presence = Presence(user_id, username, connection_id, self.clock())
            self._by_user[user_id] = presence
            self._by_connection[connection_id] = user_id
            return presence, False

        if existing.grace_timer is not None:
            existing.grace_timer.cancel()
            existing.grace_timer = None
        if existing.connection_id is not None:
            # a second tab replaces the first one
            self._by_connection.pop(existing.connection_id, None)
        existing.connection_id = connection_id
        existing.last_active = self.clock()
        self._by_connection[connection_id] = user_id
        logger.info("User %s reconnected as %s", existing.username, connection_id)
        return existing, True

    def for_connection(self, connection_id: str) -> Optional[Presence]:
        user_id = self._by_connection.get(connection_id)
        return self._by_user.get(user_id) if user_id is not None else None

    def for_user(self, user_id: UUID) -> Optional[Presence]:
        return self._by_user.get(user_id)

    def connection_of(self, user_id: UUID) -> Optional[str]:
        presence = self._by_user.get(user_id)
        return presence.connection_id if presence else None

    def connected_users(self) -> list[UUID]:
        return [p.user_id for p in self._by_user.values() if p.connected]

    def touch(self, presence: Presence) -> None:
        presence.last_active = self.clock()

    def release(self, connection_id: str, on_expire: ExpiryCallback) -> Optional[Presence]:
        """Detach a closed connection and start the grace timer of its user."""
        user_id = self._by_connection.pop(connection_id, None)
        presence = self._by_user.get(user_id) if user_id is not None else None
        if presence is None or presence.connection_id != connection_id:
            return None

        presence.connection_id = None
        presence.grace_timer = asyncio.create_task(self._expire_after_grace(presence, on_expire))
        return presence

    def drop(self, user_id: UUID) -> None:
        presence = self._by_user.pop(user_id, None)
        if presence is None:
            return
        if presence.grace_timer is not None and presence.grace_timer is not asyncio.current_task():
            presence.grace_timer.cancel()
        if presence.connection_id is not None:
            self._by_connection.pop(presence.connection_id, None)

    def cancel_timers(self) -> None:
        for presence in self._by_user.values():
            if presence.grace_timer is not None:
                presence.grace_timer.cancel()

    async def _expire_after_grace(self, presence: Presence, on_expire: ExpiryCallback) -> None:
        await asyncio.sleep(self.grace_seconds)
        if presence.connected or self._by_user.get(presence.user_id) is not presence:
            return
        self.drop(presence.user_id)
        try:
            await on_expire(presence)
        except Exception:
            logger.exception("Going offline failed for user %s", presence.username)
