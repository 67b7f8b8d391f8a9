"""Per-mode FIFO waiting lists of players looking for an opponent."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from src.core.exceptions import AlreadyQueuedError
from src.core.models import utc_now
from src.core.shared_types import MatchMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    user_id: UUID
    time_control: str
    mode: MatchMode
    enqueued_at: datetime


@dataclass(frozen=True)
class Match:
    """Two compatible entries taken off a queue. 'first' arrived earlier than 'second'."""

    first: QueueEntry
    second: QueueEntry

    @property
    def mode(self) -> MatchMode:
        return self.first.mode

    @property
    def time_control(self) -> str:
        return self.first.time_control

    @property
    def user_ids(self) -> tuple[UUID, UUID]:
        return self.first.user_id, self.second.user_id


class MatchmakingQueue:
    """
    One waiting list per mode. A user is in at most one list at a time.
    ----
    All mutations share one queue-wide lock, so concurrent enqueue / cancel requests are applied one by one.
    """

    def __init__(self) -> None:
        self._queues: dict[MatchMode, list[QueueEntry]] = {mode: [] for mode in MatchMode}
        self._lock = asyncio.Lock()

    async def enqueue(
        self, user_id: UUID, mode: MatchMode, time_control: str
    ) -> Optional[Match]:
        """Add the user to the mode's queue and immediately try to pair someone."""
        async with self._lock:
            if self._find(user_id) is not None:
                raise AlreadyQueuedError(f"User {user_id} is already looking for a match.")
            self._queues[mode].append(QueueEntry(user_id, time_control, mode, utc_now()))
            logger.info(
                "User %s queued for a %s %s game (%d waiting)",
                user_id,
                mode,
                time_control,
                len(self._queues[mode]),
            )
            return self._pair(mode)

    async def attempt_match(self, mode: MatchMode) -> Optional[Match]:
        async with self._lock:
            return self._pair(mode)

    async def dequeue(self, user_id: UUID) -> bool:
        """Remove any entry of the user. Returns whether there was one."""
        async with self._lock:
            found = self._find(user_id)
            if found is None:
                return False
            self._queues[found.mode].remove(found)
            logger.info("User %s left the %s queue", user_id, found.mode)
            return True

    def is_queued(self, user_id: UUID) -> bool:
        return self._find(user_id) is not None

    def position(self, user_id: UUID) -> Optional[int]:
        """1-based place of the user in their queue."""
        found = self._find(user_id)
        if found is None:
            return None
        return self._queues[found.mode].index(found) + 1

    def snapshot(self, mode: MatchMode) -> list[QueueEntry]:
        return list(self._queues[mode])

    # -- Internal helpers --
    def _find(self, user_id: UUID) -> Optional[QueueEntry]:
        for queue in self._queues.values():
            for entry in queue:
                if entry.user_id == user_id:
                    return entry
        return None

    def _pair(self, mode: MatchMode) -> Optional[Match]:
        """
        First compatible pair in arrival order.
        ----
        For entry i, look at the entries after it for the first with the same time control.
        Both are removed; everyone else keeps their relative order.
        """
        queue = self._queues[mode]
        for i, first in enumerate(queue):
            for second in queue[i + 1 :]:
                if first.time_control == second.time_control:
                    queue.remove(first)
                    queue.remove(second)
                    logger.info(
                        "Matched %s with %s (%s, %s)",
                        first.user_id,
                        second.user_id,
                        mode,
                        first.time_control,
                    )
                    return Match(first, second)
        return None
