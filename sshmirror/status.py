"""Per-connection queue status, recent-activity ring and change channel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sshmirror.transfer import QueueItem

logger = logging.getLogger(__name__)

RECENT_LIMIT = 8
PHASE_IDLE = "idle"


@dataclass
class QueueStatus:
    """Aggregate state of one connection's transfer queue."""

    connection_id: str
    watching: bool = False
    pending: int = 0
    active: int = 0
    processed: int = 0
    failed: int = 0
    last_path: str | None = None
    last_error: str | None = None
    last_phase: str = PHASE_IDLE
    recent: list[QueueItem] = field(default_factory=list)


class StatusChannel:
    """Explicit fan-out of status snapshots to subscribed queues.

    Subscribers get their own :class:`asyncio.Queue`; a bounded queue that is
    full drops its oldest snapshot so the newest state always arrives.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[QueueStatus]] = []

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue[QueueStatus]:
        queue: asyncio.Queue[QueueStatus] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[QueueStatus]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            logger.debug("unsubscribe: queue was not subscribed")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, status: QueueStatus) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(status)


class StatusTracker:
    """Owns a connection's :class:`QueueStatus` and publishes every change.

    Published values are snapshots: the ``recent`` items are copied, so a
    subscriber never sees a later phase leak into an earlier notification.
    """

    def __init__(
        self,
        connection_id: str,
        channel: StatusChannel | None = None,
        recent_limit: int = RECENT_LIMIT,
    ) -> None:
        self._status = QueueStatus(connection_id=connection_id)
        self._channel = channel or StatusChannel()
        self._recent_limit = max(1, recent_limit)

    @property
    def channel(self) -> StatusChannel:
        return self._channel

    @property
    def status(self) -> QueueStatus:
        """The live status object (mutated in place; prefer :meth:`snapshot`)."""
        return self._status

    def snapshot(self) -> QueueStatus:
        return replace(self._status, recent=[replace(item) for item in self._status.recent])

    def update(self, **changes: Any) -> None:
        """Apply *changes* to the status fields and publish."""
        for name, value in changes.items():
            if not hasattr(self._status, name):
                raise AttributeError(f"QueueStatus has no field {name!r}")
            setattr(self._status, name, value)
        self.publish()

    def record_item(self, item: QueueItem) -> None:
        """Insert or refresh *item* in the most-recent-first ring and publish."""
        recent = self._status.recent
        for index, existing in enumerate(recent):
            if existing.id == item.id:
                recent[index] = item
                break
        else:
            recent.insert(0, item)
            del recent[self._recent_limit:]
        self.publish()

    def clear_history(self) -> None:
        self._status.recent = []
        self.publish()

    def publish(self) -> None:
        self._channel.publish(self.snapshot())
