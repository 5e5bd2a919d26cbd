"""
services/progress.py
In-process channel for issuance progress events.

The issuance service publishes typed events; transports (the SSE endpoint)
subscribe with a batch and/or project scope. Delivery is best-effort: a
subscriber that falls behind loses events rather than blocking issuance.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from app.models.event_model import AnyProgressEvent, ProgressEvent
from app.utils.helpers import get_logger

logger = get_logger(__name__)


@dataclass(eq=False)
class Subscription:
    queue: "asyncio.Queue[AnyProgressEvent]"
    batch_id: Optional[str] = None
    project_id: Optional[str] = None

    def matches(self, event: ProgressEvent) -> bool:
        if self.batch_id is not None and event.batch_id != self.batch_id:
            return False
        if self.project_id is not None and event.project_id != self.project_id:
            return False
        return True


class ProgressBroadcaster:
    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: AnyProgressEvent) -> None:
        """Hand `event` to every matching subscriber without waiting."""
        for sub in list(self._subscriptions):
            if not sub.matches(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.type} for slow subscriber (batch={sub.batch_id})")

    @asynccontextmanager
    async def subscribe(
        self, batch_id: Optional[str] = None, project_id: Optional[str] = None
    ) -> AsyncIterator["asyncio.Queue[AnyProgressEvent]"]:
        sub = Subscription(asyncio.Queue(maxsize=self.max_queue_size), batch_id, project_id)
        self._subscriptions.append(sub)
        try:
            yield sub.queue
        finally:
            self._subscriptions.remove(sub)
