"""Best-effort fan-out of pipeline lifecycle events.

Delivery is synchronous and in emission order per subscriber. A subscriber
that raises is logged and skipped for that event; nothing is queued or
replayed for subscribers that join later.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .models import PipelineEvent

logger = logging.getLogger(__name__)

PIPELINE_STARTED = "pipeline:started"
PIPELINE_PLANNING = "pipeline:planning"
PIPELINE_PLANNED = "pipeline:planned"
STEP_STARTED = "pipeline:step:started"
STEP_COMPLETED = "pipeline:step:completed"
STEP_FAILED = "pipeline:step:failed"
PIPELINE_COMPLETED = "pipeline:completed"
PIPELINE_FAILED = "pipeline:failed"

Subscriber = Callable[[PipelineEvent], None]


class EventBroadcaster:
    def __init__(self) -> None:
        self._subscribers: dict[int, Subscriber] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber``; the returned callable unsubscribes it."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = subscriber

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: str, pipeline_id: str, data: dict[str, Any] | None = None) -> PipelineEvent:
        message = PipelineEvent(
            event=event,
            pipeline_id=pipeline_id,
            data=data or {},
            timestamp=datetime.now(tz=UTC),
        )
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            try:
                subscriber(message)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "events event=subscriber_failed name=%s pipeline_id=%s reason=%s",
                    event,
                    pipeline_id,
                    exc,
                )
        return message


class QueueSubscriber:
    """Bridges worker-thread events onto an asyncio queue owned by one WebSocket session.

    Events are dropped when the queue is full or the loop has closed.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, maxsize: int = 256) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[PipelineEvent] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, event: PipelineEvent) -> None:
        try:
            self.loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            logger.debug("events event=dropped reason=loop_closed pipeline_id=%s", event.pipeline_id)

    def _offer(self, event: PipelineEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("events event=dropped reason=queue_full pipeline_id=%s", event.pipeline_id)
