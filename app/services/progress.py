# =============================================================================
# Progress Channel — Best-Effort Workflow Event Fan-Out
# =============================================================================
#
# The orchestrator publishes one ProgressEvent per step transition. Each
# subscriber (an SSE connection) owns a bounded asyncio.Queue; publish uses
# put_nowait and drops the event for any subscriber whose queue is full, so
# a slow client never blocks a pipeline.
#
# No replay: a subscriber sees only events published after it subscribed.
# When a workflow reaches a terminal state the channel pushes a close marker
# (None) to its subscribers and forgets them.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    workflow_id: str
    step: str
    progress: int
    status: str
    message: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return asdict(self)


class ProgressChannel:
    """Per-workflow subscriber sets of bounded queues."""

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, workflow_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(workflow_id, set()).add(queue)
        return queue

    def unsubscribe(self, workflow_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(workflow_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[workflow_id]

    def subscriber_count(self, workflow_id: str) -> int:
        return len(self._subscribers.get(workflow_id, ()))

    def publish(self, event: ProgressEvent) -> None:
        """Deliver to every subscriber without blocking; full queues miss out."""
        for queue in list(self._subscribers.get(event.workflow_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(
                    "Dropping progress event for slow subscriber (workflow=%s)",
                    event.workflow_id,
                )

    def close(self, workflow_id: str) -> None:
        """Signal end-of-stream to all subscribers of a workflow."""
        for queue in self._subscribers.pop(workflow_id, set()):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drop the oldest event so the close marker gets through
                queue.get_nowait()
                queue.put_nowait(None)
