"""Event bus → router bridge with per-source ordering.

Each ordering key gets its own FIFO queue and a single worker task, so
events for one pipeline run or stage are delivered in the order they were
published while unrelated sources proceed independently. ``enqueue`` never
awaits, so publishing never blocks pipeline execution.

With a ``flush_interval`` a background task also flushes closed dedup
windows, so repeat summaries go out without waiting for the next event.
"""

from __future__ import annotations

import asyncio
import logging

from conveyor.events import EventBus, NotificationEvent
from conveyor.notifications.router import NotificationRouter

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        router: NotificationRouter,
        bus: EventBus,
        *,
        flush_interval: float | None = None,
    ):
        self._router = router
        self._bus = bus
        self._flush_interval = flush_interval
        self._queues: dict[str, asyncio.Queue[NotificationEvent]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._flush_task: asyncio.Task | None = None
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._bus.subscribe(self.enqueue)
        if self._flush_interval:
            self._flush_task = asyncio.create_task(self._flush_loop(), name="notify-flush")
        self._started = True
        logger.info("Notification dispatcher started (flush interval=%ss)", self._flush_interval)

    def enqueue(self, event: NotificationEvent) -> None:
        key = event.key
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._worker(key, queue), name=f"notify-{key[:24]}"
            )
        queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been routed."""
        while self._queues:
            await asyncio.gather(*(q.join() for q in list(self._queues.values())))
            await asyncio.sleep(0)

    async def stop(self, timeout: float = 10.0) -> None:
        self._bus.unsubscribe(self.enqueue)
        self._started = False
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Notification drain timed out with %d source(s) pending", len(self._queues)
            )
        for task in self._workers.values():
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        logger.info("Notification dispatcher stopped")

    async def _worker(self, key: str, queue: asyncio.Queue[NotificationEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._router.route(event)
            except Exception:
                logger.exception("Notification routing failed for %s", event.source_id)
            finally:
                queue.task_done()
            if queue.empty():
                # No await between the check and removal: enqueue cannot interleave
                self._queues.pop(key, None)
                self._workers.pop(key, None)
                return

    async def _flush_loop(self) -> None:
        """Summarize closed dedup windows between events, not only at shutdown."""
        while True:
            try:
                await asyncio.sleep(self._flush_interval)
                summaries = await self._router.flush()
                if summaries:
                    logger.info("Flushed %d repeat summary delivery(ies)", len(summaries))
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Notification flush failed")
