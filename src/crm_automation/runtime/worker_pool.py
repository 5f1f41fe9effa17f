"""Worker pool: drains due enrollments and queued domain events concurrently."""

import asyncio
import logging
import queue
import signal
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import List, Optional

from ..core.engine import WorkflowEngine
from ..core.events import DomainEvent

logger = logging.getLogger(__name__)


class EventQueue:
    """Thread-safe in-memory queue of domain events waiting for trigger matching."""

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[DomainEvent]" = queue.Queue(maxsize=maxsize)

    def put(self, event: DomainEvent) -> None:
        self._queue.put(event)

    def drain(self, max_items: int = 100) -> List[DomainEvent]:
        """Take up to ``max_items`` events without blocking."""
        events = []
        while len(events) < max_items:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def __len__(self) -> int:
        return self._queue.qsize()


@dataclass
class CycleReport:
    events: int = 0
    enrollments: int = 0
    date_trigger_enrollments: int = 0
    errors: int = 0


class WorkerPool:
    """
    Polling loop around one engine.

    Each cycle runs date triggers, then hands every queued event and every
    due enrollment to a thread pool. Enrollment leases keep two workers
    (in this process or another) from driving the same enrollment.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        events: Optional[EventQueue] = None,
        workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.engine = engine
        self.events = events or EventQueue()
        self.workers = workers or engine.config.workers.count
        self.poll_interval = poll_interval or engine.config.scheduler.poll_interval
        self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="crm-worker")
        self._running = False

    def submit_event(self, event: DomainEvent) -> None:
        self.events.put(event)

    def run_once(self, now: Optional[datetime] = None) -> CycleReport:
        """One synchronous cycle; blocks until every submitted job is done."""
        now = now or datetime.now(UTC)
        report = CycleReport()

        if self.engine.config.scheduler.date_triggers_enabled:
            try:
                report.date_trigger_enrollments = len(self.engine.scheduler.run_date_triggers(now))
            except Exception:
                logger.exception("Date trigger run failed")
                report.errors += 1

        futures = []
        for event in self.events.drain(self.engine.config.scheduler.batch_size):
            futures.append(("event", event.event_id, self._pool.submit(self.engine.handle_event, event)))
        for enrollment in self.engine.scheduler.due_enrollments(now):
            futures.append((
                "enrollment",
                enrollment.id,
                self._pool.submit(self.engine.process_enrollment, enrollment.id, now),
            ))

        for kind, item_id, future in futures:
            try:
                future.result()
            except Exception as e:
                logger.error(f"Worker failed on {kind} {item_id}: {e}")
                report.errors += 1
                continue
            if kind == "event":
                report.events += 1
            else:
                report.enrollments += 1

        if futures:
            logger.info(
                f"Cycle finished: {report.events} events, {report.enrollments} enrollments, "
                f"{report.errors} errors"
            )
        return report

    async def run(self) -> None:
        """Poll until ``stop`` is called."""
        self._running = True
        logger.info(f"🚀 Starting worker pool with {self.workers} workers")
        loop = asyncio.get_running_loop()

        while self._running:
            try:
                await loop.run_in_executor(None, self.run_once)
            except Exception as e:
                # Keep polling; a broken cycle must not stop the pool
                logger.error(f"Unhandled error in worker cycle: {e}", exc_info=True)
            if self._running:
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker pool stopped")

    def stop(self) -> None:
        logger.info("Stopping worker pool")
        self._running = False

    def setup_signal_handlers(self) -> None:
        """Stop the loop after the current cycle on SIGTERM/SIGINT."""
        def handler(sig, frame):
            logger.info(f"Received signal {sig}, shutting down")
            self.stop()

        signal.signal(signal.SIGTERM, handler)
        signal.signal(signal.SIGINT, handler)

    def close(self) -> None:
        self._pool.shutdown(wait=True)
