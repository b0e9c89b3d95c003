"""Background channel for learning observability writes.

Audit rows, metric appends, snapshots and embedding backfills are submitted
here instead of being written inline. A single consumer task drains an
asyncio.Queue, opening its own session per item, so a failing metrics write
never touches the caller's transaction or result.

Without a running worker (scripts, tests) flush() processes the queue inline.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from orgbrain.db.engine import SessionLocal

logger = structlog.get_logger(__name__)

RecordFn = Callable[[Session], object]
SessionFactory = Callable[[], Session]


class LearningRecorder:
    """Fire-and-forget writer for audits, metrics and backfills.

    submit() never blocks and never raises. Items that fail are logged and
    dropped.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        max_pending: int = 1000,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._worker: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, name: str, fn: RecordFn) -> None:
        """Queue a write. Dropped with a warning if the queue is full."""
        try:
            self._queue.put_nowait((name, fn))
        except asyncio.QueueFull:
            logger.warning("learning_recorder_queue_full", item=name, pending=self.pending)

    def _process(self, name: str, fn: RecordFn) -> None:
        session = self._session_factory()
        try:
            fn(session)
            session.commit()
            self.processed += 1
        except Exception:
            session.rollback()
            self.failed += 1
            logger.exception("learning_recorder_item_failed", item=name)
        finally:
            session.close()

    def _drain_inline(self) -> None:
        while True:
            try:
                name, fn = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                self._process(name, fn)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            name, fn = await self._queue.get()
            try:
                self._process(name, fn)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        """Start the consumer task on the running loop."""
        if self.running:
            return
        self._worker = asyncio.get_running_loop().create_task(self._run())
        logger.info("learning_recorder_started")

    async def flush(self) -> None:
        """Wait until every submitted item has been processed."""
        if self.running:
            await self._queue.join()
        else:
            self._drain_inline()

    async def stop(self) -> None:
        """Drain remaining items, then cancel the worker."""
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            logger.info(
                "learning_recorder_stopped", processed=self.processed, failed=self.failed
            )


# Module-level instance used by the FastAPI app
learning_recorder = LearningRecorder()
