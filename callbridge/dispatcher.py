"""
Background dispatcher for utterance tasks.

Webhook handlers hand work items over with submit() and return immediately;
the dispatcher owns each task's lifecycle and is its error boundary.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .models import UtteranceTask

logger = logging.getLogger(__name__)

TaskHandler = Callable[[UtteranceTask], Awaitable[None]]


class UtteranceDispatcher:
    """
    Queue-fed worker that runs every submitted task as its own asyncio task.

    Tasks interleave on the event loop; there is no per-caller ordering and no
    deduplication. Running tasks are only cancelled at shutdown, after the
    grace period.
    """

    def __init__(self, handler: TaskHandler, shutdown_grace: float = 5.0):
        """
        Args:
            handler: Coroutine function run for each task
            shutdown_grace: Seconds stop() waits for in-flight tasks
        """
        self.handler = handler
        self.shutdown_grace = shutdown_grace
        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Queued plus in-flight tasks."""
        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._in_flight)

    async def start(self):
        """Start the consumer loop."""
        if self._running:
            logger.warning("Utterance dispatcher already running")
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("Utterance dispatcher started")

    async def stop(self):
        """Stop intake, let in-flight tasks finish, cancel stragglers."""
        if not self._running:
            return

        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        # Queued items never started; run them like the rest so no caller is dropped
        while self._queue is not None and not self._queue.empty():
            self._spawn(self._queue.get_nowait())

        if self._in_flight:
            logger.info(f"Waiting up to {self.shutdown_grace}s for {len(self._in_flight)} task(s)")
            _, still_running = await asyncio.wait(set(self._in_flight), timeout=self.shutdown_grace)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning(f"Cancelled {len(still_running)} unfinished task(s) at shutdown")

        logger.info("Utterance dispatcher stopped")

    def submit(self, task: UtteranceTask) -> None:
        """Hand a task over without waiting for it.

        Raises:
            RuntimeError: If the dispatcher is not running
        """
        if not self._running or self._queue is None:
            raise RuntimeError("Utterance dispatcher is not running")
        self._queue.put_nowait(task)
        logger.debug(f"[{task.call_sid}] Task queued ({self.pending} pending)")

    async def join(self):
        """Wait until every submitted task has finished."""
        if self._queue is not None:
            await self._queue.join()
        while self._in_flight:
            await asyncio.gather(*set(self._in_flight), return_exceptions=True)

    async def _run_loop(self):
        while self._running:
            task = await self._queue.get()
            self._spawn(task)

    def _spawn(self, task: UtteranceTask) -> None:
        runner = asyncio.create_task(self._run(task))
        self._in_flight.add(runner)
        runner.add_done_callback(self._in_flight.discard)

    async def _run(self, task: UtteranceTask):
        try:
            await self.handler(task)
        except asyncio.CancelledError:
            logger.warning(f"[{task.call_sid}] Task cancelled")
            raise
        except Exception as e:
            logger.error(f"[{task.call_sid}] Unhandled error in utterance task: {e}", exc_info=True)
        finally:
            self._queue.task_done()
