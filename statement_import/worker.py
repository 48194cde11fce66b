"""
Background Pipeline Worker

Runs import pipelines off the request path. Jobs wait in a bounded
asyncio.Queue served by a fixed number of worker tasks; when the queue
is full, submit() waits for room instead of spawning more work.

A watchdog task fails sessions that are still PARSING past their
deadline (worker crash, hung AI call).
"""

import asyncio
from typing import TYPE_CHECKING, Optional
from uuid import UUID

import structlog

if TYPE_CHECKING:
    from statement_import.parsing import ParsedStatement
    from statement_import.orchestrator import ImportSessionOrchestrator


logger = structlog.get_logger()


class PipelineWorker:
    """
    Bounded worker pool for import pipelines.

    Usage:
        worker = PipelineWorker(orchestrator)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        orchestrator: "ImportSessionOrchestrator",
        worker_count: int = 2,
        queue_size: int = 32,
        watchdog_interval_seconds: float = 60.0,
    ):
        if worker_count < 1 or queue_size < 1:
            raise ValueError("worker_count and queue_size must be at least 1")
        self._orchestrator = orchestrator
        self._worker_count = worker_count
        self._queue_size = queue_size
        self._watchdog_interval = watchdog_interval_seconds
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        orchestrator.bind_dispatcher(self)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        """Jobs waiting for a worker."""
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        """Start the worker tasks and the watchdog in the running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._tasks = [
            asyncio.create_task(self._work(n), name=f"pipeline-worker-{n}")
            for n in range(self._worker_count)
        ]
        self._tasks.append(asyncio.create_task(self._watchdog(), name="pipeline-watchdog"))
        logger.info("pipeline_worker_started", workers=self._worker_count)

    async def stop(self) -> None:
        """Cancel all tasks. Queued jobs are dropped; the watchdog of the next run fails them."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("pipeline_worker_stopped", dropped=self.pending)
        self._queue = None

    async def submit(self, session_id: UUID, statement: "ParsedStatement") -> None:
        """Queue a pipeline job, waiting while the queue is full."""
        if self._queue is None:
            raise RuntimeError("Pipeline worker is not running")
        await self._queue.put((session_id, statement))
        logger.debug("pipeline_job_queued", session_id=str(session_id), pending=self.pending)

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def _work(self, worker_id: int) -> None:
        while True:
            session_id, statement = await self._queue.get()
            try:
                await self._orchestrator.run_pipeline(session_id, statement)
            except Exception as e:
                logger.error(
                    "pipeline_job_crashed",
                    worker=worker_id,
                    session_id=str(session_id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()

    async def _watchdog(self) -> None:
        while True:
            await asyncio.sleep(self._watchdog_interval)
            try:
                expired = await self._orchestrator.expire_stale_sessions()
            except Exception as e:
                logger.error("watchdog_sweep_failed", error=str(e))
                continue
            if expired:
                logger.warning("watchdog_expired_sessions", count=len(expired))
