"""Request/response channel between the pipeline driver and the worker.

submit() waits until fewer than ``max_in_flight`` jobs are outstanding,
polling at a fixed interval, and then hands the job to a consumer task that
runs the worker in a thread. The returned future resolves to the worker's
EmbeddingsReady or WorkerFailure message. A job counts as in flight until
its response has been delivered, so a hung worker keeps the channel busy
and later submissions time out with WorkerBusyTimeout.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

from patchembed.errors import WorkerBusyTimeout
from patchembed.pipeline.messages import WorkerFailure
from patchembed.utils.logging import get_logger

if TYPE_CHECKING:
    from patchembed.pipeline.messages import PipelineJob, WorkerResponse
    from patchembed.pipeline.worker import EmbeddingWorker

logger = get_logger(__name__)

_QueueItem = tuple["PipelineJob", "asyncio.Future[WorkerResponse]"]


class EmbeddingWorkerChannel:
    """Bounded-concurrency channel to an EmbeddingWorker.

    Usage:
        channel = EmbeddingWorkerChannel(worker)
        future = await channel.submit(job)
        response = await future
        await channel.aclose()
    """

    def __init__(
        self,
        worker: EmbeddingWorker,
        *,
        poll_interval: float = 0.1,
        max_wait: float = 100.0,
        max_in_flight: int = 1,
    ) -> None:
        """Initialize the channel.

        Args:
            worker: Worker whose process() runs each job.
            poll_interval: Seconds between idle checks while waiting to submit.
            max_wait: Seconds to wait for a free slot before giving up.
            max_in_flight: Maximum number of outstanding jobs.

        Raises:
            ValueError: If any parameter is not positive.
        """
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {poll_interval}")
        if max_wait <= 0:
            raise ValueError(f"max_wait must be > 0, got {max_wait}")
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")

        self._worker = worker
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._max_in_flight = max_in_flight
        self._in_flight = 0
        self._queue: asyncio.Queue[_QueueItem] | None = None
        self._consumers: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def poll_interval(self) -> float:
        """Return the idle-check interval in seconds."""
        return self._poll_interval

    @property
    def max_wait(self) -> float:
        """Return the busy-wait limit in seconds."""
        return self._max_wait

    @property
    def max_in_flight(self) -> int:
        """Return the concurrency limit."""
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        """Return the number of jobs whose response is not yet delivered."""
        return self._in_flight

    @property
    def is_idle(self) -> bool:
        """Return True if a job could be submitted right now."""
        return self._in_flight < self._max_in_flight

    def _ensure_started(self) -> asyncio.Queue[_QueueItem]:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._consumers = [
                asyncio.create_task(self._consume(self._queue))
                for _ in range(self._max_in_flight)
            ]
        return self._queue

    async def submit(self, job: PipelineJob) -> asyncio.Future[WorkerResponse]:
        """Dispatch a job once a slot is free.

        Returns:
            Future resolved with the worker's response message.

        Raises:
            WorkerBusyTimeout: If no slot frees up within max_wait.
            RuntimeError: If the channel has been closed.
        """
        if self._closed:
            raise RuntimeError("Channel is closed")
        queue = self._ensure_started()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_wait
        while not self.is_idle:
            if loop.time() >= deadline:
                raise WorkerBusyTimeout(
                    "Worker still busy after waiting",
                    max_wait=self._max_wait,
                    region_index=job.index,
                )
            await asyncio.sleep(self._poll_interval)

        self._in_flight += 1
        future: asyncio.Future[WorkerResponse] = loop.create_future()
        queue.put_nowait((job, future))
        logger.debug("Job submitted", region_index=job.index, in_flight=self._in_flight)
        return future

    async def _consume(self, queue: asyncio.Queue[_QueueItem]) -> None:
        while True:
            job, future = await queue.get()
            try:
                try:
                    response = await asyncio.to_thread(self._worker.process, job)
                except Exception as e:
                    logger.exception("Worker crashed", region_index=job.index)
                    response = WorkerFailure(reason=str(e), is_final=job.is_final)
                # An abandoned job's future is already cancelled
                if not future.done():
                    future.set_result(response)
            finally:
                if not future.done():
                    future.cancel()
                self._in_flight -= 1
                queue.task_done()

    async def aclose(self) -> None:
        """Stop the consumer tasks and cancel undelivered futures."""
        if self._closed:
            return
        self._closed = True
        for task in self._consumers:
            task.cancel()
        for task in self._consumers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._consumers = []

        if self._queue is not None:
            while not self._queue.empty():
                _job, future = self._queue.get_nowait()
                future.cancel()
            self._queue = None

    async def __aenter__(self) -> EmbeddingWorkerChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
