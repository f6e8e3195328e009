"""Sequential batch driver over an ordered list of candidate regions.

For each region in turn the driver fetches a tile, submits one job to the
worker channel, waits for the response and persists the records before
moving on. Per-region failures are logged and skipped; the batch always
finishes and always fires its done event.

State machine::

    IDLE -> DISPATCHING(i) -> AWAITING_RESULT(i) -> DISPATCHING(i+1)
                                                 -> COMPLETED
    any DISPATCHING(i) with a cancel request     -> ABORTED
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from patchembed.errors import StoreWriteError, TileFetchError, WorkerBusyTimeout
from patchembed.pipeline.messages import (
    BatchResult,
    BatchState,
    BatchStatus,
    PipelineJob,
    WorkerFailure,
)
from patchembed.utils.logging import (
    clear_correlation_context,
    get_logger,
    set_correlation_context,
)

if TYPE_CHECKING:
    from PIL import Image

    from patchembed.geometry import CandidateRegion
    from patchembed.pipeline.channel import EmbeddingWorkerChannel
    from patchembed.pipeline.messages import CancellationToken, WorkerResponse
    from patchembed.store.spatial_store import SpatialEmbeddingStore
    from patchembed.wsi.types import TileSource

logger = get_logger(__name__)


class PipelineDriver:
    """Drive one image's candidate regions through the worker, one at a time.

    The done event is set once per run, after the last region has been
    attempted or the run was cancelled.

    Usage:
        driver = PipelineDriver(source, channel, store, image_id="s1", model_id="CTransPath")
        result = await driver.run(regions)
        assert driver.batch_done.is_set()
    """

    def __init__(
        self,
        source: TileSource,
        channel: EmbeddingWorkerChannel,
        store: SpatialEmbeddingStore,
        *,
        image_id: str,
        model_id: str,
    ) -> None:
        self._source = source
        self._channel = channel
        self._store = store
        self._image_id = image_id
        self._model_id = model_id
        self._state = BatchState.IDLE
        self._status: BatchStatus = "generating"
        self._batch_done = asyncio.Event()

    @property
    def state(self) -> BatchState:
        """Return the current state."""
        return self._state

    @property
    def status(self) -> BatchStatus:
        """Return the last user-facing status string."""
        return self._status

    @property
    def batch_done(self) -> asyncio.Event:
        """Return the event set when a run finishes."""
        return self._batch_done

    async def run(
        self,
        regions: Sequence[CandidateRegion],
        cancel_token: CancellationToken | None = None,
    ) -> BatchResult:
        """Embed every region and persist the results.

        Args:
            regions: Candidate regions in processing order.
            cancel_token: Checked before each dispatch.

        Returns:
            BatchResult summarising successes, failures and cancellation.

        Raises:
            RuntimeError: If a run is already in progress on this driver.
        """
        if self._state in (BatchState.DISPATCHING, BatchState.AWAITING_RESULT):
            raise RuntimeError("A batch is already running on this driver")

        self._batch_done.clear()
        self._status = "generating"
        result = BatchResult(
            image_id=self._image_id,
            model_id=self._model_id,
            total_regions=len(regions),
        )
        set_correlation_context(image_id=self._image_id, model_id=self._model_id)
        logger.info("Batch started", regions=len(regions))

        try:
            for index, region in enumerate(regions):
                if cancel_token is not None and cancel_token.cancelled:
                    result.cancelled = True
                    break
                await self._process_region(index, region, len(regions), result)

            await self._finish(result)
        finally:
            if self._state not in (BatchState.COMPLETED, BatchState.ABORTED):
                self._state = BatchState.ABORTED
            self._batch_done.set()
            clear_correlation_context()
        return result

    async def _process_region(
        self,
        index: int,
        region: CandidateRegion,
        total: int,
        result: BatchResult,
    ) -> None:
        self._state = BatchState.DISPATCHING
        set_correlation_context(region_index=index)

        try:
            tile = await self._fetch_tile(region)
        except TileFetchError as e:
            self._record_failure(result, index, e)
            return

        job = PipelineJob(
            image_id=self._image_id,
            model_id=self._model_id,
            region=region,
            index=index,
            is_final=index == total - 1,
            tile=tile,
        )

        try:
            response = await self._dispatch(job)
        except WorkerBusyTimeout as e:
            self._record_failure(result, index, e)
            return

        if isinstance(response, WorkerFailure):
            self._record_failure(result, index, response.reason)
            return

        try:
            stored = await asyncio.to_thread(self._store.put_many, response.records)
        except StoreWriteError as e:
            self._record_failure(result, index, e)
            return

        result.succeeded.append(index)
        result.records_written += len(stored)
        logger.debug("Region embedded", records=len(stored))

    async def _fetch_tile(self, region: CandidateRegion) -> Image.Image:
        try:
            return await asyncio.to_thread(
                self._source.get_tile, region.to_region(), region.long_side
            )
        except TileFetchError:
            raise
        except Exception as e:
            raise TileFetchError(
                f"Tile source failed: {e}", region=region.to_tuple()
            ) from e

    async def _dispatch(self, job: PipelineJob) -> WorkerResponse:
        future = await self._channel.submit(job)
        self._state = BatchState.AWAITING_RESULT
        try:
            return await asyncio.wait_for(future, timeout=self._channel.max_wait)
        except TimeoutError as e:
            raise WorkerBusyTimeout(
                "No worker response before timeout",
                max_wait=self._channel.max_wait,
                region_index=job.index,
            ) from e

    def _record_failure(
        self,
        result: BatchResult,
        index: int,
        error: Exception | str,
    ) -> None:
        result.failures[index] = str(error)
        self._status = "failed some"
        logger.warning("Region skipped", error=str(error))

    async def _finish(self, result: BatchResult) -> None:
        try:
            await asyncio.to_thread(self._store.refresh_summary, self._image_id)
        except StoreWriteError as e:
            logger.error("Summary refresh failed", error=str(e))

        if result.cancelled:
            self._state = BatchState.ABORTED
            self._status = "cancelled"
        else:
            self._state = BatchState.COMPLETED
            self._status = "failed some" if result.failures else "completed"
        result.status = self._status

        logger.info(
            "Batch finished",
            status=self._status,
            succeeded=len(result.succeeded),
            failed=result.failed_count,
            records=result.records_written,
        )

