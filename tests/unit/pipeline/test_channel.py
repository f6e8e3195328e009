"""Tests for patchembed.pipeline.channel module."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import pytest
from PIL import Image

from patchembed.errors import WorkerBusyTimeout
from patchembed.geometry import CandidateRegion
from patchembed.models.registry import ModelRegistry
from patchembed.pipeline.channel import EmbeddingWorkerChannel
from patchembed.pipeline.messages import EmbeddingsReady, PipelineJob, WorkerFailure
from patchembed.pipeline.worker import EmbeddingWorker


def _job(index: int = 0) -> PipelineJob:
    return PipelineJob(
        image_id="slide-1",
        model_id="Tiny",
        region=CandidateRegion(x=0, y=0, width=32, height=32, empty_proportion=0.0),
        index=index,
        is_final=False,
        tile=Image.new("RGB", (32, 32), color=(150, 60, 120)),
    )


class BlockingWorker:
    """Worker whose process() blocks until released."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.started = threading.Event()

    def process(self, job: PipelineJob) -> WorkerFailure:
        self.started.set()
        self.release.wait(timeout=5)
        return WorkerFailure(reason=f"released {job.index}", is_final=job.is_final)


class CrashingWorker:
    """Worker that breaks the never-raises contract."""

    def process(self, job: PipelineJob) -> Any:
        raise RuntimeError("segfault-ish")


class TestChannelInit:
    """Tests for EmbeddingWorkerChannel construction."""

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"poll_interval": 0}, "poll_interval"),
            ({"max_wait": -1.0}, "max_wait"),
            ({"max_in_flight": 0}, "max_in_flight"),
        ],
    )
    def test_rejects_non_positive_parameters(
        self, kwargs: dict[str, Any], message: str
    ) -> None:
        with pytest.raises(ValueError, match=message):
            EmbeddingWorkerChannel(BlockingWorker(), **kwargs)  # type: ignore[arg-type]

    def test_starts_idle(self) -> None:
        channel = EmbeddingWorkerChannel(BlockingWorker())  # type: ignore[arg-type]
        assert channel.is_idle
        assert channel.in_flight == 0
        assert channel.max_in_flight == 1


class TestChannelSubmit:
    """Tests for submit() and response delivery."""

    @pytest.mark.asyncio
    async def test_submit_resolves_with_worker_response(
        self, tiny_registry: ModelRegistry, backend_factory: Any
    ) -> None:
        worker = EmbeddingWorker(tiny_registry, backend_factory)
        async with EmbeddingWorkerChannel(worker, poll_interval=0.01) as channel:
            future = await channel.submit(_job())
            response = await future

            assert isinstance(response, EmbeddingsReady)
            assert len(response.records) == 1
            assert channel.in_flight == 0
            assert channel.is_idle

    @pytest.mark.asyncio
    async def test_busy_worker_times_out_second_submit(self) -> None:
        worker = BlockingWorker()
        channel = EmbeddingWorkerChannel(
            worker,  # type: ignore[arg-type]
            poll_interval=0.01,
            max_wait=0.1,
        )
        try:
            first = await channel.submit(_job(0))
            assert not channel.is_idle

            with pytest.raises(WorkerBusyTimeout, match="still busy"):
                await channel.submit(_job(1))

            worker.release.set()
            response = await first
            assert isinstance(response, WorkerFailure)
            assert response.reason == "released 0"
        finally:
            worker.release.set()
            await channel.aclose()

    @pytest.mark.asyncio
    async def test_submit_waits_for_slot_to_free(self) -> None:
        worker = BlockingWorker()
        channel = EmbeddingWorkerChannel(
            worker,  # type: ignore[arg-type]
            poll_interval=0.01,
            max_wait=2.0,
        )
        try:
            first = await channel.submit(_job(0))
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, worker.release.set)

            second = await channel.submit(_job(1))

            assert first.done()
            assert (await second).reason == "released 1"  # type: ignore[union-attr]
        finally:
            worker.release.set()
            await channel.aclose()

    @pytest.mark.asyncio
    async def test_max_in_flight_allows_parallel_jobs(self) -> None:
        worker = BlockingWorker()
        channel = EmbeddingWorkerChannel(
            worker,  # type: ignore[arg-type]
            poll_interval=0.01,
            max_wait=0.1,
            max_in_flight=2,
        )
        try:
            futures = [await channel.submit(_job(i)) for i in range(2)]
            assert channel.in_flight == 2

            with pytest.raises(WorkerBusyTimeout):
                await channel.submit(_job(2))

            worker.release.set()
            responses = await asyncio.gather(*futures)
            assert sorted(r.reason for r in responses) == [  # type: ignore[union-attr]
                "released 0",
                "released 1",
            ]
        finally:
            worker.release.set()
            await channel.aclose()

    @pytest.mark.asyncio
    async def test_worker_exception_becomes_failure(self) -> None:
        async with EmbeddingWorkerChannel(
            CrashingWorker(),  # type: ignore[arg-type]
            poll_interval=0.01,
        ) as channel:
            response = await (await channel.submit(_job()))

            assert isinstance(response, WorkerFailure)
            assert response.reason == "segfault-ish"
            assert channel.is_idle


class TestChannelClose:
    """Tests for aclose()."""

    @pytest.mark.asyncio
    async def test_submit_after_close_raises(self) -> None:
        channel = EmbeddingWorkerChannel(BlockingWorker())  # type: ignore[arg-type]
        await channel.aclose()

        with pytest.raises(RuntimeError, match="closed"):
            await channel.submit(_job())

    @pytest.mark.asyncio
    async def test_close_is_idempotent(
        self, tiny_registry: ModelRegistry, backend_factory: Any
    ) -> None:
        channel = EmbeddingWorkerChannel(EmbeddingWorker(tiny_registry, backend_factory))
        await (await channel.submit(_job()))
        await channel.aclose()
        await channel.aclose()
