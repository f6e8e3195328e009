"""Jobs, worker responses and batch bookkeeping for the embedding pipeline."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from PIL import Image

    from patchembed.geometry import CandidateRegion
    from patchembed.store.schemas import EmbeddingRecord


BatchStatus = Literal["generating", "failed some", "completed", "cancelled"]


class BatchState(str, Enum):
    """States of the PipelineDriver over one batch."""

    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_RESULT = "awaiting_result"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PipelineJob:
    """One region to embed, together with its fetched tile.

    Attributes:
        image_id: Identifier of the source image.
        model_id: Registry name of the embedding model.
        region: Candidate region the tile covers.
        index: Position of the region in the driver's ordered sequence.
        is_final: True for the last region of the batch.
        tile: RGB tile whose long side equals the region's long side.
    """

    image_id: str
    model_id: str
    region: CandidateRegion
    index: int
    is_final: bool
    tile: Image.Image = field(repr=False)


@dataclass(frozen=True)
class EmbeddingsReady:
    """Successful worker response: one record per sub-patch."""

    records: list[EmbeddingRecord]
    is_final: bool


@dataclass(frozen=True)
class WorkerFailure:
    """Failed worker response; the driver logs it and moves on."""

    reason: str
    is_final: bool = False


WorkerResponse = EmbeddingsReady | WorkerFailure


class CancellationToken:
    """Thread-safe flag the driver checks before each dispatch."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return True once cancel() has been called."""
        return self._event.is_set()


class BatchResult(BaseModel):
    """Outcome of one generate run.

    Attributes:
        image_id: Image the batch embedded.
        model_id: Model used.
        total_regions: Number of candidate regions in the batch.
        succeeded: Indices of regions whose records were persisted.
        failures: Failure reason keyed by region index.
        cancelled: True if the batch stopped on a cancellation request.
        records_written: Number of records persisted by this batch.
        status: Last user-facing status string.
    """

    model_config = ConfigDict(protected_namespaces=())

    image_id: str
    model_id: str
    total_regions: int = Field(default=0, ge=0)
    succeeded: list[int] = Field(default_factory=list)
    failures: dict[int, str] = Field(default_factory=dict)
    cancelled: bool = False
    records_written: int = Field(default=0, ge=0)
    status: BatchStatus = "generating"

    @property
    def failed_count(self) -> int:
        """Return how many regions failed."""
        return len(self.failures)
