"""Embedding pipeline: worker, bounded channel and sequential batch driver.

Key Components:
    - EmbeddingWorker: Sub-patches a tile and runs the model on each square
    - EmbeddingWorkerChannel: At-most-N-in-flight request/response channel
    - PipelineDriver: Walks candidate regions one at a time, persisting results
"""

from patchembed.pipeline.channel import EmbeddingWorkerChannel
from patchembed.pipeline.driver import PipelineDriver
from patchembed.pipeline.messages import (
    BatchResult,
    BatchState,
    BatchStatus,
    CancellationToken,
    EmbeddingsReady,
    PipelineJob,
    WorkerFailure,
    WorkerResponse,
)
from patchembed.pipeline.worker import (
    EmbeddingWorker,
    first_vector,
    split_into_subpatches,
    to_tensor,
)

__all__ = [
    "BatchResult",
    "BatchState",
    "BatchStatus",
    "CancellationToken",
    "EmbeddingWorker",
    "EmbeddingWorkerChannel",
    "EmbeddingsReady",
    "PipelineDriver",
    "PipelineJob",
    "WorkerFailure",
    "WorkerResponse",
    "first_vector",
    "split_into_subpatches",
    "to_tensor",
]
