"""Exception hierarchy for the embedding pipeline.

Per-region errors (tile fetch, busy worker, worker failure, store write) are
contained by the PipelineDriver; only ThumbnailUnavailable is fatal to a
batch. MalformedQuery is raised straight back to the caller.
"""

from __future__ import annotations

from typing import Any


class PatchEmbedError(Exception):
    """Base exception for all pipeline, store and retrieval errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the error with optional context.

        Args:
            message: Human-readable error description.
            **context: Extra fields (image_id, region, ...) rendered into the
                message and kept as attributes for programmatic access.
        """
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context if available."""
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ThumbnailUnavailable(PatchEmbedError):
    """Raised when the low-resolution thumbnail cannot be produced.

    Segmentation cannot proceed without it, so the whole batch fails.
    """


class TileFetchError(PatchEmbedError):
    """Raised when the tile source cannot deliver a region."""


class WorkerBusyTimeout(PatchEmbedError):
    """Raised when the worker channel stays busy past the maximum wait."""


class WorkerError(PatchEmbedError):
    """Raised inside the worker when a job cannot be embedded.

    The channel converts it into a WorkerFailure message.
    """


class ModelNotFound(WorkerError):
    """Raised when a model name is unknown to the registry or disabled."""


class StoreWriteError(PatchEmbedError):
    """Raised when records cannot be written to the spatial store."""


class MalformedQuery(PatchEmbedError):
    """Raised when a range query carries bounds that are not (x, y) pairs."""


class SourceOpenError(PatchEmbedError):
    """Raised when an image file cannot be opened as a tile source."""
