"""patchembed: tissue-region embeddings and spatial retrieval for gigapixel images."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
