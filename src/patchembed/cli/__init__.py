"""CLI module for patchembed.

Provides the command-line interface for generating embeddings, querying the
spatial store, clustering and similarity search.
"""

from __future__ import annotations

from patchembed.cli.main import Method, app

__all__ = ["Method", "app"]
