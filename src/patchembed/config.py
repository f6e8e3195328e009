"""patchembed configuration using pydantic-settings.

All configuration is strongly typed and supports environment variables
and .env files.
"""

from pathlib import Path
from typing import TypeGuard

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid.

    Example:
        >>> Settings(_env_file=None).require_huggingface_token()  # doctest: +ELLIPSIS
        Traceback (most recent call last):
        ...
        ConfigError: HuggingFace token not configured. Set it in .env file or
        HUGGINGFACE_TOKEN environment variable.
    """

    def __init__(self, key_name: str, env_var: str) -> None:
        """Initialize configuration error.

        Args:
            key_name: Human-readable name of the missing key.
            env_var: Environment variable name to set.
        """
        self.key_name = key_name
        self.env_var = env_var
        message = (
            f"{key_name} not configured. "
            f"Set it in .env file or {env_var} environment variable."
        )
        super().__init__(message)


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Credentials (gated model weights on the HuggingFace hub)
    HUGGINGFACE_TOKEN: str | None = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # "console" or "json"

    # Spatial store
    STORE_DIR: Path = Path.home() / ".patchembed"
    STORE_NAME: str = "WSIEmbeddings"

    # Tissue segmentation
    THUMBNAIL_SIZE: int = 512  # Thumbnail long side used for the tissue grid
    GRID_DIM: int = 16  # Cells per axis when no explicit cell size is given
    EMPTINESS_THRESHOLD: float = 0.8  # Cells at or above this are dropped
    BACKGROUND_CUTOFF: int = 200  # RGB channels above this count as background

    # Worker channel
    WORKER_POLL_INTERVAL: float = 0.1  # Seconds between idle-flag checks
    WORKER_MAX_WAIT: float = 100.0  # Seconds before WorkerBusyTimeout

    # Models
    DEFAULT_MODEL: str = "CTransPath"
    MODEL_REGISTRY_PATH: Path | None = None

    # Retrieval
    SIMILARITY_THRESHOLD: float = 0.7
    KMEANS_MAX_ITERATIONS: int = 100
    DEFAULT_CLUSTERS: int = 5

    @staticmethod
    def _is_configured_secret(value: str | None) -> TypeGuard[str]:
        return value is not None and value.strip() != ""

    @property
    def store_path(self) -> Path:
        """Return the SQLite file backing the spatial store."""
        return self.STORE_DIR / f"{self.STORE_NAME}.sqlite3"

    def require_huggingface_token(self) -> str:
        """Get HuggingFace token, raising ConfigError if not set.

        Use this method when loading gated model weights to get a clear
        error message instead of auth failures.

        Returns:
            The HuggingFace token string.

        Raises:
            ConfigError: If HUGGINGFACE_TOKEN is not configured.
        """
        if not self._is_configured_secret(self.HUGGINGFACE_TOKEN):
            raise ConfigError("HuggingFace token", "HUGGINGFACE_TOKEN")
        return self.HUGGINGFACE_TOKEN


# Singleton instance for import convenience
settings = Settings()
