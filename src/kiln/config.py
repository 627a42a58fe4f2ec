"""Configuration settings for Kiln.

Every setting can come from a ``KILN_*`` environment variable or a
``.env`` file; CLI flags override them per invocation.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kiln.build.executor import EXECUTORS
from kiln.build.fingerprint import DEFAULT_ALGORITHM, available_algorithms
from kiln.storage import Storage, available_backends, open_storage


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="KILN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cache location (default: .kiln in current directory)
    cache_dir: Path = Field(default=Path(".kiln"))
    backend: str = "directory"
    hash_algorithm: str = DEFAULT_ALGORITHM

    # Scheduling
    workers: int = Field(default=1, ge=1)
    executor: str = "thread"

    # JSONL run logs; disabled when unset
    log_dir: Path | None = None

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in available_backends():
            raise ValueError(f"unknown backend {value!r}, expected one of {available_backends()}")
        return value

    @field_validator("hash_algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        if value not in available_algorithms():
            raise ValueError(
                f"unknown hash algorithm {value!r}, expected one of {available_algorithms()}"
            )
        return value

    @field_validator("executor")
    @classmethod
    def _known_executor(cls, value: str) -> str:
        if value not in EXECUTORS:
            raise ValueError(f"unknown executor {value!r}, expected one of {list(EXECUTORS)}")
        return value

    @property
    def storage_path(self) -> Path:
        """Backing path for the configured backend."""
        if self.backend == "sqlite":
            return self.cache_dir / "cache.db"
        return self.cache_dir

    def open_storage(self) -> Storage:
        """Instantiate the configured cache backend."""
        return open_storage(self.backend, self.storage_path)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings cache (useful for testing)."""
    global _settings
    _settings = None
