"""
Nearmatch: Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Nearmatch service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database: Cloud SQL via connector, or a plain URL
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "nearmatch_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "nearmatch"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True
    DB_CREATE_ALL: bool = False  # local development only; production uses Alembic

    # ------------------------------------------------------------------ #
    # Authentication (tokens are issued by the account service)
    # ------------------------------------------------------------------ #
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"

    # ------------------------------------------------------------------ #
    # Matching defaults and bounds
    # ------------------------------------------------------------------ #
    MATCH_DEFAULT_RADIUS_M: float = 5_000.0
    MATCH_MAX_RADIUS_M: float = 100_000.0
    MATCH_DEFAULT_LIMIT: int = 20
    MATCH_MAX_LIMIT: int = 100
    MATCH_OPERATION_TIMEOUT_SECONDS: float = 5.0

    # ------------------------------------------------------------------ #
    # Spatial index
    # ------------------------------------------------------------------ #
    SPATIAL_CELL_SIZE_DEG: float = 0.05  # ~5.5 km of latitude per cell
    SPATIAL_LOCK_TIMEOUT_SECONDS: float = 2.0

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator(
        "MATCH_DEFAULT_RADIUS_M",
        "MATCH_MAX_RADIUS_M",
        "MATCH_OPERATION_TIMEOUT_SECONDS",
        "SPATIAL_LOCK_TIMEOUT_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Value must be positive, got {v}")
        return v

    @field_validator("SPATIAL_CELL_SIZE_DEG")
    @classmethod
    def _cell_size_in_range(cls, v: float) -> float:
        if not 0.0 < v <= 10.0:
            raise ValueError(f"Cell size must be in (0, 10] degrees, got {v}")
        return v

    @model_validator(mode="after")
    def _defaults_within_bounds(self) -> "Settings":
        if self.MATCH_DEFAULT_RADIUS_M > self.MATCH_MAX_RADIUS_M:
            raise ValueError("MATCH_DEFAULT_RADIUS_M exceeds MATCH_MAX_RADIUS_M")
        if not 1 <= self.MATCH_DEFAULT_LIMIT <= self.MATCH_MAX_LIMIT:
            raise ValueError("MATCH_DEFAULT_LIMIT must be in [1, MATCH_MAX_LIMIT]")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
