"""Bridge configuration management using Pydantic Settings.

This module defines the `Settings` class, which loads configuration parameters
from environment variables and a `.env` file. It covers the values an installer
injects at startup (collector port, project id/path, debug flag, framework tag)
and every tunable of the connection manager and location resolver.

The `get_settings` function provides a cached, singleton instance of the
configuration, ensuring consistent settings throughout a process.
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict as _SettingsConfigDict

DEFAULT_SOURCE_ROOTS = ["app", "pages", "src"]


class Settings(BaseSettings):
    """Defines all bridge configuration parameters.

    Values come from environment variables or a `.env` file. List-valued
    fields accept comma-separated strings so they can be set from the shell,
    e.g. ``ASSET_URLS=http://localhost:3000/_next/static/chunks/main.js``.
    """

    model_config = _SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Installer-provided configuration
    CONSOLELOG_WS_PORT: int = Field(default=19990, description="Collector websocket port")
    CONSOLELOG_HOST: str = Field(default="localhost", description="Collector host")
    CONSOLELOG_PROJECT_ID: Optional[str] = Field(
        default=None, description="Project identifier reported in identify/context frames"
    )
    CONSOLELOG_PROJECT_PATH: Optional[str] = Field(
        default=None, description="Absolute project path reported in the identify frame"
    )
    CONSOLELOG_DEBUG: bool = Field(default=False, description="Verbose bridge diagnostics")
    CONSOLELOG_FRAMEWORK: str = Field(
        default="unknown", description="Framework tag attached to every console message"
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # ---------------- Connection manager -----------------
    BATCH_DELAY_MS: int = Field(
        default=10, description="Coalescing delay before a queued message is flushed"
    )
    RECONNECT_DELAY_MS: int = Field(default=1000, description="Base reconnect backoff delay")
    MAX_RECONNECT_DELAY_MS: int = Field(default=30000, description="Reconnect backoff cap")
    RECONNECT_MULTIPLIER: float = Field(
        default=1.5, description="Growth factor applied per failed connection attempt"
    )
    MAX_QUEUE_SIZE: int = Field(
        default=1000, description="Outbound queue capacity (oldest entries dropped when full)"
    )
    HEARTBEAT_INTERVAL_MS: int = Field(
        default=5000,
        description=(
            "Ping interval while open. No pong for more than 3x this interval "
            "forces the connection closed."
        ),
    )
    MESSAGE_TIMEOUT_MS: int = Field(
        default=30000, description="Age after which an unacknowledged message is retried"
    )
    MAX_RETRIES: int = Field(
        default=3, description="Retries per message before it is dropped without notice"
    )
    RETRY_SCAN_INTERVAL_MS: int = Field(
        default=5000, description="Interval of the stale pending-ack scan while open"
    )
    PERSIST_LIMIT: int = Field(
        default=100, description="Queue and pending entries kept in the persisted snapshot"
    )
    QUEUE_FILE: str = Field(
        default=".consolelog/queue.json",
        description="Path of the session snapshot file storing queue and pending acks",
    )

    # ---------------- Location resolution -----------------
    APP_ORIGIN: str = Field(
        default="http://localhost:3000",
        description="Origin of the running application; base for scheme-prefixed references",
    )
    # Use Any type to prevent Pydantic Settings JSON decoding; validator converts to list[str]
    ASSET_URLS: Any = Field(
        default_factory=list,
        description=(
            "Comma-separated list of asset URLs scanned for embedded mapping payloads "
            "when the chunk index is built. Assets seen in stack traces are added at runtime."
        ),
    )
    SOURCE_ROOTS: Any = Field(
        default_factory=lambda: list(DEFAULT_SOURCE_ROOTS),
        description=(
            "Comma-separated project source root segments. Normalized source paths are "
            "truncated to the suffix starting at the first matching segment."
        ),
    )
    FETCH_TIMEOUT: float = Field(default=5.0, description="Asset fetch timeout in seconds")
    INDEX_WARMUP_DELAY_MS: int = Field(
        default=100, description="Delay after start before the chunk index is built eagerly"
    )

    @field_validator("ASSET_URLS", "SOURCE_ROOTS", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: str | list[str] | None) -> list[str]:
        """Parse comma-separated string into list of stripped strings.

        Supports both direct list input (from code/tests) and comma-separated
        string input (from environment variables). Empty strings result in
        empty list.
        """
        if isinstance(v, list):
            return [s.strip() for s in v if s.strip()]
        if isinstance(v, str):
            if not v.strip():
                return []
            return [s.strip() for s in v.split(",") if s.strip()]
        return []

    @field_validator(
        "BATCH_DELAY_MS",
        "RECONNECT_DELAY_MS",
        "MAX_RECONNECT_DELAY_MS",
        "MAX_QUEUE_SIZE",
        "HEARTBEAT_INTERVAL_MS",
        "MESSAGE_TIMEOUT_MS",
        "RETRY_SCAN_INTERVAL_MS",
    )
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("CONSOLELOG_PROJECT_ID", "CONSOLELOG_PROJECT_PATH", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if isinstance(v, str):
            trimmed = v.strip()
            return trimmed or None
        return None

    @model_validator(mode="after")
    def apply_debug_level(self) -> "Settings":
        """Force DEBUG logging when the installer enabled the debug flag."""
        if self.CONSOLELOG_DEBUG:
            self.LOG_LEVEL = "DEBUG"
        return self

    @property
    def collector_url(self) -> str:
        return f"ws://{self.CONSOLELOG_HOST}:{self.CONSOLELOG_WS_PORT}"

    @property
    def project_id(self) -> str:
        """Project identifier: explicit id, else project directory name, else 'default'."""
        if self.CONSOLELOG_PROJECT_ID:
            return self.CONSOLELOG_PROJECT_ID
        if self.CONSOLELOG_PROJECT_PATH:
            name = os.path.basename(self.CONSOLELOG_PROJECT_PATH.rstrip("/\\"))
            if name:
                return name
        return "default"


@lru_cache(maxsize=1)
def get_settings() -> Settings:  # pragma: no cover - trivial
    """Return a cached, singleton instance of the bridge settings."""
    return Settings()


__all__ = ["Settings", "get_settings", "DEFAULT_SOURCE_ROOTS"]
