"""Unified configuration schema for member_sync.

Pydantic models for the YAML config structure, with sections for the
downstream profile store, the sync engine and logging.  Connection values
from the ``downstream`` section feed ``config.load_config()`` as fallbacks.

Usage:
    from member_sync.config_schema import build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    unified.sync.grace_period_ms
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .sync.detector import DEFAULT_DETECTION_START
from .sync.fields import TRACKED_FIELDS
from .sync.resolver import DEFAULT_GRACE_MS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class DownstreamConfig(BaseModel):
    """Profile store connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="API base URL")
    username: str | None = Field(default=None, description="API username")
    password: str | None = Field(default=None, description="API password")
    timeout: int = Field(
        default=60, ge=1, le=600, description="Read timeout in seconds"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for server errors (0-10)",
    )
    per_page: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page size for modified-record listings",
    )

    model_config = {"frozen": True}


class SyncSettings(BaseModel):
    """Sync engine settings.

    Attributes:
        database: SQLite state database path.
        grace_period_ms: Timestamps this close count as simultaneous.
        tracked_fields: Fields that participate in conflict resolution.
        detection_start: Checkpoint used by the first detection run.
    """

    database: str = Field(
        default=".member_sync/sync.db", description="State database path"
    )
    grace_period_ms: int = Field(
        default=DEFAULT_GRACE_MS,
        ge=0,
        description="Conflict grace period in milliseconds",
    )
    tracked_fields: list[str] = Field(
        default_factory=lambda: list(TRACKED_FIELDS),
        min_length=1,
        description="Tracked field names",
    )
    detection_start: str = Field(
        default=DEFAULT_DETECTION_START,
        description="First detection checkpoint (ISO 8601)",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    downstream: DownstreamConfig = Field(default_factory=DownstreamConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
