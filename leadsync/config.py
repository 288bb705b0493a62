"""
Configuration management for LeadSync.

All configuration is done via environment variables prefixed with
``LEADSYNC_``; there are no config files. Settings are loaded with
pydantic-settings so values are typed and validated on construction.

Invariants:
    - All settings have sensible defaults for local development
    - The coalesce window stays well below human-perceptible lag
    - Reconciliation is a backstop; its interval is never the primary path

How to change safely:
    - Add new settings with defaults that keep current behavior
    - Feature flags default to the behavior production runs today
"""

from __future__ import annotations

import logging

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class SyncConfig(BaseSettings):
    """Engine configuration loaded from environment."""

    model_config = SettingsConfigDict(env_prefix="LEADSYNC_")

    # Change feed
    table: str = Field(default="leads", description="Table whose changes are consumed")
    subscription_prefix: str = Field(
        default="leads_changes", description="Prefix for per-mount subscription ids"
    )

    # Coalescing
    coalesce_window_ms: int = Field(
        default=75, ge=0, le=1000, description="Debounce window for UPDATE events"
    )

    # Reconciliation (restricted sessions only)
    reconcile_enabled: bool = Field(default=True, description="Refetch on focus/interval")
    reconcile_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval between backstop refetches"
    )

    # Broadcast side-channel
    broadcast_enabled: bool = Field(default=True, description="Publish/receive transfer notices")
    channel_template: str = Field(
        default="company_{company_id}_leads", description="Per-tenant channel name"
    )
    transfer_event: str = Field(default="lead_transfer", description="Broadcast event name")

    # Enrichment
    enrich_listings: bool = Field(
        default=True, description="Resolve listing types after full fetches"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="json", description="json or text")
    debug_realtime: bool = Field(
        default=False, description="Verbose RT(leads) telemetry for the sync engine"
    )

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables.

        Raises:
            pydantic.ValidationError: If a variable has an invalid value
        """
        return cls()

    @property
    def coalesce_window(self) -> float:
        """Coalesce window in seconds."""
        return self.coalesce_window_ms / 1000.0

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "LeadSync configuration loaded",
            extra={
                "table": self.table,
                "coalesce_window_ms": self.coalesce_window_ms,
                "reconcile_enabled": self.reconcile_enabled,
                "reconcile_interval_seconds": self.reconcile_interval_seconds,
                "broadcast_enabled": self.broadcast_enabled,
                "enrich_listings": self.enrich_listings,
                "log_level": self.log_level,
            },
        )


def setup_logging(config: SyncConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    if config.debug_realtime:
        logging.getLogger("leadsync.sync").setLevel(logging.DEBUG)
