"""
Unit tests for configuration and logging setup.
"""

import logging

import json_log_formatter
import pytest
from pydantic import ValidationError

from leadsync.config import SyncConfig, setup_logging


class TestSyncConfig:
    """Tests for SyncConfig."""

    def test_defaults(self, monkeypatch):
        for name in ("LEADSYNC_COALESCE_WINDOW_MS", "LEADSYNC_RECONCILE_INTERVAL_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        config = SyncConfig.from_env()

        assert config.table == "leads"
        assert config.coalesce_window == pytest.approx(0.075)
        assert config.reconcile_interval_seconds == 60.0
        assert config.reconcile_enabled
        assert config.broadcast_enabled
        assert config.transfer_event == "lead_transfer"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LEADSYNC_COALESCE_WINDOW_MS", "20")
        monkeypatch.setenv("LEADSYNC_RECONCILE_ENABLED", "false")
        monkeypatch.setenv("LEADSYNC_DEBUG_REALTIME", "1")

        config = SyncConfig.from_env()

        assert config.coalesce_window == pytest.approx(0.02)
        assert not config.reconcile_enabled
        assert config.debug_realtime

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("LEADSYNC_COALESCE_WINDOW_MS", "-5")

        with pytest.raises(ValidationError):
            SyncConfig.from_env()

    def test_log_config(self, caplog):
        with caplog.at_level(logging.INFO, logger="leadsync.config"):
            SyncConfig().log_config()

        assert "LeadSync configuration loaded" in caplog.text


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_format(self, restore_logging):
        setup_logging(SyncConfig(log_format="json", log_level="WARNING"))

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_format(self, restore_logging):
        setup_logging(SyncConfig(log_format="text"))

        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)

    def test_debug_realtime(self, restore_logging):
        setup_logging(SyncConfig(debug_realtime=True))

        assert logging.getLogger("leadsync.sync").level == logging.DEBUG
