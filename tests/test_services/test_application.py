"""Tests for service wiring and lifecycle."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from autobackup.exceptions import ConfigurationError
from autobackup.main import _configure_logging, build_application, shutdown, start

if TYPE_CHECKING:
    from pathlib import Path

    from autobackup.config import Settings


class TestBuildApplication:
    def test_local_only_service(self, test_settings: Settings) -> None:
        app = build_application(test_settings)
        try:
            assert app.credentials is None
            assert app.uploader is None
            assert app.orchestrator.job.backup_id == "source"
        finally:
            shutdown(app)

    def test_upload_enabled_wires_credentials(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"upload_enabled": True})
        app = build_application(settings)
        try:
            assert app.credentials is not None
            assert app.uploader is not None
        finally:
            shutdown(app)

    def test_invalid_settings_fail_before_database(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"backup_cron": "bogus"})
        with (
            patch("autobackup.main.create_engine") as create,
            pytest.raises(ConfigurationError),
        ):
            build_application(settings)
        create.assert_not_called()


class TestStart:
    def test_runs_once_then_schedules(self, test_settings: Settings) -> None:
        app = MagicMock()
        app.settings = test_settings
        app.credentials = None

        start(app)

        app.orchestrator.run_logged.assert_called_once()
        app.orchestrator.start_schedule.assert_called_once_with(test_settings.backup_cron)

    def test_skips_initial_run_when_disabled(self, test_settings: Settings) -> None:
        app = MagicMock()
        app.settings = test_settings.model_copy(update={"run_on_start": False})
        app.credentials = None

        start(app)

        app.orchestrator.run_logged.assert_not_called()

    def test_links_account_before_running(self, test_settings: Settings) -> None:
        app = MagicMock()
        app.settings = test_settings
        calls: list[str] = []
        app.credentials.bootstrap.side_effect = lambda **kw: calls.append("bootstrap")
        app.orchestrator.run_logged.side_effect = lambda: calls.append("run")

        start(app)

        assert calls == ["bootstrap", "run"]
        app.credentials.start_background_refresh.assert_called_once()


class TestConfigureLogging:
    def test_writes_to_log_file(self, tmp_path: Path) -> None:
        log_file = tmp_path / "autobackup.log"
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            _configure_logging(debug=True, log_file=str(log_file))
            logging.getLogger("autobackup.test").debug("hello from the test")
            for handler in root.handlers:
                handler.flush()
            assert "hello from the test" in log_file.read_text()
            assert logging.getLogger("httpx").level == logging.INFO
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
            logging.getLogger("httpx").setLevel(logging.NOTSET)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.NOTSET)
            logging.getLogger("apscheduler").setLevel(logging.NOTSET)
