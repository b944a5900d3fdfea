"""Unit tests for the main entry point.

Tests:
- Log level priority (CLI > env > config)
- Seeding configured schedules into the registry
- The Service wiring and single-run mode
- main() exit codes and error handling
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

from beacon.config.environment import EnvironmentConfig
from beacon.config.exceptions import ConfigurationError
from beacon.config.models import AppConfig
from beacon.domain.models import ChannelType
from beacon.main import Service, load_runtime_config, main, seed_schedules
from beacon.scheduling.models import FireResult, TickResult


def app_config_with_schedules(*schedules, **extra):
    return AppConfig.model_validate({"scheduler": {"schedules": list(schedules)}, **extra})


class TestLoadRuntimeConfig:
    """Test suite for load_runtime_config helper."""

    @patch("beacon.main.load_config")
    def test_cli_level_wins(self, mock_load):
        mock_load.return_value = (
            AppConfig.model_validate({"logging": {"level": "DEBUG"}}),
            EnvironmentConfig(log_level="WARNING"),
        )

        _, env_config = load_runtime_config(Path("config.yaml"), "ERROR")

        assert env_config.log_level == "ERROR"
        mock_load.assert_called_once_with(Path("config.yaml"))

    @patch("beacon.main.load_config")
    def test_environment_beats_config_file(self, mock_load):
        mock_load.return_value = (
            AppConfig.model_validate({"logging": {"level": "DEBUG"}}),
            EnvironmentConfig(log_level="WARNING"),
        )

        _, env_config = load_runtime_config(None, None)
        assert env_config.log_level == "WARNING"

    @patch("beacon.main.load_config")
    def test_config_file_level_used_last(self, mock_load):
        mock_load.return_value = (
            AppConfig.model_validate({"logging": {"level": "DEBUG"}}),
            EnvironmentConfig(),
        )

        _, env_config = load_runtime_config(None, None)
        assert env_config.log_level == "DEBUG"


class TestSeedSchedules:
    def test_adds_missing_schedules(self, registry):
        app_config = app_config_with_schedules(
            {"name": "Nightly digest", "cron": "0 2 * * *", "job_type": "send_digest"},
            {"id": "sched_report", "name": "Report", "cron": "30 9 * * 1-5", "job_type": "report"},
        )

        assert seed_schedules(registry, app_config) == 2
        assert registry.get("sched_nightly_digest").job_type == "send_digest"
        assert registry.get("sched_report").cron == "30 9 * * 1-5"

    def test_stored_schedules_win(self, registry):
        registry.add({"id": "sched_report", "name": "Report", "cron": "0 6 * * *", "job": {"type": "report"}})
        app_config = app_config_with_schedules(
            {"id": "sched_report", "name": "Report", "cron": "30 9 * * 1-5", "job_type": "report"},
        )

        assert seed_schedules(registry, app_config) == 0
        assert registry.get("sched_report").cron == "0 6 * * *"


class TestService:
    def test_bootstrap_seeds_database(self, sqlite_db):
        app_config = app_config_with_schedules(
            {"name": "Heartbeat", "cron": "*/5 * * * *", "job_type": "heartbeat"},
            {"name": "Paused", "cron": "0 3 * * *", "job_type": "cleanup", "enabled": False},
        )
        service = Service(app_config, EnvironmentConfig())
        try:
            service.bootstrap(app_config)

            assert {s.id for s in service.registry.list_all()} == {"sched_heartbeat", "sched_paused"}
            assert [s.id for s in service.registry.list_enabled()] == ["sched_heartbeat"]
            assert service.run_once() is True
        finally:
            service.shutdown()

    def test_wires_dispatch_settings(self, sqlite_db):
        app_config = AppConfig.model_validate(
            {"dispatch": {"batch_interval": "2m", "deferred_poll_interval": "15s"}}
        )
        env_config = EnvironmentConfig(
            slack_bot_token="xoxb-token", slack_default_channel="#ops"
        )
        service = Service(app_config, env_config)
        try:
            assert service.engine.fallback_channel == "#ops"
            assert service.engine.batcher.interval_seconds == 120
            assert service.poller.interval_seconds == 15
            assert [p.name for p in service.engine.providers[ChannelType.SLACK]] == ["slack-api"]
        finally:
            service.shutdown()

    def test_run_once_reports_failed_fires(self, sqlite_db):
        service = Service(AppConfig(), EnvironmentConfig())
        try:
            now = datetime(2024, 1, 1, tzinfo=timezone.utc)
            tick = TickResult(
                tick_id="t1",
                started_at=now,
                fired=[FireResult(schedule_id="s1", fired_at=now, success=False, error="down")],
            )
            with patch.object(service.loop, "tick", return_value=tick):
                assert service.run_once() is False
        finally:
            service.shutdown()


class TestMain:
    """Test suite for main() function."""

    @patch("beacon.main.close_database")
    @patch("beacon.main.Service")
    @patch("beacon.main.init_database")
    @patch("beacon.main.configure_logging")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon", "--run-once", "--log-level", "DEBUG"])
    def test_run_once_success(self, mock_load, mock_logging, mock_init_db, mock_service_cls, mock_close):
        env_config = EnvironmentConfig(database_url="sqlite:///test.db", log_level="DEBUG")
        app_config = AppConfig()
        mock_load.return_value = (app_config, env_config)
        service = MagicMock()
        service.run_once.return_value = True
        mock_service_cls.return_value = service

        assert main() == 0

        mock_load.assert_called_once_with(None, "DEBUG")
        mock_logging.assert_called_once_with(level="DEBUG", format_type="key-value", environment="local")
        mock_init_db.assert_called_once_with("sqlite:///test.db")
        service.bootstrap.assert_called_once_with(app_config)
        service.start.assert_not_called()
        service.shutdown.assert_called_once()
        mock_close.assert_called_once()

    @patch("beacon.main.close_database")
    @patch("beacon.main.Service")
    @patch("beacon.main.init_database")
    @patch("beacon.main.configure_logging")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon", "--run-once"])
    def test_run_once_failure_exit_code(self, mock_load, mock_logging, mock_init_db, mock_service_cls, mock_close):
        mock_load.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        mock_service_cls.return_value.run_once.return_value = False

        assert main() == 1

    @patch("beacon.main.close_database")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon", "--config", "nonexistent.yaml"])
    def test_configuration_error(self, mock_load, mock_close, capsys):
        mock_load.side_effect = ConfigurationError("Configuration file not found", errors=["Tried: x"])

        assert main() == 1

        mock_load.assert_called_once_with(Path("nonexistent.yaml"), None)
        captured = capsys.readouterr()
        assert "Configuration Error: Configuration file not found" in captured.err
        assert "1. Tried: x" in captured.err
        mock_close.assert_called_once()

    @patch("beacon.main.close_database")
    @patch("beacon.main.Service")
    @patch("beacon.main.init_database")
    @patch("beacon.main.configure_logging")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon"])
    def test_startup_failure(self, mock_load, mock_logging, mock_init_db, mock_service_cls, mock_close, capsys):
        mock_load.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        mock_init_db.side_effect = RuntimeError("disk full")

        assert main() == 1

        mock_service_cls.assert_not_called()
        mock_close.assert_called_once()
        assert "Fatal error: disk full" in capsys.readouterr().err

    @patch("beacon.main.signal.signal")
    @patch("beacon.main.threading.Event")
    @patch("beacon.main.close_database")
    @patch("beacon.main.Service")
    @patch("beacon.main.init_database")
    @patch("beacon.main.configure_logging")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon"])
    def test_daemon_mode(
        self, mock_load, mock_logging, mock_init_db, mock_service_cls, mock_close, mock_event, mock_signal
    ):
        mock_load.return_value = (AppConfig(), EnvironmentConfig(log_level="INFO"))
        service = mock_service_cls.return_value

        assert main() == 0

        service.start.assert_called_once()
        mock_event.return_value.wait.assert_called_once()
        assert mock_signal.call_count == 2
        service.shutdown.assert_called_once()

    @patch("beacon.main.close_database")
    @patch("beacon.main.load_runtime_config")
    @patch("sys.argv", ["beacon"])
    def test_keyboard_interrupt(self, mock_load, mock_close):
        mock_load.side_effect = KeyboardInterrupt()

        assert main() == 0
