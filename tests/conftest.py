"""Shared pytest fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml

from beacon.dispatch.models import ChannelPreference, Recipient, RecipientPreferences
from beacon.persistence.database import close_database, init_database
from beacon.scheduling.collaborators import InMemoryJobQueue, InMemoryScheduleStore
from beacon.scheduling.registry import ScheduleRegistry

FIXTURES_DIR = Path(__file__).parent / "fixtures"

ENV_VARS = (
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASS",
    "SMTP_SENDER_NAME",
    "SMTP_FROM",
    "SLACK_BOT_TOKEN",
    "SLACK_WEBHOOK_URL",
    "SLACK_DEFAULT_CHANNEL",
    "DATABASE_URL",
    "LOG_LEVEL",
    "ENVIRONMENT",
)


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock fixed at 2024-01-01T00:00Z (a Monday)."""
    return FakeClock(datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def schedule_store():
    return InMemoryScheduleStore()


@pytest.fixture
def job_queue():
    return InMemoryJobQueue()


@pytest.fixture
def registry(schedule_store, clock):
    return ScheduleRegistry(schedule_store, clock=clock)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the service reads, so the host environment cannot leak in."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def sqlite_db(tmp_path):
    """Initialize a file-backed SQLite database for one test."""
    db_url = f"sqlite:///{tmp_path / 'beacon.db'}"
    init_database(db_url)
    yield db_url
    close_database()


@pytest.fixture
def write_config(tmp_path):
    """Write a config mapping (or raw text) to a YAML file and return its path."""

    def _write(content: Any, name: str = "config.yaml") -> Path:
        path = tmp_path / name
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_text(yaml.safe_dump(content), encoding="utf-8")
        return path

    return _write


def make_recipient(
    recipient_id: str = "1",
    email: str = "user1@example.com",
    slack_user_id: str = None,
    channels: Dict[str, int] = None,
    **preferences,
) -> Recipient:
    """Build a recipient; `channels` maps channel type to priority."""
    channels = channels if channels is not None else {"email": 1}
    return Recipient(
        id=recipient_id,
        email=email,
        slack_user_id=slack_user_id,
        preferences=RecipientPreferences(
            channels=[
                ChannelPreference(type=channel, enabled=True, priority=priority)
                for channel, priority in channels.items()
            ],
            **preferences,
        ),
    )


@pytest.fixture
def recipient_factory():
    return make_recipient
