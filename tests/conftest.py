"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from chief_monitor.config import Settings, get_settings
from chief_monitor.notify.email import EmailSendError, SendEmailResult
from chief_monitor.service import MonitorService
from chief_monitor.store import SqliteMonitorStore, open_store

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _no_dotenv() -> Generator[None]:
    """Block .env loading so a developer's local configuration never leaks into tests.

    Sets Settings.model_config['env_file'] = None before each test.
    """
    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "monitor_host": "127.0.0.1",
            "monitor_port": 7410,
            "monitor_db_path": ":memory:",
            "monitor_api_key": "",
            "monitor_retention_days": 30,
            # Long intervals so the background sweeps never fire during a test
            "monitor_evaluator_interval_seconds": 3600,
            "monitor_retention_interval_seconds": 3600,
            "monitor_recovery_auto_close_seconds": 900,
            # Resend
            "resend_api_key": "",
            "resend_from_email": "",
            "resend_api_base": "https://resend.test",
            # SMTP / Email
            "smtp_host": "",
            "smtp_port": 587,
            "smtp_username": "",
            "smtp_password": "",
            "smtp_from_email": "",
            "log_level": "INFO",
        },
    )()
    with (
        patch("chief_monitor.config.get_settings", return_value=fake_settings),
        patch("chief_monitor.store.get_settings", return_value=fake_settings),
        patch("chief_monitor.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSender:
    """EmailSender double that records messages and can be told to fail."""

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.error: EmailSendError | None = None
        self.sent: list[dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self.configured

    def send_email(self, *, to: list[str], subject: str, text: str) -> SendEmailResult:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": list(to), "subject": subject, "text": text})
        return SendEmailResult(provider_message_id=f"msg-{len(self.sent)}", response_code=200)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[SqliteMonitorStore]:
    """In-memory store with schema initialized."""
    s = open_store(":memory:")
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def service(store: SqliteMonitorStore, sender: RecordingSender, clock: FakeClock) -> MonitorService:
    return MonitorService(store, sender, retention_days=30, recovery_ttl_seconds=900, clock=clock)
