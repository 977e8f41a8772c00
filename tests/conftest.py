"""
Shared test fixtures for the mintops automation core.
"""
import pytest
from datetime import datetime, timezone
from typing import Any, Dict, List

from httpx import AsyncClient, ASGITransport

import mintops.infrastructure.config as config_module
import mintops.services.scheduler_service as scheduler_module
from mintops.infrastructure.config import Settings
from mintops.infrastructure.database import close_database, create_tables, init_database
from mintops.infrastructure.exceptions import ChannelDeliveryError
from mintops.models.automation import DueReminder, DueTaskReminder, NotificationMessage
from mintops.services.billing_service import BillingService, get_billing_service
from mintops.services.channels import ChannelAdapter
from mintops.services.notification_service import NotificationService, get_notification_service
from mintops.services.reminder_service import ReminderSource, TaskReminderSource
from mintops.services.run_ledger import RunLedger, get_run_ledger
from mintops.services.workflow_runner import WorkflowRunner


class FakeChannel(ChannelAdapter):
    """In-memory channel that either always succeeds or always fails."""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.calls = 0
        self.sent: List[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> None:
        self.calls += 1
        if self.fail:
            raise ChannelDeliveryError(self.name, f"{self.name} unavailable")
        self.sent.append(message)


class FakeReminderSource(ReminderSource):
    def __init__(self, reminders: List[DueReminder]):
        self.reminders = list(reminders)
        self.marked: List[int] = []

    async def list_due_reminders(self, limit: int) -> List[DueReminder]:
        return [r for r in self.reminders if r.id not in self.marked][:limit]

    async def mark_reminder_sent(self, reminder_id: int) -> None:
        self.marked.append(reminder_id)


class FakeTaskReminderSource(TaskReminderSource):
    def __init__(self, reminders: List[DueTaskReminder]):
        self.reminders = list(reminders)
        self.marked: List[int] = []

    async def list_due_task_reminders(self, limit: int) -> List[DueTaskReminder]:
        return [r for r in self.reminders if r.id not in self.marked][:limit]

    async def mark_task_reminder_sent(self, reminder_id: int) -> None:
        self.marked.append(reminder_id)


def static_snapshot(payload: Dict[str, Any]):
    """Snapshot builder returning a fixed payload and recording its calls."""
    calls = []

    async def builder(now: datetime, params: Dict[str, Any]) -> Dict[str, Any]:
        calls.append({"now": now, "params": params})
        return dict(payload)

    builder.calls = calls
    return builder


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop cached service instances between tests."""
    yield
    get_billing_service.cache_clear()
    get_run_ledger.cache_clear()
    get_notification_service.cache_clear()
    config_module.get_settings.cache_clear()
    scheduler_module._scheduler_supervisor = None
    scheduler_module._startup_hooks.clear()


@pytest.fixture
def make_settings(tmp_path):
    """Settings factory backed by a throwaway SQLite file."""
    def _make(**overrides) -> Settings:
        values = {
            "database_url": f"sqlite:///{tmp_path / 'mintops.db'}",
            "notification_max_retries": 3,
            "notification_retry_base_seconds": 60,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def test_settings(make_settings):
    return make_settings()


@pytest.fixture
def paid_settings(make_settings):
    """Pay-per-use on, 500 cents opening balance, daily briefing at 300 cents."""
    return make_settings(
        pay_per_use_enabled=True,
        default_balance_cents=500,
        daily_briefing_cents=300,
        missed_task_alert_cents=300,
    )


@pytest.fixture
async def database(test_settings):
    await init_database(test_settings.database_url)
    await create_tables()
    yield
    await close_database()


@pytest.fixture
def run_ledger(database):
    return RunLedger()


@pytest.fixture
def billing(database, paid_settings):
    return BillingService(settings=paid_settings)


@pytest.fixture
def ok_channel():
    return FakeChannel("fake_ok")


@pytest.fixture
def failing_channel():
    return FakeChannel("fake_down", fail=True)


@pytest.fixture
def make_runner(database, run_ledger):
    """WorkflowRunner factory wired to the given settings and channels."""
    def _make(settings: Settings, channels: List[ChannelAdapter]) -> WorkflowRunner:
        return WorkflowRunner(
            run_ledger=run_ledger,
            billing=BillingService(settings=settings),
            notifications=NotificationService(channels=channels, settings=settings),
        )

    return _make


@pytest.fixture
def at_nine_utc():
    return datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc)  # Tuesday


@pytest.fixture
async def client(database, paid_settings, monkeypatch):
    """Async HTTP client for testing FastAPI endpoints.

    The lifespan is not run by ASGITransport; the database fixture has
    already initialized the engine. Services resolve settings through
    get_settings(), so it is patched at the config module level.
    """
    from mintops.main import app

    monkeypatch.setattr(config_module, "get_settings", lambda: paid_settings)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
