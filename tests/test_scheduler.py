"""
Tests for the scheduler supervisor: tick isolation, re-entrancy guards,
reminder dispatch and the audit trail.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from mintops.models.automation import DeliveryStatus, DueReminder, DueTaskReminder, WorkflowState
from mintops.services.notification_service import task_reminder_target
from mintops.services.reminder_service import compose_task_reminder, format_task_offset
from mintops.services.scheduler_service import (
    AUTOMATION_JOB,
    REMINDER_JOB,
    SchedulerSupervisor,
    add_startup_hook,
    get_scheduler_supervisor,
    start_scheduler,
    stop_scheduler,
)
from mintops.services.workflows import DAILY_BRIEFING, MISSED_TASK_ALERT

from conftest import FakeChannel, FakeReminderSource, FakeTaskReminderSource, static_snapshot

NOW = datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc)


def _reminder(reminder_id: int, name: str = "Zora Drop") -> DueReminder:
    return DueReminder(
        id=reminder_id,
        mint_name=name,
        chain="base",
        offset_minutes=30,
        mint_date=datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc),
        remind_at=datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc),
        mint_id=reminder_id * 10,
    )


def _task_reminder(reminder_id: int, title: str = "Claim Zora rewards", **overrides) -> DueTaskReminder:
    values = {
        "id": reminder_id,
        "todo_task_id": reminder_id + 100,
        "task_title": title,
        "priority": "high",
        "offset_minutes": 60,
        "due_at": datetime(2024, 3, 5, 10, 30, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return DueTaskReminder(**values)


@pytest.fixture
def make_supervisor(make_runner, test_settings):
    """Supervisor wired to in-memory channels."""
    def _make(channels, settings=None):
        settings = settings or test_settings
        runner = make_runner(settings, channels)
        return SchedulerSupervisor(settings=settings, notifications=runner.notifications, runner=runner)

    return _make


class TestAutomationTick:
    """One pass over the armed workflows."""

    @pytest.mark.asyncio
    async def test_only_workflows_with_builders_are_armed(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        assert supervisor.armed_workflows() == []

        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 1}))
        assert [w.key for w in supervisor.armed_workflows()] == [MISSED_TASK_ALERT]

    @pytest.mark.asyncio
    async def test_failing_workflow_does_not_stop_the_tick(self, make_supervisor, ok_channel):
        async def broken_builder(now, params):
            raise RuntimeError("source offline")

        supervisor = make_supervisor([ok_channel])
        supervisor.register_snapshot_builder(DAILY_BRIEFING, broken_builder)
        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 2}))

        outcomes = await supervisor.run_automation_tick(NOW)
        assert [o.workflow for o in outcomes] == [MISSED_TASK_ALERT]
        assert outcomes[0].state == WorkflowState.SENT
        assert ok_channel.calls == 1

    @pytest.mark.asyncio
    async def test_repeated_ticks_send_once_per_run_key(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 2}))

        await supervisor.run_automation_tick(NOW)
        outcomes = await supervisor.run_automation_tick(NOW.replace(minute=59))
        assert outcomes[0].state == WorkflowState.ALREADY_RAN

        outcomes = await supervisor.run_automation_tick(NOW.replace(hour=10))
        assert outcomes[0].state == WorkflowState.SENT
        assert ok_channel.calls == 2

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, make_supervisor, ok_channel):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_builder(now, params):
            started.set()
            await release.wait()
            return {"total_missed": 1}

        supervisor = make_supervisor([ok_channel])
        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, slow_builder)

        first = asyncio.create_task(supervisor.run_automation_tick(NOW))
        await started.wait()
        assert supervisor.get_status()["ticking"][AUTOMATION_JOB] is True

        assert await supervisor.run_automation_tick(NOW) is None

        release.set()
        outcomes = await first
        assert [o.state for o in outcomes] == [WorkflowState.SENT]
        assert supervisor.get_status()["ticking"][AUTOMATION_JOB] is False

    @pytest.mark.asyncio
    async def test_families_do_not_block_each_other(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        supervisor.register_reminder_source(FakeReminderSource([_reminder(1)]))
        supervisor._ticking[AUTOMATION_JOB] = True

        result = await supervisor.run_reminder_tick(NOW)
        assert result.delivered == 1

    @pytest.mark.asyncio
    async def test_no_channels_skips_batch_and_warns_once(self, make_supervisor):
        builder = static_snapshot({"total_missed": 1})
        supervisor = make_supervisor([])
        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, builder)

        assert await supervisor.run_automation_tick(NOW) == []
        assert supervisor._warned_no_channels[AUTOMATION_JOB] is True
        assert await supervisor.run_automation_tick(NOW) == []
        assert builder.calls == []

        channel = FakeChannel("late")
        supervisor.notifications._channels = [channel]
        outcomes = await supervisor.run_automation_tick(NOW)
        assert outcomes[0].state == WorkflowState.SENT
        assert supervisor._warned_no_channels[AUTOMATION_JOB] is False


class TestReminderTick:
    """Due reminders go through the delivery tracker."""

    @pytest.mark.asyncio
    async def test_delivered_reminders_are_marked(self, make_supervisor, ok_channel):
        source = FakeReminderSource([_reminder(1), _reminder(2, "Base Summer")])
        supervisor = make_supervisor([ok_channel])
        supervisor.register_reminder_source(source)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 2
        assert result.delivered == 2
        assert source.marked == [1, 2]
        assert ok_channel.sent[0].title == "Mint reminder: Zora Drop in 30m"
        assert ok_channel.sent[0].data["reminder_id"] == 1

    @pytest.mark.asyncio
    async def test_undelivered_reminders_stay_due(self, make_supervisor, ok_channel, failing_channel):
        source = FakeReminderSource([_reminder(1)])
        supervisor = make_supervisor([ok_channel, failing_channel])
        supervisor.register_reminder_source(source)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 1
        assert result.delivered == 0
        assert source.marked == []

        # next tick is inside the backoff window: nothing is re-sent
        await supervisor.run_reminder_tick(NOW)
        assert ok_channel.calls == 1
        assert failing_channel.calls == 1

        failing_channel.fail = False
        result = await supervisor.run_reminder_tick(NOW.replace(hour=10))
        assert result.delivered == 1
        assert source.marked == [1]
        assert ok_channel.calls == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_reminders(self, make_supervisor, make_settings, ok_channel):
        settings = make_settings(reminder_batch_size=2)
        source = FakeReminderSource([_reminder(i) for i in range(1, 6)])
        supervisor = make_supervisor([ok_channel], settings=settings)
        supervisor.register_reminder_source(source)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 2

    @pytest.mark.asyncio
    async def test_without_source_nothing_happens(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 0
        assert ok_channel.calls == 0


class TestTaskReminders:
    """Todo-task due reminders ride the same reminder tick."""

    @pytest.mark.parametrize("offset,label", [
        (1440, "24h"),
        (120, "2h"),
        (60, "1h"),
        (30, "30m"),
        (10, "10m"),
        (45, "10m"),
    ])
    def test_offset_labels(self, offset, label):
        assert format_task_offset(offset) == label

    def test_compose_escapes_title_and_notes(self):
        reminder = _task_reminder(
            3,
            title="Ship <v2> & docs",
            task_notes="<b>check allowlist</b>",
            offset_minutes=30,
        )
        message = compose_task_reminder(reminder)

        assert message.title == "Task reminder: Ship <v2> & docs in 30m"
        assert message.body == "Ship <v2> & docs is due in 30m. Priority: high."
        assert "<strong>Ship &lt;v2&gt; &amp; docs</strong> is due in <strong>30m</strong>" in message.html
        assert "<p>Notes: &lt;b&gt;check allowlist&lt;/b&gt;</p>" in message.html
        assert "<p>Due at: 2024-03-05T10:30:00+00:00</p>" in message.html
        assert message.data["reminder_type"] == "todo_task"
        assert message.data["todo_task_reminder_id"] == 3
        assert message.data["todo_task_id"] == 103

    def test_compose_omits_missing_due_date_and_notes(self):
        message = compose_task_reminder(_task_reminder(4, due_at=None))
        assert "Due at" not in message.html
        assert "Notes" not in message.html
        assert message.data["due_at"] is None

    @pytest.mark.asyncio
    async def test_mint_and_task_reminders_share_the_tick(self, make_supervisor, ok_channel):
        mints = FakeReminderSource([_reminder(1)])
        tasks = FakeTaskReminderSource([_task_reminder(1), _task_reminder(2, "Bridge to Base")])
        supervisor = make_supervisor([ok_channel])
        supervisor.register_reminder_source(mints)
        supervisor.register_task_reminder_source(tasks)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 3
        assert result.delivered == 3
        assert mints.marked == [1]
        assert tasks.marked == [1, 2]
        assert [m.title for m in ok_channel.sent] == [
            "Mint reminder: Zora Drop in 30m",
            "Task reminder: Claim Zora rewards in 1h",
            "Task reminder: Bridge to Base in 1h",
        ]

        history = await supervisor.notifications.get_history(task_reminder_target(1))
        assert [h.status for h in history] == [DeliveryStatus.SENT]

    @pytest.mark.asyncio
    async def test_undelivered_task_reminder_stays_due(self, make_supervisor, failing_channel):
        tasks = FakeTaskReminderSource([_task_reminder(5)])
        supervisor = make_supervisor([failing_channel])
        supervisor.register_task_reminder_source(tasks)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 1
        assert result.delivered == 0
        assert tasks.marked == []

        failing_channel.fail = False
        result = await supervisor.run_reminder_tick(NOW.replace(hour=10))
        assert result.delivered == 1
        assert tasks.marked == [5]

    @pytest.mark.asyncio
    async def test_task_batch_size_is_capped(self, make_supervisor, make_settings, ok_channel):
        settings = make_settings(reminder_batch_size=2)
        tasks = FakeTaskReminderSource([_task_reminder(i) for i in range(1, 6)])
        supervisor = make_supervisor([ok_channel], settings=settings)
        supervisor.register_task_reminder_source(tasks)

        result = await supervisor.run_reminder_tick(NOW)
        assert result.processed == 2
        assert tasks.marked == [1, 2]


class TestAuditAndLifecycle:
    """Audit rows, status and timers."""

    @pytest.mark.asyncio
    async def test_ticks_are_audited(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 1}))
        supervisor.register_reminder_source(FakeReminderSource([]))

        await supervisor.run_automation_tick(NOW)
        await supervisor.run_reminder_tick(NOW)

        audit = await supervisor.get_audit_log()
        assert audit["total"] == 2
        assert {e["job_name"] for e in audit["executions"]} == {AUTOMATION_JOB, REMINDER_JOB}
        assert all(e["status"] == "completed" for e in audit["executions"])
        assert supervisor.get_status()["last_tick"][AUTOMATION_JOB]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failed_handler_is_audited(self, make_supervisor, ok_channel):
        async def explode():
            raise RuntimeError("boom")

        supervisor = make_supervisor([ok_channel])
        assert await supervisor._run_with_audit(AUTOMATION_JOB, explode) is None

        audit = await supervisor.get_audit_log(limit=5)
        assert audit["executions"][-1]["status"] == "failed"
        assert audit["executions"][-1]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_status_reports_armed_workflows_and_channels(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        supervisor.register_snapshot_builder(DAILY_BRIEFING, static_snapshot({}))

        status = supervisor.get_status()
        assert status["running"] is False
        assert status["armed_workflows"] == [DAILY_BRIEFING]
        assert status["channels"] == ["fake_ok"]
        assert status["reminder_source"] is False

    @pytest.mark.asyncio
    async def test_job_registration(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        supervisor._register_job(AUTOMATION_JOB, supervisor.run_automation_tick)

        jobs = supervisor.get_status()["jobs"]
        assert [job["id"] for job in jobs] == [AUTOMATION_JOB]

    @pytest.mark.asyncio
    async def test_start_without_collaborators_arms_nothing(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        await supervisor.start()
        try:
            status = supervisor.get_status()
            assert status["running"] is True
            assert status["job_count"] == 0
        finally:
            await supervisor.stop()
        assert supervisor.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_collaborators_attached_after_start_arm_their_jobs(self, make_supervisor, ok_channel):
        supervisor = make_supervisor([ok_channel])
        await supervisor.start()
        supervisor.scheduler.pause()
        try:
            assert supervisor.get_status()["job_count"] == 0

            supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 1}))
            supervisor.register_snapshot_builder(DAILY_BRIEFING, static_snapshot({}))
            supervisor.register_task_reminder_source(FakeTaskReminderSource([]))

            jobs = supervisor.get_status()["jobs"]
            assert sorted(job["id"] for job in jobs) == [AUTOMATION_JOB, REMINDER_JOB]
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_startup_hooks_run_before_timers_arm(self):
        attached = []

        @add_startup_hook
        async def attach_sources(supervisor):
            supervisor.register_snapshot_builder(MISSED_TASK_ALERT, static_snapshot({"total_missed": 1}))
            supervisor.register_reminder_source(FakeReminderSource([]))
            attached.append(supervisor)

        await start_scheduler()
        supervisor = get_scheduler_supervisor()
        supervisor.scheduler.pause()
        try:
            assert attached == [supervisor]
            status = supervisor.get_status()
            assert status["running"] is True
            assert sorted(job["id"] for job in status["jobs"]) == [AUTOMATION_JOB, REMINDER_JOB]
        finally:
            await stop_scheduler()

    def test_singleton(self):
        assert get_scheduler_supervisor() is get_scheduler_supervisor()
