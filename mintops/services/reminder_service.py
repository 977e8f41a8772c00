"""
Reminder dispatch.

Two kinds of due reminders go out on the reminder tick:
- mint reminders from a ReminderSource, target ``reminder:<id>``
- todo-task due reminders from a TaskReminderSource, target ``reminder:task:<id>``

Both go through the notification delivery tracker, so they share the
per-channel retry bookkeeping of workflow notifications. A reminder is
marked sent only once every enabled channel has delivered it.
"""

from datetime import datetime
from html import escape
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from mintops.infrastructure.config import Settings, resolve_settings
from mintops.infrastructure.database import as_utc, utcnow
from mintops.models.automation import (
    DueReminder,
    DueTaskReminder,
    NotificationMessage,
    ReminderBatchResult,
)
from mintops.services.notification_service import (
    NotificationService,
    reminder_target,
    task_reminder_target,
)

logger = structlog.get_logger(__name__)

TASK_OFFSET_LABELS = {1440: "24h", 120: "2h", 60: "1h", 30: "30m"}
DEFAULT_TASK_OFFSET_LABEL = "10m"


class ReminderSource:
    """Where due mint reminders live."""

    async def list_due_reminders(self, limit: int) -> List[DueReminder]:
        raise NotImplementedError

    async def mark_reminder_sent(self, reminder_id: int) -> None:
        raise NotImplementedError


class TaskReminderSource:
    """Where due todo-task reminders live."""

    async def list_due_task_reminders(self, limit: int) -> List[DueTaskReminder]:
        raise NotImplementedError

    async def mark_task_reminder_sent(self, reminder_id: int) -> None:
        raise NotImplementedError


def compose_reminder(reminder: DueReminder) -> NotificationMessage:
    minutes = reminder.offset_minutes
    return NotificationMessage(
        title=f"Mint reminder: {reminder.mint_name} in {minutes}m",
        body=f"{reminder.mint_name} ({reminder.chain}) starts in {minutes} minutes.",
        html=(
            "<p><strong>Mint reminder</strong></p>"
            f"<p>{escape(reminder.mint_name)} ({escape(reminder.chain)}) starts in "
            f"<strong>{minutes} minutes</strong>.</p>"
        ),
        data={
            "reminder_type": "mint",
            "reminder_id": reminder.id,
            "mint_id": reminder.mint_id,
            "mint_name": reminder.mint_name,
            "chain": reminder.chain,
            "offset_minutes": minutes,
            "remind_at": reminder.remind_at.isoformat() if reminder.remind_at else None,
        },
    )


def format_task_offset(offset_minutes: int) -> str:
    """Task reminders fire at fixed offsets; anything unrecognised is the 10 minute one."""
    return TASK_OFFSET_LABELS.get(offset_minutes, DEFAULT_TASK_OFFSET_LABEL)


def compose_task_reminder(reminder: DueTaskReminder) -> NotificationMessage:
    label = format_task_offset(reminder.offset_minutes)
    due_at = as_utc(reminder.due_at)

    html = [
        "<p><strong>Task reminder</strong></p>",
        f"<p><strong>{escape(reminder.task_title)}</strong> is due in <strong>{label}</strong>.</p>",
        f"<p>Priority: {escape(reminder.priority)}</p>",
    ]
    if due_at is not None:
        html.append(f"<p>Due at: {due_at.isoformat()}</p>")
    if reminder.task_notes:
        html.append(f"<p>Notes: {escape(reminder.task_notes)}</p>")

    return NotificationMessage(
        title=f"Task reminder: {reminder.task_title} in {label}",
        body=f"{reminder.task_title} is due in {label}. Priority: {reminder.priority}.",
        html="".join(html),
        data={
            "reminder_type": "todo_task",
            "todo_task_reminder_id": reminder.id,
            "todo_task_id": reminder.todo_task_id,
            "offset_minutes": reminder.offset_minutes,
            "due_at": due_at.isoformat() if due_at else None,
            "priority": reminder.priority,
        },
    )


class ReminderDispatcher:
    """Sends a batch of due reminders and marks the delivered ones."""

    def __init__(
        self,
        source: Optional[ReminderSource],
        notifications: NotificationService,
        settings: Optional[Settings] = None,
        task_source: Optional[TaskReminderSource] = None,
    ):
        self.source = source
        self.task_source = task_source
        self.notifications = notifications
        self._settings = settings

    async def process_due(self, now: Optional[datetime] = None) -> ReminderBatchResult:
        """Mint reminders first, then task reminders, each capped at the batch size."""
        now = now or utcnow()
        batch_size = resolve_settings(self._settings).reminder_batch_size
        result = ReminderBatchResult()

        if self.source is not None:
            reminders = await self.source.list_due_reminders(batch_size)
            await self._send_each(
                "mint",
                reminders,
                reminder_target,
                compose_reminder,
                self.source.mark_reminder_sent,
                now,
                result,
            )

        if self.task_source is not None:
            task_reminders = await self.task_source.list_due_task_reminders(batch_size)
            await self._send_each(
                "todo_task",
                task_reminders,
                task_reminder_target,
                compose_task_reminder,
                self.task_source.mark_task_reminder_sent,
                now,
                result,
            )

        if result.processed:
            logger.info(
                "reminder_batch_processed",
                processed=result.processed,
                delivered=result.delivered,
                failed=result.failed,
            )
        return result

    async def _send_each(
        self,
        kind: str,
        reminders: Sequence[Any],
        target: Callable[[int], str],
        compose: Callable[[Any], NotificationMessage],
        mark_sent: Callable[[int], Awaitable[None]],
        now: datetime,
        result: ReminderBatchResult,
    ) -> None:
        for reminder in reminders:
            result.processed += 1
            try:
                dispatch = await self.notifications.dispatch(target(reminder.id), compose(reminder), now)
                if dispatch.delivered:
                    await mark_sent(reminder.id)
                    result.delivered += 1
            except Exception as e:
                result.failed += 1
                logger.error("reminder_dispatch_failed", kind=kind, reminder_id=reminder.id, error=str(e))
