"""
Built-in recurring workflows.

A workflow is its schedule rule (eligibility + deterministic run key), the
parameters handed to its snapshot builder, an "empty" predicate and a
composer turning the snapshot into a notification message.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from html import escape
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mintops.infrastructure.config import Settings, resolve_settings
from mintops.models.automation import NotificationMessage

DAILY_BRIEFING = "daily_briefing_email"
MISSED_TASK_ALERT = "missed_task_alert"
INACTIVE_FARMING_ALERT = "inactive_farming_alert"
WEEKLY_PRODUCTIVITY_REPORT = "weekly_productivity_report"

SnapshotBuilder = Callable[[datetime, Dict[str, Any]], Awaitable[Dict[str, Any]]]


# ============================================================================
# Schedule rules
# ============================================================================

def date_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def hour_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d-%H")


def iso_week_key(now: datetime) -> str:
    year, week, _ = now.isocalendar()
    return f"{year}-W{week:02d}"


def sunday_weekday(now: datetime) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (now.weekday() + 1) % 7


class ScheduleRule:
    """When a workflow may run and which logical run ``now`` belongs to."""

    waiting_reason = "outside-schedule"

    def is_due(self, now: datetime) -> bool:
        return True

    def run_key(self, now: datetime) -> str:
        raise NotImplementedError


@dataclass
class DailyAt(ScheduleRule):
    hour: int
    waiting_reason = "before-scheduled-hour"

    def is_due(self, now: datetime) -> bool:
        return now.hour >= self.hour

    def run_key(self, now: datetime) -> str:
        return date_key(now)


@dataclass
class Hourly(ScheduleRule):
    def run_key(self, now: datetime) -> str:
        return hour_key(now)


@dataclass
class WeeklyAt(ScheduleRule):
    weekday: int  # 0 = Sunday
    hour: int

    def is_due(self, now: datetime) -> bool:
        return sunday_weekday(now) == self.weekday and now.hour >= self.hour

    def run_key(self, now: datetime) -> str:
        return iso_week_key(now)


# ============================================================================
# Definitions
# ============================================================================

def _never_empty(snapshot: Dict[str, Any]) -> bool:
    return False


def _no_params(now: datetime) -> Dict[str, Any]:
    return {}


@dataclass
class WorkflowDefinition:
    key: str
    schedule: ScheduleRule
    compose: Callable[[str, Dict[str, Any]], NotificationMessage]
    is_empty: Callable[[Dict[str, Any]], bool] = _never_empty
    empty_reason: str = "nothing-to-report"
    params: Callable[[datetime], Dict[str, Any]] = field(default=_no_params)


def _count(snapshot: Dict[str, Any], key: str) -> int:
    value = snapshot.get(key)
    if isinstance(value, (list, tuple)):
        return len(value)
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _text(value: Any) -> str:
    return escape(str(value if value is not None else ""))


def compose_daily_briefing(run_key: str, snapshot: Dict[str, Any]) -> NotificationMessage:
    upcoming = _count(snapshot, "upcoming_mints")
    reminders = _count(snapshot, "reminders_due_24h")
    avg_progress = _count(snapshot, "farming_avg_progress")
    alpha = _count(snapshot, "alpha_tweets_24h")

    items = "".join(
        f"<li>{_text(label)}: {value}</li>"
        for label, value in [
            ("Upcoming mints (24h)", upcoming),
            ("Reminders due (24h)", reminders),
            ("Farming projects", _count(snapshot, "farming_projects")),
            ("Average farming progress", f"{avg_progress}%"),
            ("Farming claims due (24h)", _count(snapshot, "farming_claims_due_24h")),
            ("Alpha tweets (24h)", alpha),
        ]
    )
    mint_items = "".join(
        f"<li>{_text(mint.get('name'))} ({_text(mint.get('chain'))}) at {_text(mint.get('mint_date'))}</li>"
        for mint in snapshot.get("upcoming_mints") or []
        if isinstance(mint, dict)
    )
    html = f"<p><strong>Daily Briefing</strong> ({_text(run_key)})</p><ul>{items}</ul>"
    if mint_items:
        html += f"<p>Next mints:</p><ul>{mint_items}</ul>"

    return NotificationMessage(
        title=f"Daily Briefing ({run_key})",
        body=(
            f"Upcoming mints: {upcoming}. Reminders due next 24h: {reminders}. "
            f"Farming avg progress: {avg_progress}%. Alpha tweets (24h): {alpha}."
        ),
        html=html,
    )


def compose_missed_task_alert(run_key: str, snapshot: Dict[str, Any]) -> NotificationMessage:
    total = _count(snapshot, "total_missed")
    reminders = _count(snapshot, "missed_reminders")
    claims = _count(snapshot, "overdue_farming_claims")
    body = (
        f"Detected {total} missed task signal(s): {reminders} unsent reminder(s), "
        f"{claims} overdue farming claim(s)."
    )
    return NotificationMessage(
        title=f"Alert: Missed Tasks Detected ({run_key} UTC)",
        body=body,
        html=(
            "<p><strong>Missed Task Alert</strong></p>"
            f"<p>{_text(body)}</p>"
            f"<p>Lookback window: {_count(snapshot, 'lookback_hours')} hour(s).</p>"
        ),
    )


def compose_inactive_farming_alert(run_key: str, snapshot: Dict[str, Any]) -> NotificationMessage:
    total = _count(snapshot, "total_inactive")
    body = (
        f"Detected {total} inactive farming project(s) with no updates for at least "
        f"{_count(snapshot, 'inactive_days')} day(s)."
    )
    project_items = "".join(
        f"<li>{_text(project.get('name'))} ({_text(project.get('network'))}): {_text(project.get('progress'))}%</li>"
        for project in snapshot.get("inactive_projects") or []
        if isinstance(project, dict)
    )
    html = f"<p><strong>Inactive Farming Alert</strong></p><p>{_text(body)}</p>"
    if project_items:
        html += f"<ul>{project_items}</ul>"
    return NotificationMessage(
        title=f"Alert: Inactive Farming Projects ({run_key} UTC)",
        body=body,
        html=html,
    )


def compose_weekly_report(run_key: str, snapshot: Dict[str, Any]) -> NotificationMessage:
    created = _count(snapshot, "mints_created")
    scheduled = _count(snapshot, "mints_scheduled")
    sent = _count(snapshot, "reminders_sent")
    avg_progress = _count(snapshot, "farming_avg_progress")
    alpha = _count(snapshot, "alpha_tweets")

    items = "".join(
        f"<li>{label}: {value}</li>"
        for label, value in [
            ("Period", f"{_text(snapshot.get('period_start'))} to {_text(snapshot.get('period_end'))}"),
            ("Mints created", created),
            ("Mints scheduled", scheduled),
            ("Reminders sent", sent),
            ("Farming projects", _count(snapshot, "farming_projects")),
            ("Farming average progress", f"{avg_progress}%"),
            ("Alpha tweets captured", alpha),
        ]
    )
    return NotificationMessage(
        title=f"Weekly Productivity Report ({run_key})",
        body=(
            f"Week summary: {created} mints created, {scheduled} mints scheduled, {sent} reminders sent, "
            f"farming avg progress {avg_progress}%, alpha tweets {alpha}."
        ),
        html=f"<p><strong>Weekly Productivity Report</strong> ({_text(run_key)})</p><ul>{items}</ul>",
    )


def weekly_period(now: datetime) -> Dict[str, Any]:
    """The seven UTC days ending at the start of today."""
    period_end = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return {
        "period_start": period_end - timedelta(days=7),
        "period_end": period_end,
    }


def build_default_workflows(settings: Optional[Settings] = None) -> List[WorkflowDefinition]:
    """The four built-in workflows, in tick order."""
    settings = resolve_settings(settings)
    return [
        WorkflowDefinition(
            key=DAILY_BRIEFING,
            schedule=DailyAt(hour=settings.daily_briefing_hour_utc),
            compose=compose_daily_briefing,
        ),
        WorkflowDefinition(
            key=MISSED_TASK_ALERT,
            schedule=Hourly(),
            compose=compose_missed_task_alert,
            is_empty=lambda snapshot: _count(snapshot, "total_missed") == 0,
            empty_reason="no-missed-tasks",
            params=lambda now: {"lookback_hours": settings.missed_task_lookback_hours},
        ),
        WorkflowDefinition(
            key=INACTIVE_FARMING_ALERT,
            schedule=Hourly(),
            compose=compose_inactive_farming_alert,
            is_empty=lambda snapshot: _count(snapshot, "total_inactive") == 0,
            empty_reason="no-inactive-projects",
            params=lambda now: {"inactive_days": settings.inactive_farming_days},
        ),
        WorkflowDefinition(
            key=WEEKLY_PRODUCTIVITY_REPORT,
            schedule=WeeklyAt(
                weekday=settings.weekly_report_day_utc,
                hour=settings.weekly_report_hour_utc,
            ),
            compose=compose_weekly_report,
            params=weekly_period,
        ),
    ]
