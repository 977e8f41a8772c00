"""
Scheduler supervisor for the automation core.

Two interval job families share one AsyncIOScheduler:
- automation: runs every armed workflow driver sequentially
- reminders: dispatches due mint and todo-task reminders

An overlapping tick of the same family is skipped entirely, never queued.
All tick executions are logged to the scheduler_audit_log table.

Snapshot builders and reminder sources can be attached before or after
start; attaching the first one of a family arms its job. Embedding apps
use ``add_startup_hook`` to attach them before ``start_scheduler`` runs.
"""
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import func as sa_func, select
import structlog

from mintops.db.models import SchedulerAuditLogModel
from mintops.infrastructure.config import Settings, resolve_settings
from mintops.infrastructure.database import as_utc, get_session, utcnow
from mintops.models.automation import ReminderBatchResult, WorkflowOutcome
from mintops.services.notification_service import NotificationService, get_notification_service
from mintops.services.reminder_service import ReminderDispatcher, ReminderSource, TaskReminderSource
from mintops.services.workflow_runner import WorkflowRunner
from mintops.services.workflows import SnapshotBuilder, WorkflowDefinition, build_default_workflows

logger = structlog.get_logger(__name__)

AUTOMATION_JOB = "automation"
REMINDER_JOB = "reminders"


class SchedulerSupervisor:
    """
    Owns the interval timers and the per-family re-entrancy guards.

    Workflow drivers within one tick run one after another; a failing
    workflow is logged and the tick moves on to the next one.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationService] = None,
        runner: Optional[WorkflowRunner] = None,
        workflows: Optional[List[WorkflowDefinition]] = None,
    ):
        self._settings = settings
        self.notifications = notifications or get_notification_service()
        self.runner = runner or WorkflowRunner(notifications=self.notifications)
        self.workflows = workflows if workflows is not None else build_default_workflows(settings)
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._running = False
        self._jobs: Dict[str, str] = {}  # family -> job_id
        self._ticking = {AUTOMATION_JOB: False, REMINDER_JOB: False}
        self._warned_no_channels = {AUTOMATION_JOB: False, REMINDER_JOB: False}
        self._last_tick: Dict[str, Dict[str, Any]] = {}
        self._reminder_source: Optional[ReminderSource] = None
        self._task_reminder_source: Optional[TaskReminderSource] = None

    @property
    def settings(self) -> Settings:
        return resolve_settings(self._settings)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def register_snapshot_builder(self, workflow_key: str, builder: SnapshotBuilder) -> None:
        self.runner.register_snapshot_builder(workflow_key, builder)
        if self.armed_workflows():
            self._arm_if_running(AUTOMATION_JOB, self.run_automation_tick)

    def register_reminder_source(self, source: ReminderSource) -> None:
        self._reminder_source = source
        logger.info("reminder_source_registered", source=type(source).__name__)
        self._arm_if_running(REMINDER_JOB, self.run_reminder_tick)

    def register_task_reminder_source(self, source: TaskReminderSource) -> None:
        self._task_reminder_source = source
        logger.info("task_reminder_source_registered", source=type(source).__name__)
        self._arm_if_running(REMINDER_JOB, self.run_reminder_tick)

    def armed_workflows(self) -> List[WorkflowDefinition]:
        return [w for w in self.workflows if self.runner.has_snapshot_builder(w.key)]

    def has_reminder_sources(self) -> bool:
        return self._reminder_source is not None or self._task_reminder_source is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Arm the interval jobs. Both families fire once immediately."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        logger.info("scheduler_starting")

        for workflow in self.workflows:
            if not self.runner.has_snapshot_builder(workflow.key):
                logger.warning("workflow_not_armed", workflow=workflow.key, reason="no snapshot builder")

        if self.armed_workflows():
            self._register_job(AUTOMATION_JOB, self.run_automation_tick)
        if self.has_reminder_sources():
            self._register_job(REMINDER_JOB, self.run_reminder_tick)

        self.scheduler.start()
        self._running = True

        logger.info("scheduler_started", jobs=list(self._jobs.keys()))

    async def stop(self):
        """Disarm the interval jobs. In-flight ticks finish on their own."""
        if not self._running:
            return

        logger.info("scheduler_stopping")
        self.scheduler.shutdown(wait=False)
        self._running = False
        self._jobs.clear()
        logger.info("scheduler_stopped")

    def _register_job(self, family: str, handler: Callable[[], Awaitable[Any]]):
        interval = self.settings.scheduler_interval_seconds
        job = self.scheduler.add_job(
            handler,
            trigger=IntervalTrigger(seconds=interval),
            id=family,
            name=f"{family} tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._jobs[family] = job.id
        logger.info("job_registered", job=family, interval_seconds=interval)

    def _arm_if_running(self, family: str, handler: Callable[[], Awaitable[Any]]):
        """Add a family's job to a scheduler that is already running."""
        if self._running and family not in self._jobs:
            self._register_job(family, handler)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def run_automation_tick(self, now: Optional[datetime] = None) -> Optional[List[WorkflowOutcome]]:
        """One pass over every armed workflow. None when skipped as overlapping."""
        return await self._guarded(AUTOMATION_JOB, lambda: self._automation_batch(now))

    async def run_reminder_tick(self, now: Optional[datetime] = None) -> Optional[ReminderBatchResult]:
        """One batch of due reminders. None when skipped as overlapping."""
        return await self._guarded(REMINDER_JOB, lambda: self._reminder_batch(now))

    async def _guarded(self, family: str, handler: Callable[[], Awaitable[Any]]) -> Any:
        if self._ticking[family]:
            logger.info("scheduler_tick_skipped", job=family, reason="previous tick still running")
            return None

        self._ticking[family] = True
        try:
            return await self._run_with_audit(family, handler)
        finally:
            self._ticking[family] = False

    def _channels_ready(self, family: str) -> bool:
        if self.notifications.enabled_channels():
            self._warned_no_channels[family] = False
            return True
        if not self._warned_no_channels[family]:
            self._warned_no_channels[family] = True
            logger.warning("scheduler_batch_skipped", job=family, reason="no notification channels configured")
        return False

    async def _automation_batch(self, now: Optional[datetime]) -> List[WorkflowOutcome]:
        if not self._channels_ready(AUTOMATION_JOB):
            return []

        now = as_utc(now) or utcnow()
        outcomes = []
        for workflow in self.armed_workflows():
            try:
                outcome = await self.runner.run(workflow, now)
            except Exception as e:
                logger.error(
                    "workflow_tick_failed",
                    workflow=workflow.key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            outcomes.append(outcome)
            logger.debug(
                "workflow_tick_outcome",
                workflow=workflow.key,
                state=outcome.state.value,
                run_key=outcome.run_key,
            )
        return outcomes

    async def _reminder_batch(self, now: Optional[datetime]) -> ReminderBatchResult:
        if not self.has_reminder_sources():
            return ReminderBatchResult()
        if not self._channels_ready(REMINDER_JOB):
            return ReminderBatchResult()

        dispatcher = ReminderDispatcher(
            self._reminder_source,
            self.notifications,
            self._settings,
            task_source=self._task_reminder_source,
        )
        return await dispatcher.process_due(as_utc(now) or utcnow())

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def _run_with_audit(self, job_name: str, handler: Callable[[], Awaitable[Any]]) -> Any:
        """Execute a handler and record the result in the audit log."""
        started = utcnow()
        t0 = time.monotonic()
        status = "completed"
        error_msg = None
        result = None

        try:
            result = await handler()
        except Exception as e:
            status = "failed"
            error_msg = str(e)
            logger.error("job_failed", job=job_name, error=error_msg)
        finally:
            duration = round(time.monotonic() - t0, 2)
            completed = utcnow()
            await self._append_audit(
                job_name=job_name,
                started_at=started,
                completed_at=completed,
                status=status,
                duration_seconds=duration,
                error=error_msg,
            )
            self._last_tick[job_name] = {
                "started_at": started.isoformat(),
                "status": status,
                "duration_seconds": duration,
            }
            logger.info("job_audit", job=job_name, status=status, duration=duration)

        return result

    async def _append_audit(
        self,
        job_name: str,
        started_at: datetime,
        completed_at: datetime,
        status: str,
        duration_seconds: float,
        error: Optional[str] = None,
    ):
        """Persist an execution record to the scheduler_audit_log table."""
        try:
            async with get_session() as session:
                session.add(SchedulerAuditLogModel(
                    job_name=job_name,
                    started_at=started_at,
                    completed_at=completed_at,
                    status=status,
                    duration_seconds=duration_seconds,
                    error=error,
                ))
        except Exception as e:
            logger.error("audit_log_write_failed", job=job_name, error=str(e))

    async def get_audit_log(self, limit: int = 50) -> Dict[str, Any]:
        """Recent audit log entries, oldest first."""
        async with get_session() as session:
            count_result = await session.execute(
                select(sa_func.count()).select_from(SchedulerAuditLogModel)
            )
            total = count_result.scalar() or 0

            result = await session.execute(
                select(SchedulerAuditLogModel)
                .order_by(SchedulerAuditLogModel.created_at.desc(), SchedulerAuditLogModel.id.desc())
                .limit(limit)
            )
            rows = result.scalars().all()

        executions = [
            {
                "job_name": row.job_name,
                "started_at": as_utc(row.started_at).isoformat() if row.started_at else None,
                "completed_at": as_utc(row.completed_at).isoformat() if row.completed_at else None,
                "status": row.status,
                "duration_seconds": row.duration_seconds,
                "error": row.error,
            }
            for row in reversed(rows)
        ]
        return {"executions": executions, "total": total}

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status and job list."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            })

        return {
            "running": self._running,
            "interval_seconds": self.settings.scheduler_interval_seconds,
            "jobs": jobs,
            "job_count": len(jobs),
            "ticking": dict(self._ticking),
            "last_tick": dict(self._last_tick),
            "armed_workflows": [w.key for w in self.armed_workflows()],
            "reminder_source": self._reminder_source is not None,
            "task_reminder_source": self._task_reminder_source is not None,
            "channels": [c.name for c in self.notifications.enabled_channels()],
        }


# ============================================
# SINGLETON
# ============================================

_scheduler_supervisor: Optional[SchedulerSupervisor] = None

SupervisorHook = Callable[[SchedulerSupervisor], Any]
_startup_hooks: List[SupervisorHook] = []


def get_scheduler_supervisor() -> SchedulerSupervisor:
    """Get the singleton scheduler supervisor instance."""
    global _scheduler_supervisor
    if _scheduler_supervisor is None:
        _scheduler_supervisor = SchedulerSupervisor()
    return _scheduler_supervisor


def add_startup_hook(hook: SupervisorHook) -> SupervisorHook:
    """
    Run ``hook(supervisor)`` inside ``start_scheduler``, before the timers arm.

    This is where an embedding app attaches its snapshot builders and
    reminder sources. The hook may be a plain function or a coroutine
    function. Usable as a decorator.
    """
    _startup_hooks.append(hook)
    return hook


async def start_scheduler():
    """Start the scheduler (call from app startup)."""
    supervisor = get_scheduler_supervisor()
    for hook in list(_startup_hooks):
        result = hook(supervisor)
        if inspect.isawaitable(result):
            await result
        logger.info("scheduler_startup_hook_applied", hook=getattr(hook, "__name__", repr(hook)))
    await supervisor.start()


async def stop_scheduler():
    """Stop the scheduler (call from app shutdown)."""
    supervisor = get_scheduler_supervisor()
    await supervisor.stop()
