"""
Run Ledger.

One row per (workflow_key, run_key). Claiming a run is an atomic
insert-if-absent, so concurrent scheduler processes racing on the same
logical run see exactly one winner.
"""

import re
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from mintops.db.models import WorkflowRunModel
from mintops.db.repositories.base import BaseRepository
from mintops.infrastructure.config import clamp_int
from mintops.infrastructure.database import dialect_insert, get_session
from mintops.infrastructure.exceptions import InvalidRequestError
from mintops.models.automation import RunLock, RunStatus, WorkflowRun

logger = structlog.get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,100}$")

TERMINAL_STATUSES = {
    RunStatus.SENT,
    RunStatus.FAILED,
    RunStatus.SKIPPED,
    RunStatus.ALREADY_RAN,
}


def validate_key(name: str, value: Any) -> str:
    """Reject empty or malformed workflow/run keys before touching storage."""
    if not isinstance(value, str) or not _KEY_PATTERN.match(value):
        raise InvalidRequestError(f"Invalid {name}", details={name: value})
    return value


def _to_run(row: WorkflowRunModel) -> WorkflowRun:
    return WorkflowRun(
        id=row.id,
        workflow_key=row.workflow_key,
        run_key=row.run_key,
        status=RunStatus(row.status),
        details=row.details or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class RunLedger(BaseRepository[WorkflowRunModel]):
    """Registry of claimed workflow runs."""

    def __init__(self):
        super().__init__(WorkflowRunModel)

    async def begin_run(self, workflow_key: str, run_key: str) -> RunLock:
        """Claim (workflow_key, run_key). ``started=False`` means someone already has it."""
        validate_key("workflow_key", workflow_key)
        validate_key("run_key", run_key)

        async with get_session() as session:
            stmt = (
                dialect_insert(WorkflowRunModel)
                .values(
                    workflow_key=workflow_key,
                    run_key=run_key,
                    status=RunStatus.STARTED.value,
                    details={},
                )
                .on_conflict_do_nothing(index_elements=["workflow_key", "run_key"])
                .returning(WorkflowRunModel.id)
            )
            result = await session.execute(stmt)
            run_id = result.scalar_one_or_none()

        if run_id is None:
            logger.info("workflow_run_already_claimed", workflow=workflow_key, run_key=run_key)
            return RunLock(started=False)

        logger.info("workflow_run_started", workflow=workflow_key, run_key=run_key, run_id=run_id)
        return RunLock(started=True, run_id=run_id)

    async def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[WorkflowRun]:
        """
        Write the terminal outcome of a claimed run.

        Only a run still in ``started`` is updated. A run that already holds
        a terminal outcome is returned unchanged.
        """
        status = RunStatus(status)
        if status not in TERMINAL_STATUSES:
            raise InvalidRequestError("finish_run requires a terminal status", details={"status": status.value})

        async with get_session() as session:
            result = await session.execute(
                select(WorkflowRunModel)
                .where(WorkflowRunModel.id == run_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                logger.warning("workflow_run_not_found", run_id=run_id, status=status.value)
                return None
            if row.status != RunStatus.STARTED.value:
                logger.warning(
                    "workflow_run_already_finished",
                    workflow=row.workflow_key,
                    run_key=row.run_key,
                    run_id=run_id,
                    status=row.status,
                    requested_status=status.value,
                )
                return _to_run(row)
            row.status = status.value
            row.details = details or {}
            await session.flush()
            await session.refresh(row)
            run = _to_run(row)

        logger.info(
            "workflow_run_finished",
            workflow=run.workflow_key,
            run_key=run.run_key,
            run_id=run_id,
            status=status.value,
        )
        return run

    async def get_run(self, workflow_key: str, run_key: str) -> Optional[WorkflowRun]:
        row = await self.find_one(workflow_key=workflow_key, run_key=run_key)
        return _to_run(row) if row else None

    async def list_runs(
        self,
        workflow_key: Optional[str] = None,
        status: Optional[RunStatus] = None,
        limit: int = 50,
    ) -> List[WorkflowRun]:
        """Newest runs first."""
        rows = await self.list(
            filters={
                "workflow_key": workflow_key,
                "status": RunStatus(status).value if status else None,
            },
            order_by="-created_at",
            limit=clamp_int(limit, 1, 200, 50),
        )
        return [_to_run(row) for row in rows]


@lru_cache()
def get_run_ledger() -> RunLedger:
    """Get cached run ledger instance."""
    return RunLedger()
