"""
Workflow driver.

Runs one workflow definition for one wall-clock instant:
eligibility -> run lock -> snapshot -> charge -> dispatch -> refund if
undelivered -> finalize the run record.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python
import structlog

from mintops.infrastructure.database import as_utc, utcnow
from mintops.infrastructure.exceptions import InvalidRequestError
from mintops.models.automation import (
    RefundResult,
    RunStatus,
    WorkflowOutcome,
    WorkflowState,
)
from mintops.services.billing_service import BillingService, get_billing_service
from mintops.services.notification_service import (
    NotificationService,
    get_notification_service,
    workflow_target,
)
from mintops.services.run_ledger import RunLedger, get_run_ledger
from mintops.services.workflows import SnapshotBuilder, WorkflowDefinition

logger = structlog.get_logger(__name__)

REASON_INSUFFICIENT_BALANCE = "insufficient-balance"
REASON_DELIVERY_FAILED = "notification-delivery-failed"
REASON_EXCEPTION = "workflow-exception"


class WorkflowRunner:
    """Executes workflow definitions against the ledgers and the delivery tracker."""

    def __init__(
        self,
        run_ledger: Optional[RunLedger] = None,
        billing: Optional[BillingService] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.run_ledger = run_ledger or get_run_ledger()
        self.billing = billing or get_billing_service()
        self.notifications = notifications or get_notification_service()
        self._builders: Dict[str, SnapshotBuilder] = {}

    def register_snapshot_builder(self, workflow_key: str, builder: SnapshotBuilder) -> None:
        self._builders[workflow_key] = builder
        logger.info("snapshot_builder_registered", workflow=workflow_key)

    def has_snapshot_builder(self, workflow_key: str) -> bool:
        return workflow_key in self._builders

    async def run(self, definition: WorkflowDefinition, now: Optional[datetime] = None) -> WorkflowOutcome:
        key = definition.key
        builder = self._builders.get(key)
        if builder is None:
            raise InvalidRequestError("No snapshot builder registered", details={"workflow": key})

        now = as_utc(now) or utcnow()
        if not definition.schedule.is_due(now):
            return WorkflowOutcome(
                workflow=key,
                state=WorkflowState.WAITING,
                reason=definition.schedule.waiting_reason,
            )

        run_key = definition.schedule.run_key(now)
        lock = await self.run_ledger.begin_run(key, run_key)
        if not lock.started:
            return WorkflowOutcome(workflow=key, state=WorkflowState.ALREADY_RAN, run_key=run_key)

        delivered = False
        try:
            snapshot = to_jsonable_python(await builder(now, definition.params(now)))

            if definition.is_empty(snapshot):
                await self.run_ledger.finish_run(
                    lock.run_id,
                    RunStatus.SKIPPED,
                    {"reason": definition.empty_reason, "snapshot": snapshot},
                )
                logger.info("workflow_run_skipped", workflow=key, run_key=run_key, reason=definition.empty_reason)
                return WorkflowOutcome(
                    workflow=key,
                    state=WorkflowState.SKIPPED,
                    run_key=run_key,
                    reason=definition.empty_reason,
                    snapshot=snapshot,
                )

            billing = await self.billing.charge(key, run_key, {"run_id": lock.run_id})
            if not billing.allowed:
                await self.run_ledger.finish_run(
                    lock.run_id,
                    RunStatus.SKIPPED,
                    {
                        "reason": REASON_INSUFFICIENT_BALANCE,
                        "billing": billing.model_dump(mode="json"),
                        "snapshot": snapshot,
                    },
                )
                logger.warning(
                    "workflow_run_skipped",
                    workflow=key,
                    run_key=run_key,
                    reason=REASON_INSUFFICIENT_BALANCE,
                    price_cents=billing.price_cents,
                    balance_cents=billing.balance_cents,
                )
                return WorkflowOutcome(
                    workflow=key,
                    state=WorkflowState.SKIPPED,
                    run_key=run_key,
                    reason=REASON_INSUFFICIENT_BALANCE,
                    snapshot=snapshot,
                    billing=billing,
                )

            message = definition.compose(run_key, snapshot)
            message.data = {**message.data, "workflow": key, "run_key": run_key}
            notification = await self.notifications.dispatch(workflow_target(key, run_key), message, now)
            delivered = notification.delivered

            refund: Optional[RefundResult] = None
            if billing.charged and not delivered:
                refund = await self.billing.refund(
                    key,
                    run_key,
                    reason=REASON_DELIVERY_FAILED,
                    details={"channels": notification.channels},
                )

            state = WorkflowState.SENT if delivered else WorkflowState.FAILED
            await self.run_ledger.finish_run(
                lock.run_id,
                RunStatus.SENT if delivered else RunStatus.FAILED,
                {
                    "snapshot": snapshot,
                    "notification": notification.model_dump(mode="json"),
                    "billing": billing.model_dump(mode="json"),
                    "refund": refund.model_dump(mode="json") if refund else None,
                },
            )
            logger.info(
                "workflow_run_finished",
                workflow=key,
                run_key=run_key,
                state=state.value,
                charged=billing.charged,
                refunded=bool(refund and refund.refunded),
            )
            return WorkflowOutcome(
                workflow=key,
                state=state,
                run_key=run_key,
                reason=None if delivered else REASON_DELIVERY_FAILED,
                snapshot=snapshot,
                billing=billing,
                notification=notification,
                refund=refund,
            )
        except Exception as e:
            await self._compensate(key, run_key, lock.run_id, delivered, e)
            raise

    async def _compensate(
        self,
        workflow_key: str,
        run_key: str,
        run_id: int,
        delivered: bool,
        error: Exception,
    ) -> None:
        """Refund iff delivery was not confirmed, then mark the run failed.

        ``refund`` is itself a no-op unless the run is charged and has no
        refund transaction, so this is safe wherever the exception landed.
        """
        error_text = str(error)[:500] or type(error).__name__
        details: Dict[str, Any] = {"reason": REASON_EXCEPTION, "error": error_text}

        if not delivered:
            try:
                refund = await self.billing.refund(
                    workflow_key,
                    run_key,
                    reason=REASON_EXCEPTION,
                    details={"error": error_text},
                )
                details["refund"] = refund.model_dump(mode="json")
            except Exception as refund_error:
                logger.error(
                    "workflow_compensating_refund_failed",
                    workflow=workflow_key,
                    run_key=run_key,
                    error=str(refund_error),
                )

        try:
            await self.run_ledger.finish_run(
                run_id,
                RunStatus.SENT if delivered else RunStatus.FAILED,
                details,
            )
        except Exception as finish_error:
            logger.error(
                "workflow_failure_bookkeeping_failed",
                workflow=workflow_key,
                run_key=run_key,
                error=str(finish_error),
            )

        logger.error(
            "workflow_run_exception",
            workflow=workflow_key,
            run_key=run_key,
            error=error_text,
            error_type=type(error).__name__,
        )
