"""
Automation API Endpoints.

Billing summary and top-ups, run history and scheduler status.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from mintops.infrastructure.exceptions import InvalidRequestError
from mintops.models.automation import RunStatus
from mintops.services.billing_service import get_billing_service
from mintops.services.run_ledger import get_run_ledger
from mintops.services.scheduler_service import get_scheduler_supervisor

router = APIRouter()


class TopUpRequest(BaseModel):
    amount_cents: Optional[int] = None
    amount_usd: Optional[Decimal] = None
    source: Optional[str] = None
    note: Optional[str] = None


def _amount_in_cents(body: TopUpRequest) -> int:
    if (body.amount_cents is None) == (body.amount_usd is None):
        raise InvalidRequestError("Provide exactly one of amount_cents or amount_usd")
    if body.amount_cents is not None:
        return body.amount_cents
    try:
        cents = (body.amount_usd * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidRequestError("Invalid amount_usd", details={"amount_usd": str(body.amount_usd)})
    return int(cents)


@router.get("/billing")
async def get_billing(
    usage_limit: int = Query(25),
    transaction_limit: int = Query(25),
):
    """Account balance, pricing, totals and recent ledger rows."""
    billing = get_billing_service()
    return await billing.get_summary(usage_limit=usage_limit, transaction_limit=transaction_limit)


@router.post("/billing/top-up", status_code=201)
async def top_up(body: TopUpRequest):
    """Credit the automation balance."""
    billing = get_billing_service()
    details: Dict[str, Any] = {}
    if body.note:
        details["note"] = body.note[:500]
    return await billing.top_up(
        _amount_in_cents(body),
        source=body.source or "manual_topup",
        details=details,
    )


@router.get("/runs")
async def list_runs(
    workflow_key: Optional[str] = None,
    status: Optional[RunStatus] = None,
    limit: int = Query(50),
):
    """Workflow run history, newest first."""
    runs = await get_run_ledger().list_runs(workflow_key=workflow_key, status=status, limit=limit)
    return {"runs": runs, "total": len(runs)}


@router.get("/scheduler")
async def scheduler_status(audit_limit: int = Query(20, ge=1, le=200)):
    """Supervisor status and the most recent tick executions."""
    supervisor = get_scheduler_supervisor()
    return {
        **supervisor.get_status(),
        "audit": await supervisor.get_audit_log(limit=audit_limit),
    }
