"""
Automation core data models.

Statuses, ledger results, notification messages and workflow outcomes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Workflow run record status."""
    STARTED = "started"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    ALREADY_RAN = "already_ran"


class UsageStatus(str, Enum):
    """Billing state of a single workflow run."""
    FREE_DISABLED = "free_disabled"
    CHARGED = "charged"
    BLOCKED = "blocked_insufficient_funds"
    FAILED_REVERTED = "failed_reverted"


class TransactionKind(str, Enum):
    """Ledger transaction kinds."""
    CHARGE = "charge"
    REFUND = "refund"
    TOPUP = "topup"


class DeliveryStatus(str, Enum):
    """Per-channel delivery status."""
    PENDING = "pending"
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"


class WorkflowState(str, Enum):
    """Outcome of one driver invocation."""
    WAITING = "waiting"
    ALREADY_RAN = "already_ran"
    SKIPPED = "skipped"
    SENT = "sent"
    FAILED = "failed"


# ============================================================================
# Run ledger
# ============================================================================

class RunLock(BaseModel):
    """Result of claiming (workflow_key, run_key)."""
    started: bool
    run_id: Optional[int] = None


class WorkflowRun(BaseModel):
    id: int
    workflow_key: str
    run_key: str
    status: RunStatus
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================================================
# Billing ledger
# ============================================================================

class ChargeResult(BaseModel):
    allowed: bool
    charged: bool
    status: UsageStatus
    price_cents: int
    currency: str
    balance_cents: Optional[int] = None
    transaction_id: Optional[int] = None
    idempotent: bool = False


class RefundResult(BaseModel):
    refunded: bool
    reason: Optional[str] = None
    refund_cents: int = 0
    currency: Optional[str] = None
    balance_cents: Optional[int] = None
    transaction_id: Optional[int] = None
    charge_transaction_id: Optional[int] = None


class TopUpResult(BaseModel):
    amount_cents: int
    balance_cents: int
    spent_cents: int
    currency: str
    transaction_id: int
    source: str


class BillingAccount(BaseModel):
    account_key: str
    currency: str
    balance_cents: int
    spent_cents: int
    last_charged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UsageEvent(BaseModel):
    id: int
    workflow_key: str
    run_key: str
    status: UsageStatus
    price_cents: int
    currency: str
    billing_transaction_id: Optional[int] = None
    refund_transaction_id: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BillingTransaction(BaseModel):
    id: int
    kind: TransactionKind
    amount_cents: int
    balance_after_cents: int
    currency: str
    workflow_key: Optional[str] = None
    run_key: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class BillingTotals(BaseModel):
    charged_runs: int = 0
    blocked_runs: int = 0
    reverted_runs: int = 0
    total_charged_cents: int = 0


class BillingSummary(BaseModel):
    pay_per_use_enabled: bool
    account: BillingAccount
    pricing: Dict[str, int]
    totals: BillingTotals
    recent_usage: List[UsageEvent] = Field(default_factory=list)
    recent_transactions: List[BillingTransaction] = Field(default_factory=list)


class LedgerReconciliation(BaseModel):
    balance_cents: int
    ledger_sum_cents: int
    consistent: bool


# ============================================================================
# Notifications
# ============================================================================

class NotificationMessage(BaseModel):
    """Channel-neutral message handed to every adapter."""
    title: str
    body: str
    html: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ChannelDelivery(BaseModel):
    channel: str
    status: DeliveryStatus
    attempts: int
    attempted: bool
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


class DispatchResult(BaseModel):
    delivered: bool
    channels: List[str]
    deliveries: List[ChannelDelivery] = Field(default_factory=list)


# ============================================================================
# Workflow drivers
# ============================================================================

class WorkflowOutcome(BaseModel):
    workflow: str
    state: WorkflowState
    run_key: Optional[str] = None
    reason: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None
    billing: Optional[ChargeResult] = None
    notification: Optional[DispatchResult] = None
    refund: Optional[RefundResult] = None


class DueReminder(BaseModel):
    """A mint reminder whose notification time has arrived."""
    id: int
    mint_name: str
    chain: str
    offset_minutes: int
    mint_date: datetime
    remind_at: Optional[datetime] = None
    mint_id: Optional[int] = None


class DueTaskReminder(BaseModel):
    """A todo-task reminder whose notification time has arrived."""
    id: int
    todo_task_id: int
    task_title: str
    task_notes: Optional[str] = None
    priority: str = "medium"
    offset_minutes: int
    due_at: Optional[datetime] = None
    remind_at: Optional[datetime] = None


class ReminderBatchResult(BaseModel):
    processed: int = 0
    delivered: int = 0
    failed: int = 0
