"""
SQLAlchemy ORM models for the mintops automation core.

Run ledger, billing ledger, notification delivery history and the
scheduler audit log.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from mintops.infrastructure.database import Base, JSONType


# ---------------------------------------------------------------------------
# Workflow runs (run ledger)
# ---------------------------------------------------------------------------

class WorkflowRunModel(Base):
    __tablename__ = "workflow_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    run_key: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    details: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("workflow_key", "run_key", name="uq_workflow_runs_key"),
        CheckConstraint(
            "status IN ('started', 'sent', 'failed', 'skipped', 'already_ran')",
            name="ck_workflow_runs_status",
        ),
        Index("idx_workflow_runs_workflow", "workflow_key", "created_at"),
    )


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

class BillingAccountModel(Base):
    __tablename__ = "billing_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_charged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="ck_billing_accounts_balance"),
        CheckConstraint("spent_cents >= 0", name="ck_billing_accounts_spent"),
    )


class UsageEventModel(Base):
    __tablename__ = "automation_usage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_key: Mapped[str] = mapped_column(String(100), nullable=False)
    run_key: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    billing_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("automation_billing_transactions.id")
    )
    refund_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("automation_billing_transactions.id")
    )
    details: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("workflow_key", "run_key", name="uq_usage_events_key"),
        CheckConstraint(
            "status IN ('free_disabled', 'charged', 'blocked_insufficient_funds', 'failed_reverted')",
            name="ck_usage_events_status",
        ),
    )


class BillingTransactionModel(Base):
    """Append-only. Never updated or deleted."""

    __tablename__ = "automation_billing_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("billing_accounts.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    workflow_key: Mapped[Optional[str]] = mapped_column(String(100))
    run_key: Mapped[Optional[str]] = mapped_column(String(100))
    details: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("kind IN ('charge', 'refund', 'topup')", name="ck_billing_transactions_kind"),
        Index("idx_billing_transactions_run", "workflow_key", "run_key"),
        Index("idx_billing_transactions_created", "created_at"),
    )


# ---------------------------------------------------------------------------
# Notification delivery history
# ---------------------------------------------------------------------------

class NotificationHistoryModel(Base):
    __tablename__ = "notification_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_key: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("target_key", "channel", name="uq_notification_history_target"),
        CheckConstraint(
            "status IN ('pending', 'retrying', 'sent', 'failed')",
            name="ck_notification_history_status",
        ),
        Index("idx_notification_history_retry", "status", "next_retry_at"),
    )


# ---------------------------------------------------------------------------
# Scheduler Audit Log
# ---------------------------------------------------------------------------

class SchedulerAuditLogModel(Base):
    __tablename__ = "scheduler_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_audit_created", "created_at"),
    )
