# Data models
from mintops.models.automation import (
    RunStatus, UsageStatus, TransactionKind, DeliveryStatus, WorkflowState,
    RunLock, WorkflowRun,
    ChargeResult, RefundResult, TopUpResult, BillingSummary, LedgerReconciliation,
    NotificationMessage, DispatchResult, WorkflowOutcome, DueReminder, DueTaskReminder,
)

__all__ = [
    "RunStatus", "UsageStatus", "TransactionKind", "DeliveryStatus", "WorkflowState",
    "RunLock", "WorkflowRun",
    "ChargeResult", "RefundResult", "TopUpResult", "BillingSummary", "LedgerReconciliation",
    "NotificationMessage", "DispatchResult", "WorkflowOutcome", "DueReminder", "DueTaskReminder",
]
