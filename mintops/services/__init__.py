# Services
from mintops.services.billing_service import BillingService, get_billing_service
from mintops.services.notification_service import NotificationService, get_notification_service
from mintops.services.run_ledger import RunLedger, get_run_ledger
from mintops.services.scheduler_service import SchedulerSupervisor, get_scheduler_supervisor
from mintops.services.workflow_runner import WorkflowRunner

__all__ = [
    "BillingService", "get_billing_service",
    "NotificationService", "get_notification_service",
    "RunLedger", "get_run_ledger",
    "SchedulerSupervisor", "get_scheduler_supervisor",
    "WorkflowRunner",
]
