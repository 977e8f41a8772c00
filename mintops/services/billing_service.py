"""
Billing Ledger.

Prepaid balance account, one usage event per workflow run and an
append-only transaction log. Every charge, refund and top-up runs inside
``_locked_account``: a single database transaction holding the account
row lock for the full read-modify-write. Lock order is always account
row first, then usage event row.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncGenerator, Dict, Optional, Tuple

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from mintops.db.models import (
    BillingAccountModel,
    BillingTransactionModel,
    UsageEventModel,
)
from mintops.infrastructure.config import Settings, clamp_int, resolve_settings
from mintops.infrastructure.database import dialect_insert, get_session, utcnow
from mintops.infrastructure.exceptions import InvalidRequestError
from mintops.models.automation import (
    BillingAccount,
    BillingSummary,
    BillingTotals,
    BillingTransaction,
    ChargeResult,
    LedgerReconciliation,
    RefundResult,
    TopUpResult,
    TransactionKind,
    UsageEvent,
    UsageStatus,
)
from mintops.services.run_ledger import validate_key

logger = structlog.get_logger(__name__)

DEFAULT_ACCOUNT_KEY = "default"

# Usage states that end the charge decision for a run
RESOLVED_STATUSES = {
    UsageStatus.CHARGED.value,
    UsageStatus.BLOCKED.value,
    UsageStatus.FAILED_REVERTED.value,
}


class BillingService:
    """Idempotent charge / refund / top-up against the default account."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        # Single writer per process; SELECT ... FOR UPDATE covers other processes
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return resolve_settings(self._settings)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def resolve_price(self, workflow_key: str) -> int:
        """Price in cents for one run; workflows outside the table are free."""
        return max(0, int(self.settings.workflow_prices.get(workflow_key, 0)))

    def get_pricing(self) -> Dict[str, int]:
        return dict(self.settings.workflow_prices)

    # ------------------------------------------------------------------
    # Locked account aggregate
    # ------------------------------------------------------------------

    async def _ensure_account(self, session: AsyncSession) -> None:
        """Create the default account on first use, with its opening balance."""
        settings = self.settings
        opening = settings.default_balance_cents
        stmt = (
            dialect_insert(BillingAccountModel)
            .values(
                account_key=DEFAULT_ACCOUNT_KEY,
                currency=settings.currency,
                balance_cents=opening,
                spent_cents=0,
            )
            .on_conflict_do_nothing(index_elements=["account_key"])
            .returning(BillingAccountModel.id)
        )
        result = await session.execute(stmt)
        account_id = result.scalar_one_or_none()
        if account_id is None:
            return

        logger.info("billing_account_created", account=DEFAULT_ACCOUNT_KEY, balance_cents=opening)
        if opening > 0:
            session.add(
                BillingTransactionModel(
                    account_id=account_id,
                    kind=TransactionKind.TOPUP.value,
                    amount_cents=opening,
                    balance_after_cents=opening,
                    currency=settings.currency,
                    details={"source": "opening_balance"},
                )
            )
            await session.flush()

    @asynccontextmanager
    async def _locked_account(self) -> AsyncGenerator[Tuple[AsyncSession, BillingAccountModel], None]:
        """Yield (session, account) with the account row locked until commit."""
        async with self._lock:
            async with get_session() as session:
                await self._ensure_account(session)
                result = await session.execute(
                    select(BillingAccountModel)
                    .where(BillingAccountModel.account_key == DEFAULT_ACCOUNT_KEY)
                    .with_for_update()
                )
                account = result.scalar_one()
                yield session, account

    async def _get_usage(
        self,
        session: AsyncSession,
        workflow_key: str,
        run_key: str,
        for_update: bool = False,
    ) -> Optional[UsageEventModel]:
        stmt = select(UsageEventModel).where(
            UsageEventModel.workflow_key == workflow_key,
            UsageEventModel.run_key == run_key,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _save_usage(
        session: AsyncSession,
        usage: Optional[UsageEventModel],
        workflow_key: str,
        run_key: str,
        **fields: Any,
    ) -> UsageEventModel:
        details = fields.pop("details", {})
        if usage is None:
            usage = UsageEventModel(workflow_key=workflow_key, run_key=run_key, details={})
            session.add(usage)
        for key, value in fields.items():
            setattr(usage, key, value)
        usage.details = {**(usage.details or {}), **details}
        return usage

    # ------------------------------------------------------------------
    # Charge
    # ------------------------------------------------------------------

    async def charge(
        self,
        workflow_key: str,
        run_key: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """Charge one run. Re-invoking for an already resolved run never touches the ledger."""
        validate_key("workflow_key", workflow_key)
        validate_key("run_key", run_key)
        details = dict(details or {})
        settings = self.settings
        price = self.resolve_price(workflow_key)

        if not settings.pay_per_use_enabled or price <= 0:
            reason = "non-billable-workflow" if settings.pay_per_use_enabled else "pay-per-use-disabled"
            await self._record_free_usage(workflow_key, run_key, {**details, "reason": reason})
            return ChargeResult(
                allowed=True,
                charged=False,
                status=UsageStatus.FREE_DISABLED,
                price_cents=0,
                currency=settings.currency,
            )

        async with self._locked_account() as (session, account):
            usage = await self._get_usage(session, workflow_key, run_key, for_update=True)

            if usage is not None and usage.status in RESOLVED_STATUSES:
                charged = usage.status == UsageStatus.CHARGED.value
                logger.info(
                    "billing_charge_idempotent",
                    workflow=workflow_key,
                    run_key=run_key,
                    status=usage.status,
                )
                return ChargeResult(
                    allowed=charged,
                    charged=charged,
                    status=UsageStatus(usage.status),
                    price_cents=usage.price_cents,
                    currency=usage.currency,
                    balance_cents=account.balance_cents,
                    transaction_id=usage.billing_transaction_id if charged else None,
                    idempotent=True,
                )

            balance = account.balance_cents
            if balance < price:
                self._save_usage(
                    session, usage, workflow_key, run_key,
                    status=UsageStatus.BLOCKED.value,
                    price_cents=price,
                    currency=account.currency,
                    details={**details, "reason": "insufficient-balance", "account_balance_cents": balance},
                )
                await session.flush()
                logger.warning(
                    "billing_charge_blocked",
                    workflow=workflow_key,
                    run_key=run_key,
                    price_cents=price,
                    balance_cents=balance,
                )
                return ChargeResult(
                    allowed=False,
                    charged=False,
                    status=UsageStatus.BLOCKED,
                    price_cents=price,
                    currency=account.currency,
                    balance_cents=balance,
                )

            account.balance_cents = balance - price
            account.spent_cents = account.spent_cents + price
            account.last_charged_at = utcnow()

            transaction = BillingTransactionModel(
                account_id=account.id,
                kind=TransactionKind.CHARGE.value,
                amount_cents=-price,
                balance_after_cents=account.balance_cents,
                currency=account.currency,
                workflow_key=workflow_key,
                run_key=run_key,
                details=details,
            )
            session.add(transaction)
            await session.flush()

            self._save_usage(
                session, usage, workflow_key, run_key,
                status=UsageStatus.CHARGED.value,
                price_cents=price,
                currency=account.currency,
                billing_transaction_id=transaction.id,
                details=details,
            )
            await session.flush()

            logger.info(
                "billing_charged",
                workflow=workflow_key,
                run_key=run_key,
                price_cents=price,
                balance_cents=account.balance_cents,
                transaction_id=transaction.id,
            )
            return ChargeResult(
                allowed=True,
                charged=True,
                status=UsageStatus.CHARGED,
                price_cents=price,
                currency=account.currency,
                balance_cents=account.balance_cents,
                transaction_id=transaction.id,
            )

    async def _record_free_usage(self, workflow_key: str, run_key: str, details: Dict[str, Any]) -> None:
        """Upsert a free_disabled usage event.

        Details merge last-write-wins per top-level key. A run that was
        already resolved by a real charge keeps its status.
        """
        async with get_session() as session:
            await session.execute(
                dialect_insert(UsageEventModel)
                .values(
                    workflow_key=workflow_key,
                    run_key=run_key,
                    status=UsageStatus.FREE_DISABLED.value,
                    price_cents=0,
                    currency=self.settings.currency,
                    details={},
                )
                .on_conflict_do_nothing(index_elements=["workflow_key", "run_key"])
            )
            usage = await self._get_usage(session, workflow_key, run_key, for_update=True)
            usage.details = {**(usage.details or {}), **details}

        logger.info("billing_usage_free", workflow=workflow_key, run_key=run_key, reason=details.get("reason"))

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        workflow_key: str,
        run_key: str,
        reason: str = "workflow-send-failed",
        details: Optional[Dict[str, Any]] = None,
    ) -> RefundResult:
        """Reverse the charge of a run. A no-op unless the run is currently charged."""
        validate_key("workflow_key", workflow_key)
        validate_key("run_key", run_key)
        details = dict(details or {})

        async with get_session() as session:
            usage = await self._get_usage(session, workflow_key, run_key)
            if usage is None or usage.status != UsageStatus.CHARGED.value:
                return RefundResult(refunded=False, reason="not-charged")

        async with self._locked_account() as (session, account):
            usage = await self._get_usage(session, workflow_key, run_key, for_update=True)
            if usage is None or usage.status != UsageStatus.CHARGED.value:
                return RefundResult(refunded=False, reason="not-charged")

            existing_refund = await session.execute(
                select(BillingTransactionModel.id).where(
                    BillingTransactionModel.kind == TransactionKind.REFUND.value,
                    BillingTransactionModel.workflow_key == workflow_key,
                    BillingTransactionModel.run_key == run_key,
                ).limit(1)
            )
            if existing_refund.scalar_one_or_none() is not None:
                logger.warning("billing_refund_already_recorded", workflow=workflow_key, run_key=run_key)
                return RefundResult(refunded=False, reason="already-refunded")

            refund_cents = usage.price_cents
            charge_transaction_id = usage.billing_transaction_id
            account.balance_cents = account.balance_cents + refund_cents
            account.spent_cents = max(0, account.spent_cents - refund_cents)

            transaction = BillingTransactionModel(
                account_id=account.id,
                kind=TransactionKind.REFUND.value,
                amount_cents=refund_cents,
                balance_after_cents=account.balance_cents,
                currency=account.currency,
                workflow_key=workflow_key,
                run_key=run_key,
                details={**details, "reason": reason, "charge_transaction_id": charge_transaction_id},
            )
            session.add(transaction)
            await session.flush()

            self._save_usage(
                session, usage, workflow_key, run_key,
                status=UsageStatus.FAILED_REVERTED.value,
                refund_transaction_id=transaction.id,
                details={
                    **details,
                    "reason": reason,
                    "refunded": True,
                    "charge_transaction_id": charge_transaction_id,
                },
            )
            await session.flush()

            logger.info(
                "billing_refunded",
                workflow=workflow_key,
                run_key=run_key,
                refund_cents=refund_cents,
                balance_cents=account.balance_cents,
                reason=reason,
            )
            return RefundResult(
                refunded=True,
                reason=reason,
                refund_cents=refund_cents,
                currency=account.currency,
                balance_cents=account.balance_cents,
                transaction_id=transaction.id,
                charge_transaction_id=charge_transaction_id,
            )

    # ------------------------------------------------------------------
    # Top-up
    # ------------------------------------------------------------------

    async def top_up(
        self,
        amount_cents: int,
        source: str = "manual_topup",
        details: Optional[Dict[str, Any]] = None,
    ) -> TopUpResult:
        """Credit the default account."""
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidRequestError(
                "Top-up amount must be a positive integer number of cents",
                details={"amount_cents": amount_cents},
            )
        source = source or "manual_topup"

        async with self._locked_account() as (session, account):
            account.balance_cents = account.balance_cents + amount_cents
            transaction = BillingTransactionModel(
                account_id=account.id,
                kind=TransactionKind.TOPUP.value,
                amount_cents=amount_cents,
                balance_after_cents=account.balance_cents,
                currency=account.currency,
                details={**(details or {}), "source": source},
            )
            session.add(transaction)
            await session.flush()

            logger.info(
                "billing_topped_up",
                amount_cents=amount_cents,
                balance_cents=account.balance_cents,
                source=source,
            )
            return TopUpResult(
                amount_cents=amount_cents,
                balance_cents=account.balance_cents,
                spent_cents=account.spent_cents,
                currency=account.currency,
                transaction_id=transaction.id,
                source=source,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_usage_event(self, workflow_key: str, run_key: str) -> Optional[UsageEvent]:
        async with get_session() as session:
            usage = await self._get_usage(session, workflow_key, run_key)
            return UsageEvent.model_validate(usage, from_attributes=True) if usage else None

    async def get_account(self) -> BillingAccount:
        async with self._locked_account() as (_, account):
            return BillingAccount.model_validate(account, from_attributes=True)

    async def get_summary(self, usage_limit: int = 25, transaction_limit: int = 25) -> BillingSummary:
        """Account snapshot, pricing, run totals and the most recent ledger rows."""
        usage_limit = clamp_int(usage_limit, 1, 200, 25)
        transaction_limit = clamp_int(transaction_limit, 1, 200, 25)
        account = await self.get_account()

        async with get_session() as session:
            usage_rows = await session.execute(
                select(UsageEventModel)
                .order_by(UsageEventModel.created_at.desc(), UsageEventModel.id.desc())
                .limit(usage_limit)
            )
            transaction_rows = await session.execute(
                select(BillingTransactionModel)
                .order_by(BillingTransactionModel.created_at.desc(), BillingTransactionModel.id.desc())
                .limit(transaction_limit)
            )
            totals_row = (
                await session.execute(
                    select(
                        func.count(case((UsageEventModel.status == UsageStatus.CHARGED.value, 1))),
                        func.count(case((UsageEventModel.status == UsageStatus.BLOCKED.value, 1))),
                        func.count(case((UsageEventModel.status == UsageStatus.FAILED_REVERTED.value, 1))),
                        func.coalesce(
                            func.sum(
                                case(
                                    (UsageEventModel.status == UsageStatus.CHARGED.value, UsageEventModel.price_cents),
                                    else_=0,
                                )
                            ),
                            0,
                        ),
                    )
                )
            ).one()

            recent_usage = [
                UsageEvent.model_validate(row, from_attributes=True) for row in usage_rows.scalars().all()
            ]
            recent_transactions = [
                BillingTransaction.model_validate(row, from_attributes=True)
                for row in transaction_rows.scalars().all()
            ]

        return BillingSummary(
            pay_per_use_enabled=self.settings.pay_per_use_enabled,
            account=account,
            pricing=self.get_pricing(),
            totals=BillingTotals(
                charged_runs=totals_row[0],
                blocked_runs=totals_row[1],
                reverted_runs=totals_row[2],
                total_charged_cents=int(totals_row[3] or 0),
            ),
            recent_usage=recent_usage,
            recent_transactions=recent_transactions,
        )

    async def reconcile(self) -> LedgerReconciliation:
        """Check that the balance equals the running sum of transaction amounts."""
        async with self._locked_account() as (session, account):
            result = await session.execute(
                select(func.coalesce(func.sum(BillingTransactionModel.amount_cents), 0)).where(
                    BillingTransactionModel.account_id == account.id
                )
            )
            ledger_sum = int(result.scalar_one())
            balance = account.balance_cents

        consistent = ledger_sum == balance
        if not consistent:
            logger.error("billing_ledger_mismatch", balance_cents=balance, ledger_sum_cents=ledger_sum)
        return LedgerReconciliation(balance_cents=balance, ledger_sum_cents=ledger_sum, consistent=consistent)


@lru_cache()
def get_billing_service() -> BillingService:
    """Get cached billing service instance."""
    return BillingService()
