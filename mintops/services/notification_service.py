"""
Notification delivery tracker.

One notification_history row per (target, channel). A dispatch walks every
enabled channel, skips channels that are already sent, exhausted, or
waiting out a backoff window, and records each attempt. Retry state is a
persisted timestamp, so it survives restarts: every tick simply checks
``now >= next_retry_at`` again.
"""

from datetime import datetime, timedelta
from functools import lru_cache
from typing import List, Optional, Sequence

from sqlalchemy import select
import structlog

from mintops.db.models import NotificationHistoryModel
from mintops.infrastructure.config import Settings, resolve_settings
from mintops.infrastructure.database import as_utc, dialect_insert, get_session, utcnow
from mintops.infrastructure.exceptions import InvalidRequestError, NoChannelsConfiguredError
from mintops.models.automation import (
    ChannelDelivery,
    DeliveryStatus,
    DispatchResult,
    NotificationMessage,
)
from mintops.services.channels import ChannelAdapter, build_configured_channels

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 1000
MAX_BACKOFF_SECONDS = 3600
MAX_TARGET_LENGTH = 255


def workflow_target(workflow_key: str, run_key: str) -> str:
    return f"workflow:{workflow_key}:{run_key}"


def reminder_target(reminder_id: int) -> str:
    return f"reminder:{reminder_id}"


def task_reminder_target(reminder_id: int) -> str:
    return f"reminder:task:{reminder_id}"


def compute_backoff(attempts: int, base_seconds: int) -> timedelta:
    """Exponential backoff after ``attempts`` failures, capped at one hour."""
    exponent = max(0, min(attempts - 1, 20))
    return timedelta(seconds=min(MAX_BACKOFF_SECONDS, base_seconds * 2 ** exponent))


def should_attempt(row: NotificationHistoryModel, now: datetime) -> bool:
    if row.status in (DeliveryStatus.SENT.value, DeliveryStatus.FAILED.value):
        return False
    next_retry_at = as_utc(row.next_retry_at)
    if next_retry_at is not None and next_retry_at > now:
        return False
    return True


def _to_delivery(row: NotificationHistoryModel, attempted: bool = False) -> ChannelDelivery:
    return ChannelDelivery(
        channel=row.channel,
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        attempted=attempted,
        last_error=row.last_error,
        next_retry_at=as_utc(row.next_retry_at),
        sent_at=as_utc(row.sent_at),
    )


class NotificationService:
    """Dispatch messages to every enabled channel with per-channel retry state."""

    def __init__(
        self,
        channels: Optional[Sequence[ChannelAdapter]] = None,
        settings: Optional[Settings] = None,
    ):
        self._channels = list(channels) if channels is not None else None
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return resolve_settings(self._settings)

    def enabled_channels(self) -> List[ChannelAdapter]:
        """Channels are enabled purely by configuration presence."""
        channels = self._channels if self._channels is not None else build_configured_channels(self._settings)
        return [channel for channel in channels if channel.configured]

    async def dispatch(
        self,
        target_key: str,
        message: NotificationMessage,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Deliver ``message`` for ``target_key``.

        A single channel failure never raises; it is recorded and reflected
        as ``delivered=False``. Raises NoChannelsConfiguredError when there
        is nothing to deliver through.
        """
        if not isinstance(target_key, str) or not target_key or len(target_key) > MAX_TARGET_LENGTH:
            raise InvalidRequestError("Invalid notification target", details={"target_key": target_key})

        channels = self.enabled_channels()
        if not channels:
            raise NoChannelsConfiguredError()

        now = as_utc(now) or utcnow()
        deliveries = []
        for channel in channels:
            deliveries.append(await self._deliver(target_key, channel, message, now))

        delivered = all(d.status == DeliveryStatus.SENT for d in deliveries)
        logger.info(
            "notification_dispatched",
            target=target_key,
            delivered=delivered,
            channels={d.channel: d.status.value for d in deliveries},
        )
        return DispatchResult(
            delivered=delivered,
            channels=[channel.name for channel in channels],
            deliveries=deliveries,
        )

    async def _deliver(
        self,
        target_key: str,
        channel: ChannelAdapter,
        message: NotificationMessage,
        now: datetime,
    ) -> ChannelDelivery:
        row = await self._fetch_or_create(target_key, channel.name, message)
        if not should_attempt(row, now):
            logger.debug(
                "notification_channel_not_due",
                target=target_key,
                channel=channel.name,
                status=row.status,
            )
            return _to_delivery(row)

        try:
            await channel.send(message)
        except Exception as e:
            return await self._record_failure(row.id, e, message, now)
        return await self._record_success(row.id, message, now)

    async def _fetch_or_create(
        self,
        target_key: str,
        channel: str,
        message: NotificationMessage,
    ) -> NotificationHistoryModel:
        async with get_session() as session:
            await session.execute(
                dialect_insert(NotificationHistoryModel)
                .values(
                    target_key=target_key,
                    channel=channel,
                    status=DeliveryStatus.PENDING.value,
                    attempts=0,
                    payload=message.model_dump(mode="json"),
                )
                .on_conflict_do_nothing(index_elements=["target_key", "channel"])
            )
            result = await session.execute(
                select(NotificationHistoryModel).where(
                    NotificationHistoryModel.target_key == target_key,
                    NotificationHistoryModel.channel == channel,
                )
            )
            return result.scalar_one()

    async def _record_success(
        self,
        row_id: int,
        message: NotificationMessage,
        now: datetime,
    ) -> ChannelDelivery:
        async with get_session() as session:
            row = await session.get(NotificationHistoryModel, row_id, with_for_update=True)
            row.status = DeliveryStatus.SENT.value
            row.attempts = row.attempts + 1
            row.last_error = None
            row.next_retry_at = None
            row.sent_at = now
            row.payload = message.model_dump(mode="json")
            await session.flush()
            delivery = _to_delivery(row, attempted=True)

        logger.info("notification_channel_sent", target=row.target_key, channel=row.channel, attempts=row.attempts)
        return delivery

    async def _record_failure(
        self,
        row_id: int,
        error: Exception,
        message: NotificationMessage,
        now: datetime,
    ) -> ChannelDelivery:
        settings = self.settings
        error_text = (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH]

        async with get_session() as session:
            row = await session.get(NotificationHistoryModel, row_id, with_for_update=True)
            attempts = row.attempts + 1
            row.attempts = attempts
            row.last_error = error_text
            row.payload = message.model_dump(mode="json")
            if attempts >= settings.notification_max_retries:
                row.status = DeliveryStatus.FAILED.value
                row.next_retry_at = None
            else:
                row.status = DeliveryStatus.RETRYING.value
                row.next_retry_at = now + compute_backoff(attempts, settings.notification_retry_base_seconds)
            await session.flush()
            delivery = _to_delivery(row, attempted=True)

        logger.warning(
            "notification_channel_failed",
            target=row.target_key,
            channel=row.channel,
            attempts=attempts,
            status=delivery.status.value,
            next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
            error=error_text[:200],
        )
        return delivery

    async def get_history(self, target_key: str) -> List[ChannelDelivery]:
        async with get_session() as session:
            result = await session.execute(
                select(NotificationHistoryModel)
                .where(NotificationHistoryModel.target_key == target_key)
                .order_by(NotificationHistoryModel.channel)
            )
            return [_to_delivery(row) for row in result.scalars().all()]


@lru_cache()
def get_notification_service() -> NotificationService:
    """Get cached notification service instance."""
    return NotificationService()
