"""
Notification channel adapters.

Each adapter exposes ``send(message)``: it returns on success and raises
``ChannelDeliveryError`` (or any transport error) on failure. Retry
bookkeeping belongs to the notification service, not to the adapters.
"""

import asyncio
import json
from html import escape
from typing import Any, Dict, List, Optional

import httpx
from pywebpush import WebPushException, webpush
import structlog

from mintops.infrastructure.config import Settings, resolve_settings
from mintops.infrastructure.exceptions import ChannelDeliveryError
from mintops.models.automation import NotificationMessage

logger = structlog.get_logger(__name__)

BREVO_API = "https://api.brevo.com/v3/smtp/email"
DISCORD_API = "https://discord.com/api/v10"
DISCORD_EMBED_DESCRIPTION_LIMIT = 4096


class ChannelAdapter:
    """A notification transport."""

    name: str = "channel"

    @property
    def configured(self) -> bool:
        return True

    async def send(self, message: NotificationMessage) -> None:
        raise NotImplementedError


class WebPushChannel(ChannelAdapter):
    """Browser push through VAPID, fanned out to every stored subscription."""

    name = "web_push"

    def __init__(self, settings: Optional[Settings] = None):
        settings = resolve_settings(settings)
        self._subject = settings.web_push_vapid_subject
        self._public_key = settings.web_push_vapid_public_key
        self._private_key = settings.web_push_vapid_private_key
        self._subscriptions: List[Dict[str, Any]] = list(settings.web_push_subscriptions)
        self._timeout = settings.channel_timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self._subject and self._public_key and self._private_key and self._subscriptions)

    def _push(self, subscription: Dict[str, Any], data: str) -> None:
        webpush(
            subscription_info=subscription,
            data=data,
            vapid_private_key=self._private_key,
            vapid_claims={"sub": self._subject},
            timeout=self._timeout,
        )

    async def send(self, message: NotificationMessage) -> None:
        """Succeeds if at least one subscription accepted the push."""
        data = json.dumps({
            "title": message.title,
            "body": message.body,
            "data": message.data,
        }, default=str)

        delivered = 0
        errors = []
        for subscription in self._subscriptions:
            try:
                await asyncio.to_thread(self._push, subscription, data)
                delivered += 1
            except WebPushException as e:
                status = getattr(e.response, "status_code", None)
                errors.append(f"{status}: {e}")
                logger.warning("web_push_subscription_failed", status=status, error=str(e)[:200])

        if delivered == 0:
            raise ChannelDeliveryError(self.name, "; ".join(errors) or "web push failed for all subscriptions")

        logger.info("web_push_sent", delivered=delivered, failed=len(errors))


class BrevoEmailChannel(ChannelAdapter):
    """Transactional email through the Brevo API."""

    name = "brevo_email"

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = resolve_settings(settings)
        self._api_key = settings.brevo_api_key
        self._sender = {"email": settings.brevo_sender_email, "name": settings.brevo_sender_name}
        self._recipient = {"email": settings.brevo_recipient_email, "name": settings.brevo_recipient_name}
        self._timeout = settings.channel_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._sender["email"] and self._recipient["email"])

    async def send(self, message: NotificationMessage) -> None:
        payload = {
            "sender": self._sender,
            "to": [self._recipient],
            "subject": message.title,
            "textContent": message.body,
            "htmlContent": message.html or f"<pre>{escape(message.body)}</pre>",
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                BREVO_API,
                json=payload,
                headers={
                    "api-key": self._api_key,
                    "accept": "application/json",
                    "content-type": "application/json",
                },
            )
        if resp.status_code >= 400:
            raise ChannelDeliveryError(self.name, f"Brevo error {resp.status_code}: {resp.text[:300]}")
        logger.info("brevo_email_sent", subject=message.title, status=resp.status_code)


class DiscordChannel(ChannelAdapter):
    """Embed message posted to a Discord channel via the bot REST API."""

    name = "discord"

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = resolve_settings(settings)
        self._token = settings.discord_bot_token
        self._channel_id = settings.discord_channel_id
        self._timeout = settings.channel_timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._token and self._channel_id)

    async def send(self, message: NotificationMessage) -> None:
        description = message.body
        if len(description) > DISCORD_EMBED_DESCRIPTION_LIMIT:
            description = description[:DISCORD_EMBED_DESCRIPTION_LIMIT - 4] + "..."
        embed = {
            "title": message.title[:256],
            "description": description,
            "color": 0x5865F2,
        }

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                f"{DISCORD_API}/channels/{self._channel_id}/messages",
                json={"embeds": [embed]},
                headers={
                    "Authorization": f"Bot {self._token}",
                    "Content-Type": "application/json",
                },
            )
        if resp.status_code >= 400:
            raise ChannelDeliveryError(self.name, f"Discord error {resp.status_code}: {resp.text[:200]}")
        logger.info("discord_embed_sent", channel=self._channel_id, title=message.title)


def build_configured_channels(settings: Optional[Settings] = None) -> List[ChannelAdapter]:
    """Adapters whose configuration is present, in a stable order."""
    candidates = [
        WebPushChannel(settings),
        BrevoEmailChannel(settings),
        DiscordChannel(settings),
    ]
    return [channel for channel in candidates if channel.configured]
