"""
Tests for notification delivery tracking and channel adapters.
"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from mintops.infrastructure.exceptions import (
    ChannelDeliveryError,
    InvalidRequestError,
    NoChannelsConfiguredError,
)
from mintops.models.automation import DeliveryStatus, NotificationMessage
from mintops.services.channels import (
    BrevoEmailChannel,
    DiscordChannel,
    WebPushChannel,
    build_configured_channels,
)
from mintops.services.notification_service import (
    NotificationService,
    compute_backoff,
    reminder_target,
    workflow_target,
)

from conftest import FakeChannel

T0 = datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)
MESSAGE = NotificationMessage(title="Daily Briefing (2024-03-05)", body="Upcoming mints: 2.")


class TestTargetsAndBackoff:
    """Pure helpers."""

    def test_targets(self):
        assert workflow_target("missed_task_alert", "2024-03-05-09") == "workflow:missed_task_alert:2024-03-05-09"
        assert reminder_target(42) == "reminder:42"

    def test_backoff_doubles_and_caps(self):
        assert compute_backoff(1, 60) == timedelta(seconds=60)
        assert compute_backoff(2, 60) == timedelta(seconds=120)
        assert compute_backoff(3, 60) == timedelta(seconds=240)
        assert compute_backoff(10, 60) == timedelta(hours=1)
        assert compute_backoff(500, 60) == timedelta(hours=1)


class TestDispatch:
    """Per-channel delivery state."""

    @pytest.mark.asyncio
    async def test_all_channels_sent(self, database, test_settings):
        a, b = FakeChannel("a"), FakeChannel("b")
        service = NotificationService(channels=[a, b], settings=test_settings)

        result = await service.dispatch("workflow:x:1", MESSAGE, T0)
        assert result.delivered is True
        assert result.channels == ["a", "b"]
        assert all(d.status == DeliveryStatus.SENT for d in result.deliveries)
        assert a.sent[0].title == MESSAGE.title

    @pytest.mark.asyncio
    async def test_one_failing_channel_is_not_resent_when_other_is_sent(self, database, test_settings, ok_channel, failing_channel):
        service = NotificationService(channels=[ok_channel, failing_channel], settings=test_settings)

        first = await service.dispatch("workflow:x:1", MESSAGE, T0)
        assert first.delivered is False

        second = await service.dispatch("workflow:x:1", MESSAGE, T0 + timedelta(hours=2))
        assert second.delivered is False
        assert ok_channel.calls == 1
        assert failing_channel.calls == 2

        by_channel = {d.channel: d for d in second.deliveries}
        assert by_channel["fake_ok"].attempted is False
        assert by_channel["fake_ok"].status == DeliveryStatus.SENT
        assert by_channel["fake_down"].status == DeliveryStatus.RETRYING

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, database, test_settings, failing_channel):
        service = NotificationService(channels=[failing_channel], settings=test_settings)

        result = await service.dispatch("workflow:x:1", MESSAGE, T0)
        delivery = result.deliveries[0]
        assert delivery.status == DeliveryStatus.RETRYING
        assert delivery.attempts == 1
        assert delivery.next_retry_at == T0 + timedelta(seconds=60)
        assert "unavailable" in delivery.last_error

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff_window(self, database, test_settings, failing_channel):
        service = NotificationService(channels=[failing_channel], settings=test_settings)

        await service.dispatch("workflow:x:1", MESSAGE, T0)
        early = await service.dispatch("workflow:x:1", MESSAGE, T0 + timedelta(seconds=30))
        assert failing_channel.calls == 1
        assert early.deliveries[0].attempted is False

        await service.dispatch("workflow:x:1", MESSAGE, T0 + timedelta(seconds=61))
        assert failing_channel.calls == 2

    @pytest.mark.asyncio
    async def test_recovering_channel_becomes_sent(self, database, test_settings):
        flaky = FakeChannel("flaky", fail=True)
        service = NotificationService(channels=[flaky], settings=test_settings)

        await service.dispatch("reminder:7", MESSAGE, T0)
        flaky.fail = False
        result = await service.dispatch("reminder:7", MESSAGE, T0 + timedelta(minutes=5))

        assert result.delivered is True
        delivery = result.deliveries[0]
        assert delivery.attempts == 2
        assert delivery.next_retry_at is None
        assert delivery.last_error is None
        assert delivery.sent_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_terminal(self, database, test_settings, failing_channel):
        service = NotificationService(channels=[failing_channel], settings=test_settings)

        for hours in range(0, 8, 2):
            await service.dispatch("workflow:x:1", MESSAGE, T0 + timedelta(hours=hours))

        assert failing_channel.calls == test_settings.notification_max_retries
        history = await service.get_history("workflow:x:1")
        assert history[0].status == DeliveryStatus.FAILED
        assert history[0].attempts == test_settings.notification_max_retries
        assert history[0].next_retry_at is None

    @pytest.mark.asyncio
    async def test_error_text_is_truncated(self, database, test_settings):
        class LoudChannel(FakeChannel):
            async def send(self, message):
                raise ChannelDeliveryError(self.name, "x" * 5000)

        service = NotificationService(channels=[LoudChannel("loud")], settings=test_settings)
        result = await service.dispatch("workflow:x:1", MESSAGE, T0)
        assert len(result.deliveries[0].last_error) == 1000

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_is_recorded(self, database, test_settings):
        class BrokenChannel(FakeChannel):
            async def send(self, message):
                raise RuntimeError("socket closed")

        service = NotificationService(channels=[BrokenChannel("broken")], settings=test_settings)
        result = await service.dispatch("workflow:x:1", MESSAGE, T0)
        assert result.delivered is False
        assert result.deliveries[0].last_error == "socket closed"

    @pytest.mark.asyncio
    async def test_no_channels_raises(self, database, test_settings):
        service = NotificationService(channels=[], settings=test_settings)
        with pytest.raises(NoChannelsConfiguredError):
            await service.dispatch("workflow:x:1", MESSAGE, T0)

    @pytest.mark.asyncio
    async def test_invalid_target_rejected(self, database, test_settings, ok_channel):
        service = NotificationService(channels=[ok_channel], settings=test_settings)
        with pytest.raises(InvalidRequestError):
            await service.dispatch("", MESSAGE, T0)
        assert ok_channel.calls == 0

    @pytest.mark.asyncio
    async def test_longest_workflow_target_is_accepted(self, database, test_settings, ok_channel):
        target = workflow_target("w" * 100, "r" * 100)
        service = NotificationService(channels=[ok_channel], settings=test_settings)

        result = await service.dispatch(target, MESSAGE, T0)
        assert result.delivered is True

        history = await service.get_history(target)
        assert [h.status for h in history] == [DeliveryStatus.SENT]


class TestChannelConfiguration:
    """Channels are enabled by configuration presence."""

    def test_nothing_configured(self, test_settings):
        assert build_configured_channels(test_settings) == []

    def test_web_push_requires_subscription(self, make_settings):
        settings = make_settings(
            web_push_vapid_subject="mailto:ops@example.com",
            web_push_vapid_public_key="pub",
            web_push_vapid_private_key="priv",
        )
        assert WebPushChannel(settings).configured is False

        settings = make_settings(
            web_push_vapid_subject="mailto:ops@example.com",
            web_push_vapid_public_key="pub",
            web_push_vapid_private_key="priv",
            web_push_subscriptions=[{"endpoint": "https://push.example.com/abc", "keys": {}}],
        )
        assert [c.name for c in build_configured_channels(settings)] == ["web_push"]

    def test_email_and_discord(self, make_settings):
        settings = make_settings(
            brevo_api_key="key",
            brevo_sender_email="bot@example.com",
            brevo_recipient_email="me@example.com",
            discord_bot_token="token",
            discord_channel_id="123",
        )
        assert [c.name for c in build_configured_channels(settings)] == ["brevo_email", "discord"]

    def test_partial_configuration_leaves_channel_disabled(self, make_settings):
        settings = make_settings(
            brevo_api_key="key",
            brevo_sender_email="bot@example.com",
            discord_bot_token="token",
        )
        assert BrevoEmailChannel(settings).configured is False
        assert DiscordChannel(settings).configured is False
        assert build_configured_channels(settings) == []


class TestHttpChannels:
    """Brevo and Discord adapters against a mock transport."""

    @pytest.mark.asyncio
    async def test_brevo_payload(self, make_settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["json"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "abc"})

        settings = make_settings(
            brevo_api_key="key",
            brevo_sender_email="bot@example.com",
            brevo_recipient_email="me@example.com",
        )
        channel = BrevoEmailChannel(settings, transport=httpx.MockTransport(handler))
        await channel.send(NotificationMessage(title="Hi", body="a < b"))

        assert captured["url"] == "https://api.brevo.com/v3/smtp/email"
        assert captured["headers"]["api-key"] == "key"
        assert captured["json"]["subject"] == "Hi"
        assert captured["json"]["to"] == [{"email": "me@example.com", "name": "Operator"}]
        assert captured["json"]["htmlContent"] == "<pre>a &lt; b</pre>"

    @pytest.mark.asyncio
    async def test_brevo_error_raises(self, make_settings):
        settings = make_settings(
            brevo_api_key="key",
            brevo_sender_email="bot@example.com",
            brevo_recipient_email="me@example.com",
        )
        transport = httpx.MockTransport(lambda request: httpx.Response(401, text="unauthorized"))
        channel = BrevoEmailChannel(settings, transport=transport)
        with pytest.raises(ChannelDeliveryError):
            await channel.send(MESSAGE)

    @pytest.mark.asyncio
    async def test_discord_embed(self, make_settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"id": "1"})

        settings = make_settings(discord_bot_token="token", discord_channel_id="123")
        channel = DiscordChannel(settings, transport=httpx.MockTransport(handler))
        await channel.send(MESSAGE)

        assert captured["url"] == "https://discord.com/api/v10/channels/123/messages"
        assert captured["auth"] == "Bot token"
