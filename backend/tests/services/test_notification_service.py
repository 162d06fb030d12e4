"""
Tests for backend/signal_bridge/services/notification_service.py

Tests enqueue semantics (never blocks, never raises), the preference gate
and the webhook sender.
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from signal_bridge.models import NotificationPreference
from signal_bridge.services.notification_service import (
    EVENT_TRADE_FAILED,
    EVENT_TRADE_SUCCESS,
    Notification,
    NotificationDispatcher,
    WebhookSender,
)


class TestNotify:
    """Tests for NotificationDispatcher.notify()"""

    def test_enqueue_returns_true(self, session_maker):
        """Happy path: known events are queued without a running worker."""
        dispatcher = NotificationDispatcher(sender=AsyncMock(), session_maker=session_maker)
        assert dispatcher.notify("acct-1", EVENT_TRADE_SUCCESS, {"symbol": "BTCUSDT"}) is True
        assert dispatcher.pending == 1

    def test_unknown_event_dropped(self, session_maker):
        """Edge case: unknown events are dropped, not raised."""
        dispatcher = NotificationDispatcher(sender=AsyncMock(), session_maker=session_maker)
        assert dispatcher.notify("acct-1", "margin_call") is False
        assert dispatcher.pending == 0

    def test_full_queue_drops(self, session_maker):
        """Edge case: a full queue drops instead of blocking."""
        dispatcher = NotificationDispatcher(sender=AsyncMock(), session_maker=session_maker, queue_size=1)
        assert dispatcher.notify("acct-1", EVENT_TRADE_SUCCESS) is True
        assert dispatcher.notify("acct-1", EVENT_TRADE_FAILED) is False


class TestDelivery:
    """Tests for the worker and preference gate"""

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, session_maker):
        """Happy path: everything queued before stop() is delivered."""
        sender = AsyncMock()
        dispatcher = NotificationDispatcher(sender=sender, session_maker=session_maker)
        await dispatcher.start()
        dispatcher.notify("acct-1", EVENT_TRADE_SUCCESS, {"symbol": "BTCUSDT"})
        dispatcher.notify("acct-1", EVENT_TRADE_FAILED, {"symbol": "ETHUSDT"})

        await dispatcher.stop()

        events = [call.args[0].event for call in sender.await_args_list]
        assert events == [EVENT_TRADE_SUCCESS, EVENT_TRADE_FAILED]
        assert dispatcher.running is False

    @pytest.mark.asyncio
    async def test_opt_out_respected(self, session_maker, db_session):
        """Happy path: a disabled preference suppresses delivery."""
        db_session.add(NotificationPreference(account_id="acct-1", event=EVENT_TRADE_SUCCESS, enabled=False))
        await db_session.commit()
        sender = AsyncMock()
        dispatcher = NotificationDispatcher(sender=sender, session_maker=session_maker)
        await dispatcher.start()
        dispatcher.notify("acct-1", EVENT_TRADE_SUCCESS)
        dispatcher.notify("acct-2", EVENT_TRADE_SUCCESS)
        await dispatcher.stop()

        assert [call.args[0].account_id for call in sender.await_args_list] == ["acct-2"]

    @pytest.mark.asyncio
    async def test_missing_preference_defaults_to_notify(self, session_maker):
        dispatcher = NotificationDispatcher(sender=AsyncMock(), session_maker=session_maker)
        assert await dispatcher.should_notify("acct-9", EVENT_TRADE_FAILED) is True

    @pytest.mark.asyncio
    async def test_sender_failure_does_not_stop_worker(self, session_maker):
        """Failure: one failed delivery does not lose the next one."""
        sender = AsyncMock(side_effect=[RuntimeError("smtp down"), None])
        dispatcher = NotificationDispatcher(sender=sender, session_maker=session_maker)
        await dispatcher.start()
        dispatcher.notify("acct-1", EVENT_TRADE_SUCCESS)
        dispatcher.notify("acct-1", EVENT_TRADE_FAILED)
        await dispatcher.stop()
        assert sender.await_count == 2


class TestWebhookSender:
    """Tests for WebhookSender"""

    @pytest.mark.asyncio
    async def test_posts_json(self):
        """Happy path: notification is posted as JSON."""
        seen = []

        def handler(request: httpx.Request):
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        sender = WebhookSender(url="https://hooks.example.com/n", transport=httpx.MockTransport(handler))
        await sender(Notification("acct-1", EVENT_TRADE_SUCCESS, {"symbol": "BTCUSDT"}))

        assert seen[0]["event"] == EVENT_TRADE_SUCCESS
        assert seen[0]["payload"] == {"symbol": "BTCUSDT"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        """Failure: non-2xx responses surface to the worker."""
        sender = WebhookSender(
            url="https://hooks.example.com/n",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await sender(Notification("acct-1", EVENT_TRADE_FAILED))

    @pytest.mark.asyncio
    async def test_no_url_only_logs(self):
        """Edge case: without a URL nothing is sent."""
        await WebhookSender(url="")(Notification("acct-1", EVENT_TRADE_FAILED))
