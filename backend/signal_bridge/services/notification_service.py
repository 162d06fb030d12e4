"""
Notification Dispatcher

Fire-and-forget delivery of trade events. Callers enqueue with notify(),
which never awaits delivery and never raises; a background worker drains
the queue, checks the account's preferences and hands each event to the
sender.

Events:
    trade_success, trade_failed, position_closed_profit,
    position_closed_loss, trade_limit_reached
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy import select

from signal_bridge.cache import SimpleCache
from signal_bridge.config import settings
from signal_bridge.database import async_session_maker
from signal_bridge.models import NotificationPreference

logger = logging.getLogger(__name__)

EVENT_TRADE_SUCCESS = "trade_success"
EVENT_TRADE_FAILED = "trade_failed"
EVENT_POSITION_CLOSED_PROFIT = "position_closed_profit"
EVENT_POSITION_CLOSED_LOSS = "position_closed_loss"
EVENT_TRADE_LIMIT_REACHED = "trade_limit_reached"

NOTIFICATION_EVENTS = (
    EVENT_TRADE_SUCCESS,
    EVENT_TRADE_FAILED,
    EVENT_POSITION_CLOSED_PROFIT,
    EVENT_POSITION_CLOSED_LOSS,
    EVENT_TRADE_LIMIT_REACHED,
)


@dataclass
class Notification:
    account_id: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "event": self.event,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class WebhookSender:
    """Posts notifications as JSON to an outbound URL; logs only when unset."""

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0, transport=None):
        self.url = url if url is not None else settings.notification_webhook_url
        self.timeout = timeout
        self._transport = transport

    async def __call__(self, notification: Notification):
        if not self.url:
            logger.info(f"Notification [{notification.event}] for {notification.account_id}: {notification.payload}")
            return
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=notification.to_dict())
            response.raise_for_status()


Sender = Callable[[Notification], Awaitable[None]]


class NotificationDispatcher:
    """Bounded queue plus one background delivery worker."""

    def __init__(
        self,
        sender: Optional[Sender] = None,
        session_maker=None,
        cache: Optional[SimpleCache] = None,
        ttl_seconds: Optional[int] = None,
        queue_size: Optional[int] = None,
    ):
        self._sender = sender or WebhookSender()
        self._session_maker = session_maker or async_session_maker
        self._cache = cache or SimpleCache()
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.notification_preference_ttl_seconds
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.notification_queue_size
        )
        self.running = False
        self.task: Optional[asyncio.Task] = None

    def notify(self, account_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Enqueue an event. Returns False when it had to be dropped."""
        if event not in NOTIFICATION_EVENTS:
            logger.warning(f"Unknown notification event '{event}' dropped")
            return False
        try:
            self._queue.put_nowait(Notification(account_id, event, payload or {}))
        except asyncio.QueueFull:
            logger.warning(f"Notification queue full, dropping {event} for {account_id}")
            return False
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def should_notify(self, account_id: str, event: str) -> bool:
        """Preference gate. No row (or a lookup failure) means notify."""

        async def fetch() -> bool:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(NotificationPreference.enabled).where(
                        NotificationPreference.account_id == account_id,
                        NotificationPreference.event == event,
                    )
                )
                enabled = result.scalar()
                return True if enabled is None else bool(enabled)

        try:
            return await self._cache.get_or_fetch(f"notify_pref:{account_id}:{event}", fetch, self._ttl)
        except Exception as e:
            logger.warning(f"Preference lookup failed for {account_id}/{event}, notifying anyway: {e}")
            return True

    async def start(self):
        """Start the delivery worker"""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._worker_loop())
        logger.info("Notification dispatcher started")

    async def stop(self):
        """Deliver everything already queued, then stop the worker"""
        if not self.running:
            return
        self.running = False
        await self._queue.put(None)
        if self.task:
            await self.task
            logger.info("Notification dispatcher stopped")

    async def _worker_loop(self):
        while True:
            notification = await self._queue.get()
            try:
                if notification is None:
                    break
                await self._deliver(notification)
            except Exception as e:
                logger.error(f"Notification delivery failed ({notification.event}): {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _deliver(self, notification: Notification):
        if not await self.should_notify(notification.account_id, notification.event):
            logger.debug(f"{notification.account_id} opted out of {notification.event}")
            return
        await self._sender(notification)


# Global singleton instance
notification_dispatcher = NotificationDispatcher()
