"""
Webhook API routes

- POST /api/webhook: authenticate an alert, validate it into a TradeIntent
  and execute it to completion
- GET /api/health: liveness plus tracked-position count
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from signal_bridge.config import settings
from signal_bridge.exceptions import AuthError
from signal_bridge.schemas import TradeResult, WebhookAlert, build_trade_intent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhook"])


# Dependency - overridden in main.py with the process-wide executor
def get_trade_executor():
    """Get the trade executor - will be overridden in main.py"""
    raise NotImplementedError("Must override trade executor dependency")


def verify_secret(provided: Optional[str]):
    """Constant-time comparison against the configured webhook secret."""
    expected = settings.webhook_secret
    if not expected:
        logger.error("Webhook secret is not configured, rejecting alert")
        raise AuthError("Webhook secret not configured")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthError("Invalid webhook secret")


@router.post("/webhook", response_model=TradeResult)
async def execute_trade_intent(
    alert: WebhookAlert,
    x_webhook_secret: Optional[str] = Header(None),
    executor=Depends(get_trade_executor),
):
    """Execute one trade alert. Errors are rendered by the AppError handler."""
    verify_secret(alert.secret or x_webhook_secret)
    intent = build_trade_intent(alert)
    result = await executor.execute(intent)
    logger.info(f"Webhook {intent.action.value} {intent.symbol} on {intent.exchange}: {result.action}")
    return result


@router.get("/health")
async def health(executor=Depends(get_trade_executor)):
    return {
        "status": "ok",
        "tracked_positions": len(executor.store.list_all()),
    }
