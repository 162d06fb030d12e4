"""
Exchange Service

Provides venue adapters for (account, exchange, environment) triples built
from the credentials stored in the database. Adapters are cached in memory
so the httpx connection pool, OAuth tokens and nonces survive across alerts.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from signal_bridge.database import async_session_maker
from signal_bridge.exchange_clients.base import ExchangeClient
from signal_bridge.exchange_clients.factory import create_exchange_client
from signal_bridge.services.credential_service import credential_service

logger = logging.getLogger(__name__)

ClientKey = Tuple[str, str, Optional[str]]

# Cache for exchange clients (key: (account_id, exchange, environment))
_exchange_client_cache: Dict[ClientKey, ExchangeClient] = {}
_cache_lock = asyncio.Lock()


def _refresh_token_writer(account_id: str, exchange: str, environment: str):
    """Persist a rotated refresh token through its own short-lived session."""

    async def _write(new_token: str):
        async with async_session_maker() as db:
            await credential_service.update_secret(
                db, account_id, exchange, environment, "refresh_token", new_token
            )

    return _write


async def get_exchange_client(
    db: AsyncSession,
    account_id: str,
    exchange: str,
    environment: Optional[str] = None,
    use_cache: bool = True,
) -> Optional[ExchangeClient]:
    """
    Get the adapter for one account on one venue.

    Args:
        db: Database session (used only on a cache miss)
        account_id: Signal account identifier
        exchange: Venue name, e.g. "aster" or "ccxt:binance"
        environment: production / sandbox / ...; None = first active credential
        use_cache: Whether to reuse a cached client (default True)

    Returns:
        ExchangeClient or None if no active credentials exist

    Raises:
        ValueError: Unknown venue or incomplete credentials
    """
    key = (account_id, exchange, environment)
    if use_cache and key in _exchange_client_cache:
        return _exchange_client_cache[key]

    async with _cache_lock:
        if use_cache and key in _exchange_client_cache:
            return _exchange_client_cache[key]

        credential = await credential_service.load(db, account_id, exchange, environment)
        if credential is None:
            return None

        client = create_exchange_client(
            exchange,
            credential,
            environment=credential.environment,
            on_refresh_token_rotated=_refresh_token_writer(
                account_id, exchange, credential.environment
            ),
        )
        logger.info(f"Created {exchange} client for account {account_id} ({credential.environment})")

        if use_cache:
            _exchange_client_cache[key] = client
        return client


def cache_exchange_client(
    account_id: str, exchange: str, client: ExchangeClient, environment: Optional[str] = None
):
    """Register a pre-built client (used by tests and scripted setups)."""
    _exchange_client_cache[(account_id, exchange, environment)] = client


def cached_client_keys():
    return list(_exchange_client_cache.keys())


async def clear_exchange_client_cache(account_id: Optional[str] = None, exchange: Optional[str] = None):
    """Drop cached clients (call when credentials change) and close their connections."""
    keys = [
        key for key in _exchange_client_cache
        if (account_id is None or key[0] == account_id)
        and (exchange is None or key[1] == exchange)
    ]
    for key in keys:
        client = _exchange_client_cache.pop(key)
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing {key[1]} client for account {key[0]}: {e}")


async def close_all_exchange_clients():
    """Close every cached adapter (application shutdown)."""
    await clear_exchange_client_cache()
