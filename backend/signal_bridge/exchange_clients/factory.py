"""
Exchange Client Factory

Central registry mapping a venue name to the adapter that speaks to it.
The TradeExecutor and the monitors never import a concrete adapter; they ask
ExchangeService, which asks this factory.

Adding a venue = write an ExchangeClient subclass + one builder below.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from signal_bridge.exchange_clients.aster_client import AsterClient
from signal_bridge.exchange_clients.aster_v3_client import AsterV3Client
from signal_bridge.exchange_clients.base import ExchangeClient
from signal_bridge.exchange_clients.ccxt_client import CcxtClient
from signal_bridge.exchange_clients.oanda_client import OandaClient
from signal_bridge.exchange_clients.tradestation_client import TradeStationClient
from signal_bridge.exchange_clients.tradier_client import TradierClient, TradierOptionsClient
from signal_bridge.schemas.credentials import ExchangeCredential

CCXT_PREFIX = "ccxt:"

RefreshTokenCallback = Callable[[str], Awaitable[None]]


def _build_aster(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("api_key", "api_secret")
    return AsterClient(
        api_key=credential.get("api_key"),
        api_secret=credential.get("api_secret"),
        **_transport_kwargs(kwargs),
    )


def _build_aster_v3(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("user_address", "signer_address", "private_key")
    return AsterV3Client(
        user_address=credential.get("user_address"),
        signer_address=credential.get("signer_address"),
        private_key=credential.get("private_key"),
        **_transport_kwargs(kwargs),
    )


def _build_tradestation(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("client_id", "client_secret", "refresh_token")
    return TradeStationClient(
        client_id=credential.get("client_id"),
        client_secret=credential.get("client_secret"),
        refresh_token=credential.get("refresh_token"),
        account_id=credential.get("account_id"),
        environment=environment,
        on_refresh_token_rotated=kwargs.get("on_refresh_token_rotated"),
        **_transport_kwargs(kwargs),
    )


def _build_tradier(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("account_id", "access_token")
    return TradierClient(
        account_id=credential.get("account_id"),
        access_token=credential.get("access_token"),
        environment=environment,
        **_transport_kwargs(kwargs),
    )


def _build_tradier_options(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("account_id", "access_token")
    return TradierOptionsClient(
        account_id=credential.get("account_id"),
        access_token=credential.get("access_token"),
        environment=environment,
        **_transport_kwargs(kwargs),
    )


def _build_oanda(credential: ExchangeCredential, environment: str, **kwargs) -> ExchangeClient:
    credential.require("account_id", "access_token")
    return OandaClient(
        account_id=credential.get("account_id"),
        access_token=credential.get("access_token"),
        environment=environment,
        **_transport_kwargs(kwargs),
    )


def _transport_kwargs(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Pass through only the RestExchangeClient tuning knobs (tests inject `transport`)."""
    allowed = ("timeout", "max_retries", "retry_delay", "max_concurrency", "transport")
    return {key: kwargs[key] for key in allowed if kwargs.get(key) is not None}


EXCHANGE_REGISTRY: Dict[str, Callable[..., ExchangeClient]] = {
    "aster": _build_aster,
    "aster_v3": _build_aster_v3,
    "tradestation": _build_tradestation,
    "tradier": _build_tradier,
    "tradier_options": _build_tradier_options,
    "oanda": _build_oanda,
}

SUPPORTED_EXCHANGES = sorted(EXCHANGE_REGISTRY) + [f"{CCXT_PREFIX}<exchange_id>"]


def is_supported_exchange(exchange: str) -> bool:
    exchange = (exchange or "").lower()
    return exchange in EXCHANGE_REGISTRY or (
        exchange.startswith(CCXT_PREFIX) and len(exchange) > len(CCXT_PREFIX)
    )


def create_exchange_client(
    exchange: str,
    credential: ExchangeCredential,
    environment: Optional[str] = None,
    on_refresh_token_rotated: Optional[RefreshTokenCallback] = None,
    **kwargs,
) -> ExchangeClient:
    """
    Factory function to create the adapter for a venue.

    Args:
        exchange: Venue name ("aster", "aster_v3", "tradestation", "tradier",
            "tradier_options", "oanda") or "ccxt:<exchange_id>"
        credential: Decrypted credentials for the account on this venue
        environment: production / sandbox / sim / practice (defaults to the
            credential's environment)
        on_refresh_token_rotated: Async callback receiving a new refresh token
            (TradeStation only)

    Returns:
        ExchangeClient instance

    Raises:
        ValueError: Unknown venue or required credential fields missing

    Examples:
        client = create_exchange_client(
            "aster",
            ExchangeCredential(account_id="acct-1", exchange="aster",
                               secrets={"api_key": "...", "api_secret": "..."}),
        )
        client = create_exchange_client("ccxt:binance", credential)
    """
    exchange = (exchange or "").lower()
    environment = environment or credential.environment

    if exchange.startswith(CCXT_PREFIX):
        exchange_id = exchange[len(CCXT_PREFIX):]
        if not exchange_id:
            raise ValueError("ccxt venue requires an exchange id, e.g. 'ccxt:binance'")
        credential.require("api_key", "api_secret")
        return CcxtClient(
            exchange_id=exchange_id,
            api_key=credential.get("api_key"),
            api_secret=credential.get("api_secret"),
            password=credential.get("password"),
            environment=environment,
        )

    builder = EXCHANGE_REGISTRY.get(exchange)
    if builder is None:
        raise ValueError(
            f"Unknown exchange: {exchange}. Must be one of: {', '.join(SUPPORTED_EXCHANGES)}"
        )
    return builder(
        credential,
        environment,
        on_refresh_token_rotated=on_refresh_token_rotated,
        **kwargs,
    )
