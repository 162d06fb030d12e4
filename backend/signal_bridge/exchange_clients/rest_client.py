"""
REST transport shared by the HTTP venue adapters

- Uses one httpx.AsyncClient per adapter instance with a per-call timeout
- Bounded concurrency per adapter (asyncio.Semaphore), released before any
  backoff sleep
- Retries 5xx / 429 / network errors with exponential backoff, never 4xx
- Translates venue error payloads into signal_bridge.exceptions kinds:
    401/403 -> AuthError, other 4xx -> VenueRejected,
    5xx/429/timeout -> VenueTransient (-> ExecutionFailed after retries)

Subclasses implement `_build_request()` to attach their authentication
(HMAC query signature, bearer token, EIP-712 typed-data signature). It is
called again on every attempt so timestamps and nonces stay fresh.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from signal_bridge.config import settings
from signal_bridge.exceptions import AuthError, VenueRejected, VenueTransient
from signal_bridge.exchange_clients.base import ExchangeClient
from signal_bridge.exchange_clients.retry import call_with_retry

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429}


class RestExchangeClient(ExchangeClient):
    """Base class for adapters that speak signed REST over HTTPS."""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else settings.venue_request_timeout_seconds
        self._max_retries = max_retries if max_retries is not None else settings.venue_max_retries
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.venue_retry_delay_seconds
        )
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.venue_max_concurrency)
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=transport)

    async def close(self):
        """Close the underlying httpx client to release connections."""
        if self._client:
            await self._client.aclose()

    # ==========================================================
    # REQUEST PIPELINE
    # ==========================================================

    async def _build_request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        """Return keyword arguments for httpx.AsyncClient.request()."""
        kwargs: Dict[str, Any] = {"method": method, "url": f"{self._base_url}{path}"}
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
        return kwargs

    async def _on_auth_error(self) -> bool:
        """Hook for token-based adapters: refresh and return True to retry once."""
        return False

    def _extract_error(self, payload: Any, response: httpx.Response) -> Tuple[Any, str]:
        """Pull (venue_code, message) out of an error body."""
        if isinstance(payload, dict):
            code = payload.get("code") or payload.get("errorCode")
            message = (
                payload.get("msg")
                or payload.get("message")
                or payload.get("errorMessage")
                or payload.get("error")
            )
            return code, str(message or response.reason_phrase)
        return None, (response.text or response.reason_phrase)[:200]

    def _translate_error(self, response: httpx.Response) -> Exception:
        """Map an HTTP error response to one of the fixed error kinds."""
        try:
            payload = response.json()
        except ValueError:
            payload = response.text[:200] if response.text else None
        code, message = self._extract_error(payload, response)
        status = response.status_code
        text = f"{self.exchange_name} HTTP {status}: {message}"

        if status in (401, 403):
            return AuthError(text, venue_code=code)
        if status >= 500 or status in _TRANSIENT_STATUS:
            return VenueTransient(text, venue_code=code, venue_payload=payload)
        return VenueRejected(text, venue_code=code, venue_payload=payload)

    def _parse_response(self, response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"text": response.text}

    async def _send_once(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]],
        body: Any,
        signed: bool,
    ) -> Any:
        request_kwargs = await self._build_request(method, path, params=params, body=body, signed=signed)
        try:
            async with self._semaphore:
                response = await self._client.request(**request_kwargs)
        except httpx.TimeoutException:
            logger.warning(f"{self.exchange_name} timeout: {method} {path}")
            raise VenueTransient(f"{self.exchange_name} timeout: {method} {path}")
        except httpx.TransportError as e:
            logger.warning(f"{self.exchange_name} connection failed: {method} {path}: {e}")
            raise VenueTransient(f"{self.exchange_name} unavailable: {e}")

        if response.status_code >= 400:
            error = self._translate_error(response)
            logger.error(f"{self.exchange_name} {method} {path} failed: {error}")
            raise error
        return self._parse_response(response)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        signed: bool = True,
    ) -> Any:
        """Make a request with retry, error translation and one auth refresh.

        Raises:
            AuthError: Credentials rejected (after one refresh, if supported)
            VenueRejected: 4xx business-rule rejection (never retried)
            ExecutionFailed: 5xx / 429 / network errors outlived the retry budget
        """
        auth_retry_used = False

        async def attempt():
            nonlocal auth_retry_used
            try:
                return await self._send_once(method, path, params, body, signed)
            except AuthError:
                if auth_retry_used or not await self._on_auth_error():
                    raise
                auth_retry_used = True
                logger.info(f"{self.exchange_name} credentials refreshed, retrying {method} {path}")
                return await self._send_once(method, path, params, body, signed)

        return await call_with_retry(
            attempt,
            max_retries=self._max_retries,
            base_delay=self._retry_delay,
            description=f"{self.exchange_name} {method} {path}",
        )
