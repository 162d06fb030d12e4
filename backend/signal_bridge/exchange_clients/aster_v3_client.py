"""
Aster V3 Client (EIP-712 typed-data signing)

Same trading surface as AsterClient but authenticated with an API wallet
instead of an HMAC secret:

- Every parameter is stringified, then `nonce`, `user` and `signer` are
  added and the keys sorted (ASCII) into `k=v&k=v`
- That string is signed as EIP-712 typed data
  (domain AsterSignTransaction / v1 / chainId 714, type Message{msg:string})
  with eth_account, and appended as `&signature=0x...`
- Nonce is a microsecond timestamp plus jitter, strictly increasing per
  instance so two requests in the same microsecond never collide
- All endpoints live under /fapi/v3, 15s timeout
"""

import logging
import random
import time
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from signal_bridge.exchange_clients.aster_client import ASTER_BASE_URL, AsterClient, _format_param

logger = logging.getLogger(__name__)

ASTER_V3_TIMEOUT = 15.0

EIP712_DOMAIN = {
    "name": "AsterSignTransaction",
    "version": "1",
    "chainId": 714,
    "verifyingContract": "0x0000000000000000000000000000000000000000",
}

EIP712_TYPES = {
    "Message": [
        {"name": "msg", "type": "string"},
    ],
}


class AsterV3Client(AsterClient):
    """Aster perpetuals adapter signing requests with an EIP-712 API wallet."""

    exchange_name = "aster_v3"
    _ACCOUNT_PREFIX = "/fapi/v3"
    _TRADE_PREFIX = "/fapi/v3"

    def __init__(
        self,
        user_address: str,
        signer_address: str,
        private_key: str,
        base_url: str = ASTER_BASE_URL,
        **kwargs,
    ):
        kwargs.setdefault("timeout", ASTER_V3_TIMEOUT)
        super().__init__(api_key="", api_secret="", base_url=base_url, **kwargs)
        if not private_key.startswith("0x"):
            private_key = f"0x{private_key}"
        self._account = Account.from_key(private_key)
        self._user_address = user_address
        self._signer_address = signer_address
        self._last_nonce = 0

        if self._account.address.lower() != (signer_address or "").lower():
            logger.warning(
                f"Aster V3 signer address mismatch (configured {signer_address}, "
                f"wallet {self._account.address}); using wallet-derived address"
            )
            self._signer_address = self._account.address

        logger.info(
            f"AsterV3Client initialized (user={user_address}, signer={self._signer_address})"
        )

    @property
    def signer_address(self) -> str:
        return self._signer_address

    # ==========================================================
    # EIP-712 SIGNING
    # ==========================================================

    def generate_nonce(self) -> int:
        """Microsecond-resolution nonce with jitter, strictly increasing."""
        nonce = int(time.time() * 1000) * 1000 + random.randint(0, 999)
        if nonce <= self._last_nonce:
            nonce = self._last_nonce + 1
        self._last_nonce = nonce
        return nonce

    def sign_message(self, param_string: str) -> str:
        """Sign the canonical parameter string; returns a 0x-prefixed hex signature."""
        signable = encode_typed_data(
            domain_data=EIP712_DOMAIN,
            message_types=EIP712_TYPES,
            message_data={"msg": param_string},
        )
        signed = self._account.sign_message(signable)
        return "0x" + bytes(signed.signature).hex()

    def build_param_string(self, params: Dict[str, Any], nonce: Optional[int] = None) -> str:
        """Stringify, add auth fields, and join sorted keys as k=v&k=v."""
        string_params = {k: _format_param(v) for k, v in params.items() if v is not None}
        string_params["nonce"] = str(nonce if nonce is not None else self.generate_nonce())
        string_params["user"] = self._user_address
        string_params["signer"] = self._signer_address
        return "&".join(f"{key}={string_params[key]}" for key in sorted(string_params))

    def sign_query(self, params: Dict[str, Any], timestamp_ms: Optional[int] = None) -> str:
        param_string = self.build_param_string(params)
        return f"{param_string}&signature={self.sign_message(param_string)}"

    async def _build_request(self, method, path, params=None, body=None, signed=True):
        params = params or {}
        if signed:
            query = self.sign_query(params)
        else:
            query = "&".join(f"{k}={_format_param(v)}" for k, v in params.items() if v is not None)
        url = f"{self._base_url}{path}"
        if query:
            url = f"{url}?{query}"
        return {
            "method": method,
            "url": url,
            "headers": {"Content-Type": "application/x-www-form-urlencoded"},
        }
