"""Decrypted venue credentials handed to the exchange client factory"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


class ExchangeCredential(BaseModel):
    """
    Credentials for one (account, exchange, environment).

    `secrets` keys depend on the venue:
        aster:            api_key, api_secret
        aster_v3:         user_address, signer_address, private_key
        tradestation:     client_id, client_secret, refresh_token, account_id?
        tradier(_options): account_id, access_token
        oanda:            account_id, access_token
        ccxt:<id>:        api_key, api_secret, password?
    """
    model_config = ConfigDict(frozen=True)

    account_id: str
    exchange: str
    environment: str = "production"
    secrets: Dict[str, str] = {}

    def get(self, field: str, default: Optional[str] = None) -> Optional[str]:
        return self.secrets.get(field) or default

    def require(self, *fields: str) -> None:
        """Raise ValueError naming every missing secret field."""
        missing = [field for field in fields if not self.secrets.get(field)]
        if missing:
            raise ValueError(
                f"{self.exchange} credentials for account {self.account_id} "
                f"missing: {', '.join(missing)}"
            )

    def __repr__(self) -> str:
        # Never print secret values
        return (
            f"ExchangeCredential(account_id={self.account_id!r}, exchange={self.exchange!r}, "
            f"environment={self.environment!r}, fields={sorted(self.secrets)})"
        )

    __str__ = __repr__
