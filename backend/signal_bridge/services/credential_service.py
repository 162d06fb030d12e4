"""
Credential Service

Loads encrypted venue credentials from exchange_credentials and returns a
decrypted ExchangeCredential. Plaintext secrets only live in memory while an
adapter is being built; the only write-back is a rotated OAuth refresh token.
"""

import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signal_bridge.encryption import decrypt_value, encrypt_value, is_encrypted
from signal_bridge.models import ExchangeCredentialRecord
from signal_bridge.schemas.credentials import ExchangeCredential

logger = logging.getLogger(__name__)


class CredentialService:
    """Read (and narrowly update) stored exchange credentials."""

    async def _get_record(
        self, db: AsyncSession, account_id: str, exchange: str, environment: Optional[str]
    ) -> Optional[ExchangeCredentialRecord]:
        query = select(ExchangeCredentialRecord).where(
            ExchangeCredentialRecord.account_id == account_id,
            ExchangeCredentialRecord.exchange == exchange,
            ExchangeCredentialRecord.is_active.is_(True),
        )
        if environment:
            query = query.where(ExchangeCredentialRecord.environment == environment)
        result = await db.execute(query.order_by(ExchangeCredentialRecord.id))
        return result.scalars().first()

    async def load(
        self,
        db: AsyncSession,
        account_id: str,
        exchange: str,
        environment: Optional[str] = None,
    ) -> Optional[ExchangeCredential]:
        """
        Load and decrypt credentials for (account, exchange, environment).

        When environment is None the first active record for the pair is used.

        Returns:
            ExchangeCredential, or None when no active record exists
        """
        record = await self._get_record(db, account_id, exchange, environment)
        if record is None:
            logger.warning(f"No active {exchange} credentials for account {account_id}")
            return None

        secrets: Dict[str, str] = {}
        for field, value in (record.secrets or {}).items():
            if value and is_encrypted(value):
                value = decrypt_value(value)
            secrets[field] = value

        return ExchangeCredential(
            account_id=account_id,
            exchange=exchange,
            environment=record.environment,
            secrets=secrets,
        )

    async def save(
        self,
        db: AsyncSession,
        account_id: str,
        exchange: str,
        environment: str,
        secrets: Dict[str, str],
    ) -> ExchangeCredentialRecord:
        """Encrypt and upsert credentials for (account, exchange, environment)."""
        encrypted = {field: encrypt_value(value) for field, value in secrets.items() if value}
        record = await self._get_record(db, account_id, exchange, environment)
        if record is None:
            record = ExchangeCredentialRecord(
                account_id=account_id, exchange=exchange, environment=environment
            )
            db.add(record)
        record.secrets = encrypted
        record.is_active = True
        await db.commit()
        logger.info(f"Saved {exchange} credentials for account {account_id} ({environment})")
        return record

    async def update_secret(
        self,
        db: AsyncSession,
        account_id: str,
        exchange: str,
        environment: str,
        field: str,
        value: str,
    ) -> bool:
        """Re-encrypt a single secret (e.g. a rotated refresh token)."""
        record = await self._get_record(db, account_id, exchange, environment)
        if record is None:
            return False
        secrets = dict(record.secrets or {})
        secrets[field] = encrypt_value(value)
        # Reassign so SQLAlchemy notices the JSON change
        record.secrets = secrets
        await db.commit()
        logger.info(f"Updated {exchange} credential field '{field}' for account {account_id}")
        return True


credential_service = CredentialService()
