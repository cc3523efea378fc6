"""Persisted replay guard for authorization nonces."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from x402_settlement_service.core.errors import NonceReplayed
from x402_settlement_service.models import ConsumedNonce

logger = logging.getLogger(__name__)


class NonceRegistry:
    """Set of consumed ``(asset, network, nonce)`` tuples.

    The unique constraint on ``consumed_nonces`` is what makes consumption
    atomic across processes; the registry never deletes entries.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def is_consumed(self, asset: str, network: str, nonce: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConsumedNonce.id).where(
                    ConsumedNonce.asset == asset,
                    ConsumedNonce.network == network,
                    ConsumedNonce.nonce == nonce,
                )
            )
            return result.first() is not None

    async def consume(self, asset: str, network: str, nonce: str, intent_id: UUID) -> None:
        """Record a nonce as spent by ``intent_id``.

        Raises:
            NonceReplayed: If the tuple was already consumed
        """
        async with self.session_factory() as db:
            db.add(
                ConsumedNonce(
                    asset=asset,
                    network=network,
                    nonce=nonce,
                    intent_id=intent_id,
                )
            )
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(f"Replayed nonce on {network} for intent {intent_id}")
                raise NonceReplayed(details={"network": network, "asset": asset})
