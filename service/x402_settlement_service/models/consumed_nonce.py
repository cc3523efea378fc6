"""Consumed authorization nonce model (replay guard)."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from x402_settlement_service.db.session import Base
from x402_settlement_service.db.types import UTCDateTime, utc_now


class ConsumedNonce(Base):
    """A nonce that has been spent by a verified authorization.

    Scoped to (asset, network): the same nonce value on a different asset or
    chain is an unrelated authorization.
    """

    __tablename__ = "consumed_nonces"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    asset: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    network: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    nonce: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    intent_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        index=True,
    )
    consumed_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
    )

    __table_args__ = (
        UniqueConstraint("asset", "network", "nonce", name="uq_consumed_nonce"),
    )

    def __repr__(self) -> str:
        return f"<ConsumedNonce(network={self.network}, asset={self.asset}, nonce={self.nonce})>"
