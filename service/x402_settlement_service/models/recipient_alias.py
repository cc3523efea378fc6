"""Recipient alias model mapping email handles to Base payout addresses."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from x402_settlement_service.db.session import Base
from x402_settlement_service.db.types import UTCDateTime, utc_now


class RecipientAlias(Base):
    """Directory entry populated by the identity system; read-only here."""

    __tablename__ = "recipient_aliases"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        unique=True,
    )
    address: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
    )

    def __repr__(self) -> str:
        return f"<RecipientAlias(email={self.email}, address={self.address})>"
