"""Payment intent model."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Boolean, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from x402_settlement_service.db.session import Base
from x402_settlement_service.db.types import JSONType, UTCDateTime, utc_now


class PayerChain(str, enum.Enum):
    """Chain the payer settles from."""

    BASE = "base"
    SOLANA = "solana"


class PaymentIntentStatus(str, enum.Enum):
    """Payment intent status enumeration."""

    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    SOURCE_SETTLED = "source_settled"
    BASE_SETTLING = "base_settling"
    BASE_SETTLED = "base_settled"
    VERIFICATION_FAILED = "verification_failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {
        PaymentIntentStatus.BASE_SETTLED,
        PaymentIntentStatus.VERIFICATION_FAILED,
        PaymentIntentStatus.EXPIRED,
    }
)

# Statuses the expiry sweep may act on
EXPIRABLE_STATUSES = frozenset(
    {
        PaymentIntentStatus.AWAITING_PAYMENT,
        PaymentIntentStatus.PENDING,
    }
)

ALLOWED_TRANSITIONS: dict[PaymentIntentStatus, frozenset[PaymentIntentStatus]] = {
    PaymentIntentStatus.AWAITING_PAYMENT: frozenset(
        {
            PaymentIntentStatus.PENDING,
            PaymentIntentStatus.VERIFICATION_FAILED,
            PaymentIntentStatus.EXPIRED,
        }
    ),
    PaymentIntentStatus.PENDING: frozenset(
        {
            PaymentIntentStatus.SOURCE_SETTLED,
            PaymentIntentStatus.VERIFICATION_FAILED,
            PaymentIntentStatus.EXPIRED,
        }
    ),
    PaymentIntentStatus.SOURCE_SETTLED: frozenset({PaymentIntentStatus.BASE_SETTLING}),
    PaymentIntentStatus.BASE_SETTLING: frozenset({PaymentIntentStatus.BASE_SETTLED}),
    PaymentIntentStatus.BASE_SETTLED: frozenset(),
    PaymentIntentStatus.VERIFICATION_FAILED: frozenset(),
    PaymentIntentStatus.EXPIRED: frozenset(),
}


def can_transition(current: PaymentIntentStatus, new: PaymentIntentStatus) -> bool:
    """Check whether ``new`` is reachable from ``current`` in one step."""
    return new in ALLOWED_TRANSITIONS[current]


def minor_to_decimal(amount_minor: int, decimals: int) -> Decimal:
    """Convert integer minor units to a decimal amount."""
    return Decimal(amount_minor).scaleb(-decimals)


class PaymentIntent(Base):
    """Payment intent: a recorded request to move value from payer to merchant.

    The payer settles ``sending_amount`` on its own chain; the merchant is paid
    ``receiving_amount`` on Base. Terms are frozen into ``payment_requirements``
    at creation and the row is never deleted, only driven to a terminal status.
    """

    __tablename__ = "payment_intents"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    merchant_recipient: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )
    recipient_input: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
    )
    sending_amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    fee_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    receiving_amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    asset_decimals: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    payer_chain: Mapped[PayerChain] = mapped_column(
        Enum(PayerChain, name="payer_chain", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    status: Mapped[PaymentIntentStatus] = mapped_column(
        Enum(
            PaymentIntentStatus,
            name="payment_intent_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=PaymentIntentStatus.AWAITING_PAYMENT,
        index=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    in_flight: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    payment_requirements: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
    )
    payer_address: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )
    proof_nonce: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )
    source_settlement: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )
    base_settlement: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )
    failure_code: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    failure_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    needs_attention: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        index=True,
    )
    attention_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    payout_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
    )

    def __repr__(self) -> str:
        return f"<PaymentIntent(id={self.id}, amount={self.sending_amount}, status={self.status})>"

    @property
    def sending_amount(self) -> Decimal:
        return minor_to_decimal(self.sending_amount_minor, self.asset_decimals)

    @property
    def estimated_fee(self) -> Decimal:
        return minor_to_decimal(self.fee_minor, self.asset_decimals)

    @property
    def receiving_amount(self) -> Decimal:
        return minor_to_decimal(self.receiving_amount_minor, self.asset_decimals)

    @property
    def merchant_address(self) -> str:
        """Bare address part of the CAIP-10 merchant recipient."""
        return self.merchant_recipient.rsplit(":", 1)[-1]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        """Check if the intent's payment window has passed."""
        return now > self.expires_at
