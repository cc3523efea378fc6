"""Durable intent store and the guarded status transition."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, AsyncIterator, Callable, Optional
from uuid import UUID

import base58
from eth_utils import to_checksum_address
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from x402_settlement_service.core.config import Settings
from x402_settlement_service.core.errors import (
    IntentTerminal,
    InternalError,
    InvalidAmount,
    InvalidTransition,
    NotFound,
)
from x402_settlement_service.db.types import utc_now
from x402_settlement_service.models import PaymentIntent
from x402_settlement_service.models.payment_intent import (
    EXPIRABLE_STATUSES,
    TERMINAL_STATUSES,
    PayerChain,
    PaymentIntentStatus,
    can_transition,
)
from x402_settlement_service.schemas.payment_intent import CreatePaymentIntentRequest
from x402_settlement_service.schemas.proof import PaymentRequirements
from x402_settlement_service.services.recipient import resolve_recipient

logger = logging.getLogger(__name__)


def parse_amount(raw: str, settings: Settings) -> Decimal:
    """Parse and bound-check a decimal sending amount.

    Raises:
        InvalidAmount: If unparsable, out of range or too precise
    """
    try:
        amount = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        raise InvalidAmount(message="Amount must be a decimal string", details={"amount": raw})

    if not amount.is_finite():
        raise InvalidAmount(message="Amount must be finite", details={"amount": raw})

    minimum = Decimal(settings.MIN_AMOUNT)
    maximum = Decimal(settings.MAX_AMOUNT)
    if amount < minimum or amount > maximum:
        raise InvalidAmount(
            message=f"Amount must be between {settings.MIN_AMOUNT} and {settings.MAX_AMOUNT}",
            details={"amount": raw, "min": settings.MIN_AMOUNT, "max": settings.MAX_AMOUNT},
        )

    if -amount.as_tuple().exponent > settings.ASSET_DECIMALS:
        raise InvalidAmount(
            message=f"Amount supports at most {settings.ASSET_DECIMALS} decimal places",
            details={"amount": raw},
        )

    return amount


def to_minor_units(amount: Decimal, decimals: int) -> int:
    return int(amount.scaleb(decimals))


def compute_fee_minor(amount_minor: int, fee_bps: int) -> int:
    """Fee in minor units, rounded half-up."""
    fee = Decimal(amount_minor) * fee_bps / Decimal(10_000)
    return int(fee.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_solana_address(value: str) -> bool:
    try:
        return len(base58.b58decode(value)) == 32
    except ValueError:
        return False


def build_requirements(
    settings: Settings,
    payer_chain: PayerChain,
    amount_minor: int,
) -> PaymentRequirements:
    """Freeze the x402 ``exact`` terms the payer must sign for."""
    if payer_chain == PayerChain.BASE:
        return PaymentRequirements(
            scheme="exact",
            network=settings.BASE_NETWORK,
            amount=str(amount_minor),
            asset=to_checksum_address(settings.BASE_USDC_ADDRESS),
            pay_to=to_checksum_address(settings.BASE_SETTLEMENT_ADDRESS),
            max_timeout_seconds=settings.MAX_TIMEOUT_SECONDS,
            extra={"name": settings.BASE_USDC_NAME, "version": settings.BASE_USDC_VERSION},
        )

    if not is_solana_address(settings.SOLANA_SETTLEMENT_ADDRESS):
        raise InternalError(message="Solana settlement address is misconfigured")

    extra: dict[str, Any] = {"decimals": settings.ASSET_DECIMALS}
    if settings.SOLANA_FEE_PAYER:
        extra["feePayer"] = settings.SOLANA_FEE_PAYER

    return PaymentRequirements(
        scheme="exact",
        network=settings.SOLANA_NETWORK,
        amount=str(amount_minor),
        asset=settings.SOLANA_USDC_MINT,
        pay_to=settings.SOLANA_SETTLEMENT_ADDRESS,
        max_timeout_seconds=settings.MAX_TIMEOUT_SECONDS,
        extra=extra,
    )


class IntentStore:
    """Source of truth for payment intents.

    Every status change goes through ``transition``, which serialises writers
    on two levels: an in-process lock per intent, and a compare-and-swap on
    ``version`` so a writer in another process cannot be silently overwritten.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._lock_users: dict[UUID, int] = {}

    @asynccontextmanager
    async def locked(self, intent_id: UUID) -> AsyncIterator[None]:
        """Hold the in-process lock of one intent.

        The lock is dropped once no task holds or waits for it.
        """
        lock = self._locks.get(intent_id)
        if lock is None:
            lock = self._locks[intent_id] = asyncio.Lock()
        self._lock_users[intent_id] = self._lock_users.get(intent_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users.pop(intent_id) - 1
            if users:
                self._lock_users[intent_id] = users
            else:
                del self._locks[intent_id]

    async def create(self, request: CreatePaymentIntentRequest) -> PaymentIntent:
        """Create an intent in AWAITING_PAYMENT.

        Args:
            request: Recipient, amount and payer chain

        Returns:
            The persisted PaymentIntent

        Raises:
            InvalidAmount: If the amount is outside the allowed range
            InvalidRecipient: If the recipient does not resolve
        """
        amount = parse_amount(request.amount, self.settings)
        decimals = self.settings.ASSET_DECIMALS
        sending_minor = to_minor_units(amount, decimals)
        fee_minor = compute_fee_minor(sending_minor, self.settings.FEE_BPS)
        requirements = build_requirements(self.settings, request.payer_chain, sending_minor)
        now = self.clock()

        async with self.session_factory() as db:
            merchant = await resolve_recipient(db, request.recipient, self.settings.BASE_NETWORK)

            intent = PaymentIntent(
                merchant_recipient=merchant,
                recipient_input=request.recipient.strip(),
                sending_amount_minor=sending_minor,
                fee_minor=fee_minor,
                receiving_amount_minor=sending_minor - fee_minor,
                asset_decimals=decimals,
                payer_chain=request.payer_chain,
                status=PaymentIntentStatus.AWAITING_PAYMENT,
                version=1,
                in_flight=False,
                payment_requirements=requirements.to_wire(),
                expires_at=now + timedelta(seconds=self.settings.INTENT_TTL_SECONDS),
                created_at=now,
                updated_at=now,
            )
            db.add(intent)
            await db.commit()

        logger.info(
            f"Created intent {intent.id} for {intent.sending_amount} on {request.payer_chain.value}"
        )
        return intent

    async def get(self, intent_id: UUID) -> PaymentIntent:
        async with self.session_factory() as db:
            return await self._load(db, intent_id)

    async def transition(
        self,
        intent_id: UUID,
        new_status: PaymentIntentStatus,
        expected_status: Optional[PaymentIntentStatus] = None,
        release_in_flight: bool = False,
        **fields: Any,
    ) -> PaymentIntent:
        """Move an intent to ``new_status``, writing ``fields`` atomically.

        Args:
            intent_id: Intent to move
            new_status: Target status
            expected_status: If given, the move only happens from this status
            release_in_flight: Allow expiring an intent whose settlement is in flight
            **fields: Extra column values written with the status change

        Returns:
            The updated PaymentIntent

        Raises:
            NotFound: If the intent does not exist
            IntentTerminal: If the intent is already terminal
            InvalidTransition: If the edge is not allowed or a concurrent writer won
        """

        def guard(intent: PaymentIntent) -> None:
            if intent.status in TERMINAL_STATUSES:
                raise IntentTerminal(
                    message=f"Payment intent is {intent.status.value}",
                    details={"status": intent.status.value},
                )
            if expected_status is not None and intent.status != expected_status:
                raise InvalidTransition(
                    message=f"Expected {expected_status.value}, found {intent.status.value}",
                    details={"status": intent.status.value},
                )
            if not can_transition(intent.status, new_status):
                raise InvalidTransition(
                    message=f"Cannot move from {intent.status.value} to {new_status.value}",
                    details={"status": intent.status.value, "requested": new_status.value},
                )
            if new_status == PaymentIntentStatus.EXPIRED and intent.in_flight and not release_in_flight:
                raise InvalidTransition(
                    message="Settlement is in flight",
                    details={"status": intent.status.value},
                )

        return await self._write(intent_id, guard, status=new_status, **fields)

    async def annotate(
        self,
        intent_id: UUID,
        expected_status: PaymentIntentStatus,
        **fields: Any,
    ) -> PaymentIntent:
        """Write ``fields`` without changing status, under the same guard."""

        def guard(intent: PaymentIntent) -> None:
            if intent.status != expected_status:
                raise InvalidTransition(
                    message=f"Expected {expected_status.value}, found {intent.status.value}",
                    details={"status": intent.status.value},
                )

        return await self._write(intent_id, guard, **fields)

    async def list_expirable(self, now: datetime, limit: int = 100) -> list[PaymentIntent]:
        """Intents whose payment window closed before ``now``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(
                    PaymentIntent.status.in_(EXPIRABLE_STATUSES),
                    PaymentIntent.expires_at < now,
                    PaymentIntent.in_flight.is_(False),
                )
                .order_by(PaymentIntent.expires_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_payouts_to_resume(self) -> list[PaymentIntent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(
                    PaymentIntent.status.in_(
                        [PaymentIntentStatus.SOURCE_SETTLED, PaymentIntentStatus.BASE_SETTLING]
                    ),
                    PaymentIntent.needs_attention.is_(False),
                )
                .order_by(PaymentIntent.updated_at)
            )
            return list(result.scalars().all())

    async def list_needing_attention(self, limit: int = 100) -> list[PaymentIntent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentIntent)
                .where(PaymentIntent.needs_attention.is_(True))
                .order_by(PaymentIntent.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _load(self, db: AsyncSession, intent_id: UUID) -> PaymentIntent:
        result = await db.execute(select(PaymentIntent).where(PaymentIntent.id == intent_id))
        intent = result.scalar_one_or_none()

        if intent is None:
            raise NotFound(details={"id": str(intent_id)})

        return intent

    async def _write(
        self,
        intent_id: UUID,
        guard: Callable[[PaymentIntent], None],
        **values: Any,
    ) -> PaymentIntent:
        async with self.locked(intent_id):
            async with self.session_factory() as db:
                intent = await self._load(db, intent_id)
                previous = intent.status
                guard(intent)

                result = await db.execute(
                    update(PaymentIntent)
                    .where(
                        PaymentIntent.id == intent_id,
                        PaymentIntent.version == intent.version,
                    )
                    .values(version=intent.version + 1, updated_at=self.clock(), **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    raise InvalidTransition(
                        message="Payment intent was modified concurrently",
                        details={"id": str(intent_id)},
                    )

                await db.commit()
                await db.refresh(intent)

        if intent.status != previous:
            logger.info(f"Intent {intent_id}: {previous.value} -> {intent.status.value}")

        return intent
