"""Tests for intent creation and the guarded status transition."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from conftest import MERCHANT, NOW, SOLANA_FEE_PAYER, SOLANA_TREASURY, TREASURY
from x402_settlement_service.core.errors import (
    IntentTerminal,
    InvalidAmount,
    InvalidRecipient,
    InvalidTransition,
    NotFound,
)
from x402_settlement_service.models import PaymentIntent, RecipientAlias
from x402_settlement_service.models.payment_intent import PayerChain, PaymentIntentStatus
from x402_settlement_service.runtime import SettlementRuntime
from x402_settlement_service.schemas.payment_intent import CreatePaymentIntentRequest
from x402_settlement_service.services.intent_store import IntentStore, compute_fee_minor


def request(amount: str = "10", chain: PayerChain = PayerChain.BASE, recipient: str = MERCHANT.address):
    return CreatePaymentIntentRequest(recipient=recipient, amount=amount, payer_chain=chain)


@pytest.mark.asyncio
async def test_create_computes_frozen_amounts(runtime: SettlementRuntime):
    """Test that 10 at 50 bps yields a 0.05 fee and 9.95 receiving."""
    intent = await runtime.store.create(request("10"))

    assert intent.status == PaymentIntentStatus.AWAITING_PAYMENT
    assert intent.sending_amount == Decimal("10")
    assert intent.estimated_fee == Decimal("0.05")
    assert intent.receiving_amount == Decimal("9.95")
    assert intent.receiving_amount == intent.sending_amount - intent.estimated_fee
    assert intent.expires_at == NOW + timedelta(seconds=runtime.settings.INTENT_TTL_SECONDS)
    assert intent.version == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0.01", "0.03", "1", "123.456789", "999999.99", "1000000"])
async def test_receiving_equals_sending_minus_fee(runtime: SettlementRuntime, amount: str):
    """Test the amount identity across the allowed range."""
    intent = await runtime.store.create(request(amount))

    assert intent.sending_amount == Decimal(amount)
    assert intent.receiving_amount_minor + intent.fee_minor == intent.sending_amount_minor
    assert intent.receiving_amount == intent.sending_amount - intent.estimated_fee


def test_fee_rounds_half_up():
    """Test fee rounding on minor units."""
    assert compute_fee_minor(10_000_000, 50) == 50_000
    assert compute_fee_minor(100, 50) == 1  # 0.5 rounds up
    assert compute_fee_minor(99, 50) == 0


@pytest.mark.asyncio
async def test_base_requirements_snapshot(runtime: SettlementRuntime):
    """Test the frozen x402 terms for a Base payer."""
    intent = await runtime.store.create(request("10"))
    requirements = intent.payment_requirements

    assert requirements["scheme"] == "exact"
    assert requirements["network"] == "eip155:8453"
    assert requirements["amount"] == "10000000"
    assert requirements["payTo"] == TREASURY.address
    assert requirements["asset"] == runtime.settings.BASE_USDC_ADDRESS
    assert requirements["maxTimeoutSeconds"] == runtime.settings.MAX_TIMEOUT_SECONDS
    assert requirements["extra"] == {"name": "USD Coin", "version": "2"}
    assert intent.merchant_recipient == f"eip155:8453:{MERCHANT.address}"


@pytest.mark.asyncio
async def test_solana_requirements_snapshot(runtime: SettlementRuntime):
    """Test the frozen x402 terms for a Solana payer."""
    intent = await runtime.store.create(request("1.5", PayerChain.SOLANA))
    requirements = intent.payment_requirements

    assert requirements["network"] == runtime.settings.SOLANA_NETWORK
    assert requirements["amount"] == "1500000"
    assert requirements["payTo"] == str(SOLANA_TREASURY.pubkey())
    assert requirements["asset"] == runtime.settings.SOLANA_USDC_MINT
    assert requirements["extra"] == {"decimals": 6, "feePayer": str(SOLANA_FEE_PAYER.pubkey())}


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0.009", "0", "-1", "1000000.01", "abc", "NaN", "1.0000001"])
async def test_invalid_amount_not_persisted(runtime: SettlementRuntime, db_session, amount: str):
    """Test that out-of-range amounts are rejected before anything is stored."""
    with pytest.raises(InvalidAmount):
        await runtime.store.create(request(amount))

    count = await db_session.scalar(select(func.count()).select_from(PaymentIntent))
    assert count == 0


@pytest.mark.asyncio
async def test_invalid_recipient(runtime: SettlementRuntime):
    """Test that unresolvable recipients are rejected."""
    with pytest.raises(InvalidRecipient):
        await runtime.store.create(request(recipient="not-a-recipient"))

    with pytest.raises(InvalidRecipient):
        await runtime.store.create(request(recipient="nobody@example.com"))


@pytest.mark.asyncio
async def test_create_with_email_alias(runtime: SettlementRuntime, db_session):
    """Test that a registered email resolves to its Base address."""
    db_session.add(RecipientAlias(email="shop@example.com", address=MERCHANT.address.lower()))
    await db_session.commit()

    intent = await runtime.store.create(request(recipient="Shop@Example.com"))

    assert intent.merchant_recipient == f"eip155:8453:{MERCHANT.address}"
    assert intent.recipient_input == "Shop@Example.com"


@pytest.mark.asyncio
async def test_get_unknown_intent(runtime: SettlementRuntime):
    """Test that unknown ids raise NotFound."""
    with pytest.raises(NotFound):
        await runtime.store.get(uuid4())


@pytest.mark.asyncio
async def test_transition_follows_graph(runtime: SettlementRuntime, base_intent):
    """Test allowed and disallowed edges."""
    store = runtime.store

    with pytest.raises(InvalidTransition):
        await store.transition(base_intent.id, PaymentIntentStatus.BASE_SETTLED)

    intent = await store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True)
    assert intent.status == PaymentIntentStatus.PENDING
    assert intent.in_flight is True
    assert intent.version == 2

    with pytest.raises(InvalidTransition):
        await store.transition(base_intent.id, PaymentIntentStatus.AWAITING_PAYMENT)


@pytest.mark.asyncio
async def test_transition_out_of_terminal_state(runtime: SettlementRuntime, base_intent):
    """Test that terminal intents refuse every transition."""
    await runtime.store.transition(base_intent.id, PaymentIntentStatus.EXPIRED)

    with pytest.raises(IntentTerminal):
        await runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING)

    with pytest.raises(IntentTerminal):
        await runtime.store.transition(base_intent.id, PaymentIntentStatus.EXPIRED)


@pytest.mark.asyncio
async def test_expiry_refused_while_in_flight(runtime: SettlementRuntime, base_intent):
    """Test that a settlement in flight cannot be expired underneath."""
    await runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True)

    with pytest.raises(InvalidTransition):
        await runtime.store.transition(base_intent.id, PaymentIntentStatus.EXPIRED)

    intent = await runtime.store.get(base_intent.id)
    assert intent.status == PaymentIntentStatus.PENDING


@pytest.mark.asyncio
async def test_release_in_flight_expiry(runtime: SettlementRuntime, base_intent):
    """Test that an explicit release may expire an in-flight intent."""
    await runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True)

    intent = await runtime.store.transition(
        base_intent.id,
        PaymentIntentStatus.EXPIRED,
        release_in_flight=True,
        in_flight=False,
    )

    assert intent.status == PaymentIntentStatus.EXPIRED
    assert intent.in_flight is False


@pytest.mark.asyncio
async def test_expected_status_guard(runtime: SettlementRuntime, base_intent):
    """Test that expected_status pins the source state."""
    with pytest.raises(InvalidTransition):
        await runtime.store.transition(
            base_intent.id,
            PaymentIntentStatus.EXPIRED,
            expected_status=PaymentIntentStatus.PENDING,
        )


@pytest.mark.asyncio
async def test_annotate_keeps_status(runtime: SettlementRuntime, base_intent):
    """Test that annotate writes fields without moving the intent."""
    intent = await runtime.store.annotate(
        base_intent.id,
        PaymentIntentStatus.AWAITING_PAYMENT,
        needs_attention=True,
        attention_reason="check",
    )

    assert intent.status == PaymentIntentStatus.AWAITING_PAYMENT
    assert intent.needs_attention is True
    assert intent.version == 2

    with pytest.raises(InvalidTransition):
        await runtime.store.annotate(base_intent.id, PaymentIntentStatus.PENDING, needs_attention=False)


@pytest.mark.asyncio
async def test_concurrent_transitions_single_winner(runtime: SettlementRuntime, base_intent):
    """Test that of two racing writers in one process exactly one wins."""
    results = await asyncio.gather(
        runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True),
        runtime.store.transition(base_intent.id, PaymentIntentStatus.EXPIRED),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, PaymentIntent)]
    losers = [r for r in results if isinstance(r, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1


@pytest.mark.asyncio
async def test_locks_dropped_after_writes(runtime: SettlementRuntime, base_intent):
    """Test that idle intents hold no lock, terminal or not."""
    await asyncio.gather(
        runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True),
        runtime.store.annotate(base_intent.id, PaymentIntentStatus.PENDING, needs_attention=True),
        return_exceptions=True,
    )

    intent = await runtime.store.get(base_intent.id)
    assert intent.status == PaymentIntentStatus.PENDING
    assert runtime.store._locks == {}
    assert runtime.store._lock_users == {}


@pytest.mark.asyncio
async def test_lock_shared_while_writers_wait(runtime: SettlementRuntime, base_intent):
    """Test that a waiting writer keeps the lock alive for later callers."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def hold():
        async with runtime.store.locked(base_intent.id):
            entered.set()
            await release.wait()

    holder = asyncio.create_task(hold())
    await entered.wait()
    writer = asyncio.create_task(
        runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING, in_flight=True)
    )
    await asyncio.sleep(0)

    assert runtime.store._lock_users[base_intent.id] == 2
    assert not writer.done()

    release.set()
    await holder
    intent = await writer

    assert intent.status == PaymentIntentStatus.PENDING
    assert runtime.store._locks == {}


@pytest.mark.asyncio
async def test_version_compare_and_swap_across_stores(
    runtime: SettlementRuntime, session_factory, base_intent
):
    """Test that two stores with separate locks still admit a single writer."""
    other = IntentStore(session_factory, runtime.settings, clock=runtime.store.clock)

    results = await asyncio.gather(
        runtime.store.transition(base_intent.id, PaymentIntentStatus.PENDING),
        other.transition(base_intent.id, PaymentIntentStatus.PENDING),
        return_exceptions=True,
    )

    assert sum(isinstance(r, PaymentIntent) for r in results) == 1
    assert sum(isinstance(r, InvalidTransition) for r in results) == 1

    intent = await runtime.store.get(base_intent.id)
    assert intent.version == 2


@pytest.mark.asyncio
async def test_list_expirable(runtime: SettlementRuntime, clock):
    """Test that only overdue, idle, expirable intents are listed."""
    overdue = await runtime.store.create(request("1"))
    in_flight = await runtime.store.create(request("2"))
    await runtime.store.transition(in_flight.id, PaymentIntentStatus.PENDING, in_flight=True)

    clock.advance(runtime.settings.INTENT_TTL_SECONDS + 1)
    fresh = await runtime.store.create(request("3"))

    listed = {intent.id for intent in await runtime.store.list_expirable(clock())}

    assert overdue.id in listed
    assert in_flight.id not in listed
    assert fresh.id not in listed
