"""Settlement orchestration: the payment intent state machine.

A proof moves an intent AWAITING_PAYMENT -> PENDING -> SOURCE_SETTLED inside
the request that submitted it. The Base payout (SOURCE_SETTLED ->
BASE_SETTLING -> BASE_SETTLED) then runs as a background task so the caller
is not held while the merchant transfer confirms.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from x402_settlement_service.core.config import Settings
from x402_settlement_service.core.errors import (
    AdapterUnavailable,
    IntentTerminal,
    InvalidTransition,
    NonceReplayed,
    RequirementsMismatch,
    SettlementError,
    SettlementRejected,
    VerificationFailed,
)
from x402_settlement_service.core.retry import retry_async
from x402_settlement_service.db.types import utc_now
from x402_settlement_service.models import PaymentIntent
from x402_settlement_service.models.payment_intent import PaymentIntentStatus
from x402_settlement_service.schemas.proof import PaymentRequirements
from x402_settlement_service.services import proof_codec
from x402_settlement_service.services.chain_adapters import ChainAdapter, ChainAdapters, SettlementReceipt
from x402_settlement_service.services.intent_store import IntentStore
from x402_settlement_service.services.nonce_registry import NonceRegistry
from x402_settlement_service.services.signature_verifier import SignatureVerifier, extract_nonce

logger = logging.getLogger(__name__)


class SettlementOrchestrator:
    """Drives intents through verification, source settlement and payout.

    Args:
        store: Intent store used for every status change
        nonces: Replay guard
        verifier: Signature verifier
        adapters: Chain adapter registry
        settings: Retry and polling policy
        clock: Source of the current time
        sleep: Sleep coroutine used between retries and polls
        auto_payout: Schedule the payout as soon as the source settles
    """

    def __init__(
        self,
        store: IntentStore,
        nonces: NonceRegistry,
        verifier: SignatureVerifier,
        adapters: ChainAdapters,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        auto_payout: bool = True,
    ) -> None:
        self.store = store
        self.nonces = nonces
        self.verifier = verifier
        self.adapters = adapters
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.auto_payout = auto_payout
        self._payouts: dict[UUID, asyncio.Task] = {}

    async def submit_proof(self, intent_id: UUID, proof_b64: str) -> PaymentIntent:
        """Verify a proof and settle it on the payer's chain.

        Args:
            intent_id: Intent being paid
            proof_b64: Base64 x402 v2 payment payload

        Returns:
            The intent after the call (SOURCE_SETTLED on success)

        Raises:
            MalformedProof: If the proof does not decode; the intent is untouched
            NotFound: If the intent does not exist
            IntentTerminal: If the intent is expired or already failed
            InvalidTransition: If another proof is already being settled
            VerificationFailed: A subclass naming why the proof was refused
            AdapterUnavailable: If the source chain could not be reached
        """
        proof = proof_codec.decode(proof_b64)
        intent = await self.store.get(intent_id)
        requirements = PaymentRequirements.model_validate(intent.payment_requirements)

        if intent.status in (PaymentIntentStatus.EXPIRED, PaymentIntentStatus.VERIFICATION_FAILED):
            raise IntentTerminal(
                message=f"Payment intent is {intent.status.value}",
                details={"status": intent.status.value, "failure_code": intent.failure_code},
            )

        if intent.status != PaymentIntentStatus.AWAITING_PAYMENT:
            nonce = extract_nonce(proof)
            if nonce is not None and await self.nonces.is_consumed(
                requirements.asset, requirements.network, nonce
            ):
                raise NonceReplayed(details={"status": intent.status.value})
            if intent.status in (PaymentIntentStatus.BASE_SETTLING, PaymentIntentStatus.BASE_SETTLED):
                return intent
            raise InvalidTransition(
                message=f"Payment intent is already {intent.status.value}",
                details={"status": intent.status.value},
            )

        now = self.clock()
        if intent.is_expired(now):
            await self._expire(intent_id)
            raise IntentTerminal(
                message="Payment intent has expired",
                details={"status": PaymentIntentStatus.EXPIRED.value},
            )

        mismatched = proof_codec.diff_requirements(proof.accepted, requirements)
        if mismatched:
            error = RequirementsMismatch(details={"fields": mismatched})
            await self._fail(intent_id, PaymentIntentStatus.AWAITING_PAYMENT, error)
            raise error

        claimed_payer = proof.payload.authorization.from_ if proof.is_evm else None

        await self.store.transition(
            intent_id,
            PaymentIntentStatus.PENDING,
            expected_status=PaymentIntentStatus.AWAITING_PAYMENT,
            in_flight=True,
            payer_address=claimed_payer,
            proof_nonce=extract_nonce(proof),
        )

        try:
            verified = self.verifier.verify(requirements, proof, now)
            await self.nonces.consume(verified.asset, verified.network, verified.nonce, intent_id)
        except VerificationFailed as e:
            await self._fail(intent_id, PaymentIntentStatus.PENDING, e)
            raise
        except Exception as e:
            # Nothing reached the chain yet, so expiry may still reclaim the intent
            logger.exception(f"Verification of intent {intent_id} aborted")
            await self._record_pending_error(intent_id, e, in_flight=False, needs_attention=False)
            raise

        source = self.adapters.source_for(intent.payer_chain)
        try:
            receipt = await self._with_retry(lambda: source.settle(requirements, proof))
            intent = await self.store.transition(
                intent_id,
                PaymentIntentStatus.SOURCE_SETTLED,
                expected_status=PaymentIntentStatus.PENDING,
                in_flight=False,
                payer_address=verified.payer,
                proof_nonce=verified.nonce,
                source_settlement=receipt.to_record(self.clock()),
            )
        except SettlementRejected as e:
            await self._fail(intent_id, PaymentIntentStatus.PENDING, e)
            raise
        except AdapterUnavailable as e:
            logger.error(f"Source settlement for intent {intent_id} exhausted: {e.message}")
            await self._record_pending_error(intent_id, e, in_flight=True, needs_attention=True)
            raise
        except Exception as e:
            logger.exception(f"Source settlement for intent {intent_id} aborted")
            await self._record_pending_error(intent_id, e, in_flight=True, needs_attention=True)
            raise

        if self.auto_payout:
            self.schedule_payout(intent_id)

        return intent

    def schedule_payout(self, intent_id: UUID) -> asyncio.Task:
        """Start the payout task for an intent unless one is already running."""
        task = self._payouts.get(intent_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.run_payout(intent_id), name=f"payout-{intent_id}")
        self._payouts[intent_id] = task
        task.add_done_callback(lambda t: self._payout_finished(intent_id, t))
        return task

    async def run_payout(self, intent_id: UUID) -> PaymentIntent:
        """Pay the merchant on Base and wait for confirmation.

        Adapter failures are retried; once retries run out the intent stays in
        BASE_SETTLING with ``needs_attention`` set for an operator.
        """
        intent = await self.store.get(intent_id)

        if intent.status == PaymentIntentStatus.SOURCE_SETTLED:
            intent = await self.store.transition(
                intent_id,
                PaymentIntentStatus.BASE_SETTLING,
                expected_status=PaymentIntentStatus.SOURCE_SETTLED,
            )
        elif intent.status != PaymentIntentStatus.BASE_SETTLING:
            return intent

        payout = self.adapters.payout
        attempts = intent.payout_attempts
        record: Optional[dict[str, Any]] = intent.base_settlement

        async def submit_transfer():
            nonlocal attempts
            attempts += 1
            return await payout.transfer(
                intent.merchant_address,
                intent.receiving_amount_minor,
                str(intent_id),
            )

        try:
            if not record or not record.get("transaction"):
                receipt = await self._with_retry(submit_transfer)
                record = receipt.to_record()
                intent = await self.store.annotate(
                    intent_id,
                    PaymentIntentStatus.BASE_SETTLING,
                    base_settlement=record,
                    payout_attempts=attempts,
                )
            await self._await_confirmation(payout, record["transaction"])
        except SettlementError as e:
            logger.error(f"Payout for intent {intent_id} needs attention: {e.error_code} {e.message}")
            return await self.store.annotate(
                intent_id,
                PaymentIntentStatus.BASE_SETTLING,
                needs_attention=True,
                attention_reason=f"{e.error_code}: {e.message}",
                payout_attempts=attempts,
            )

        now = self.clock()
        return await self.store.transition(
            intent_id,
            PaymentIntentStatus.BASE_SETTLED,
            expected_status=PaymentIntentStatus.BASE_SETTLING,
            base_settlement={**record, "settled_at": now.isoformat()},
            completed_at=now,
            needs_attention=False,
            attention_reason=None,
        )

    async def retry_payout(self, intent_id: UUID) -> PaymentIntent:
        """Operator action: clear the attention flag and run the payout again.

        Raises:
            InvalidTransition: If the intent has no payout to retry
        """
        intent = await self.store.get(intent_id)

        if intent.status not in (
            PaymentIntentStatus.SOURCE_SETTLED,
            PaymentIntentStatus.BASE_SETTLING,
        ):
            raise InvalidTransition(
                message=f"No payout to retry for a {intent.status.value} intent",
                details={"status": intent.status.value},
            )

        if intent.needs_attention:
            intent = await self.store.annotate(
                intent_id,
                intent.status,
                needs_attention=False,
                attention_reason=None,
            )

        logger.info(f"Operator retry of payout for intent {intent_id}")
        self.schedule_payout(intent_id)
        return intent

    async def confirm_source_settlement(self, intent_id: UUID, transaction: str) -> PaymentIntent:
        """Operator action: record a source settlement found on chain.

        For a PENDING intent flagged after its source settlement was
        submitted. The source adapter must report ``transaction`` as
        confirmed; the intent then moves to SOURCE_SETTLED and is paid out.

        Raises:
            InvalidTransition: If the intent is not stuck in PENDING or the transaction is unconfirmed
        """
        intent = await self.store.get(intent_id)
        self._check_stuck_source(intent)

        source = self.adapters.source_for(intent.payer_chain)
        if not await self._with_retry(lambda: source.is_confirmed(transaction)):
            raise InvalidTransition(
                message=f"Transaction {transaction} is not confirmed on {source.network}",
                details={"transaction": transaction},
            )

        receipt = SettlementReceipt(chain=source.chain, network=source.network, transaction=transaction)
        intent = await self.store.transition(
            intent_id,
            PaymentIntentStatus.SOURCE_SETTLED,
            expected_status=PaymentIntentStatus.PENDING,
            in_flight=False,
            needs_attention=False,
            attention_reason=None,
            source_settlement=receipt.to_record(self.clock()),
        )

        logger.info(f"Operator confirmed source settlement {transaction} for intent {intent_id}")
        self.schedule_payout(intent_id)
        return intent

    async def release_intent(self, intent_id: UUID) -> PaymentIntent:
        """Operator action: give up on a stuck source settlement.

        The intent moves to EXPIRED even though its settlement was in flight.

        Raises:
            InvalidTransition: If the intent is not stuck in PENDING
        """
        intent = await self.store.get(intent_id)
        self._check_stuck_source(intent)

        intent = await self.store.transition(
            intent_id,
            PaymentIntentStatus.EXPIRED,
            expected_status=PaymentIntentStatus.PENDING,
            release_in_flight=True,
            in_flight=False,
            needs_attention=False,
        )

        logger.warning(f"Operator released intent {intent_id} ({intent.attention_reason})")
        return intent

    async def resume_payouts(self) -> int:
        """Reschedule payouts interrupted by a restart."""
        intents = await self.store.list_payouts_to_resume()
        for intent in intents:
            self.schedule_payout(intent.id)
        if intents:
            logger.info(f"Resumed {len(intents)} payout(s)")
        return len(intents)

    async def wait_for_payouts(self, timeout: Optional[float] = None) -> None:
        tasks = [task for task in self._payouts.values() if not task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def close(self) -> None:
        """Give running payouts the shutdown grace period to finish.

        Payouts still running afterwards are left alone; they are picked up
        again by ``resume_payouts`` on the next start.
        """
        await self.wait_for_payouts(timeout=self.settings.SHUTDOWN_GRACE_SECONDS)
        remaining = [task for task in self._payouts.values() if not task.done()]
        if remaining:
            logger.warning(f"{len(remaining)} payout(s) still running at shutdown")

    async def _with_retry(self, func):
        return await retry_async(
            func,
            max_attempts=self.settings.PAYOUT_MAX_ATTEMPTS,
            base_delay=self.settings.PAYOUT_BASE_DELAY_SECONDS,
            max_delay=self.settings.PAYOUT_MAX_DELAY_SECONDS,
            sleep=self.sleep,
        )

    async def _await_confirmation(self, adapter: ChainAdapter, transaction: str) -> None:
        polls = self.settings.CONFIRMATION_MAX_POLLS
        for poll in range(polls):
            if await self._with_retry(lambda: adapter.is_confirmed(transaction)):
                return
            if poll < polls - 1:
                await self.sleep(self.settings.CONFIRMATION_POLL_INTERVAL_SECONDS)

        raise AdapterUnavailable(
            message=f"Transaction {transaction} not confirmed after {polls} polls",
            details={"transaction": transaction},
        )

    async def _fail(
        self,
        intent_id: UUID,
        expected_status: PaymentIntentStatus,
        error: SettlementError,
    ) -> None:
        logger.warning(f"Verification failed for intent {intent_id}: {error.error_code}")
        try:
            await self.store.transition(
                intent_id,
                PaymentIntentStatus.VERIFICATION_FAILED,
                expected_status=expected_status,
                in_flight=False,
                failure_code=error.error_code,
                failure_message=error.message,
            )
        except InvalidTransition as e:
            logger.warning(f"Could not record failure for intent {intent_id}: {e.message}")

    def _check_stuck_source(self, intent: PaymentIntent) -> None:
        if intent.status != PaymentIntentStatus.PENDING or not intent.needs_attention:
            raise InvalidTransition(
                message=f"No stuck source settlement for a {intent.status.value} intent",
                details={"status": intent.status.value, "needs_attention": intent.needs_attention},
            )

    async def _record_pending_error(
        self,
        intent_id: UUID,
        error: Exception,
        in_flight: bool,
        needs_attention: bool,
    ) -> None:
        if isinstance(error, SettlementError):
            reason = f"{error.error_code}: {error.message}"
        else:
            reason = repr(error)
        try:
            await self.store.annotate(
                intent_id,
                PaymentIntentStatus.PENDING,
                in_flight=in_flight,
                needs_attention=needs_attention,
                attention_reason=reason,
            )
        except Exception:
            logger.exception(f"Could not record settlement error for intent {intent_id}")

    async def _expire(self, intent_id: UUID) -> None:
        try:
            await self.store.transition(
                intent_id,
                PaymentIntentStatus.EXPIRED,
                expected_status=PaymentIntentStatus.AWAITING_PAYMENT,
            )
        except InvalidTransition as e:
            logger.info(f"Intent {intent_id} not expired here: {e.message}")

    def _payout_finished(self, intent_id: UUID, task: asyncio.Task) -> None:
        if self._payouts.get(intent_id) is task:
            del self._payouts[intent_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Payout task for intent {intent_id} crashed: {error!r}")
