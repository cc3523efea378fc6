"""Operator endpoints for intents that need manual attention."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from x402_settlement_service.api.deps import get_runtime
from x402_settlement_service.middleware.auth import require_operator
from x402_settlement_service.runtime import SettlementRuntime
from x402_settlement_service.schemas.payment_intent import ConfirmSourceRequest, PaymentIntentResponse

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/payment_intents/attention", response_model=list[PaymentIntentResponse])
async def list_attention_endpoint(
    limit: int = Query(100, ge=1, le=500),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> list[PaymentIntentResponse]:
    """List intents flagged for operator attention."""
    intents = await runtime.store.list_needing_attention(limit=limit)
    return [PaymentIntentResponse.from_intent(intent) for intent in intents]


@router.post("/payment_intents/{intent_id}/retry_payout", response_model=PaymentIntentResponse)
async def retry_payout_endpoint(
    intent_id: UUID,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Clear the attention flag and run the Base payout again."""
    intent = await runtime.orchestrator.retry_payout(intent_id)
    return PaymentIntentResponse.from_intent(intent)


@router.post("/payment_intents/{intent_id}/confirm_source", response_model=PaymentIntentResponse)
async def confirm_source_endpoint(
    intent_id: UUID,
    body: ConfirmSourceRequest,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Record a confirmed source settlement for a stuck intent and pay out."""
    intent = await runtime.orchestrator.confirm_source_settlement(intent_id, body.transaction)
    return PaymentIntentResponse.from_intent(intent)


@router.post("/payment_intents/{intent_id}/release", response_model=PaymentIntentResponse)
async def release_endpoint(
    intent_id: UUID,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Expire a stuck intent whose source settlement never landed."""
    intent = await runtime.orchestrator.release_intent(intent_id)
    return PaymentIntentResponse.from_intent(intent)
