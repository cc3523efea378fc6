"""Payment intent endpoints."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, status

from x402_settlement_service.api.deps import get_runtime
from x402_settlement_service.core.errors import MalformedProof
from x402_settlement_service.middleware.rate_limit import check_rate_limit
from x402_settlement_service.runtime import SettlementRuntime
from x402_settlement_service.schemas.common import ErrorResponse
from x402_settlement_service.schemas.payment_intent import (
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    SubmitProofRequest,
)

router = APIRouter(dependencies=[Depends(check_rate_limit)])


@router.post(
    "",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
)
async def create_payment_intent_endpoint(
    request: CreatePaymentIntentRequest,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Create a payment intent with frozen x402 payment requirements."""
    intent = await runtime.store.create(request)
    return PaymentIntentResponse.from_intent(intent)


@router.post(
    "/{intent_id}/proof",
    response_model=PaymentIntentResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def submit_proof_endpoint(
    intent_id: UUID,
    request: Optional[SubmitProofRequest] = None,
    x_payment: Optional[str] = Header(None, alias="X-PAYMENT"),
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Submit a base64 x402 payment payload, in the body or the X-PAYMENT header."""
    proof = (request.proof if request else None) or x_payment
    if not proof:
        raise MalformedProof(message="Proof is required in the body or the X-PAYMENT header")

    intent = await runtime.orchestrator.submit_proof(intent_id, proof)
    return PaymentIntentResponse.from_intent(intent)


@router.get(
    "/{intent_id}",
    response_model=PaymentIntentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payment_intent_endpoint(
    intent_id: UUID,
    runtime: SettlementRuntime = Depends(get_runtime),
) -> PaymentIntentResponse:
    """Get the full projection of a payment intent."""
    intent = await runtime.store.get(intent_id)
    return PaymentIntentResponse.from_intent(intent)
