"""Payment intent-related schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from x402_settlement_service.models.payment_intent import PayerChain, PaymentIntent


def format_amount(amount: Decimal) -> str:
    """Render a decimal amount without exponent or trailing zeros."""
    return f"{amount.normalize():f}"


class CreatePaymentIntentRequest(BaseModel):
    """Payment intent creation request body."""

    recipient: str = Field(..., description="Merchant Base address or registered email")
    amount: str = Field(..., description="Sending amount in asset units (as string)")
    payer_chain: PayerChain = Field(..., description="Chain the payer settles from")


class SubmitProofRequest(BaseModel):
    """Proof submission request body."""

    proof: Optional[str] = Field(None, description="Base64 x402 v2 payment payload")


class ConfirmSourceRequest(BaseModel):
    """Operator confirmation of a source settlement found on chain."""

    transaction: str = Field(..., min_length=1, description="Source chain transaction id")


class SettlementRecord(BaseModel):
    """Result of settling on one chain."""

    chain: str
    network: str
    transaction: str
    explorer_url: Optional[str] = None
    settled_at: Optional[datetime] = None


class PaymentIntentResponse(BaseModel):
    """Full payment intent projection."""

    id: str
    status: str
    recipient: str
    payer_chain: str
    sending_amount: str
    estimated_fee: str
    receiving_amount: str
    payment_requirements: dict[str, Any]
    payer_address: Optional[str] = None
    source_settlement: Optional[SettlementRecord] = None
    base_settlement: Optional[SettlementRecord] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    needs_attention: bool = False
    expires_at: datetime
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "PaymentIntentResponse":
        return cls(
            id=str(intent.id),
            status=intent.status.value,
            recipient=intent.merchant_recipient,
            payer_chain=intent.payer_chain.value,
            sending_amount=format_amount(intent.sending_amount),
            estimated_fee=format_amount(intent.estimated_fee),
            receiving_amount=format_amount(intent.receiving_amount),
            payment_requirements=intent.payment_requirements,
            payer_address=intent.payer_address,
            source_settlement=intent.source_settlement,
            base_settlement=intent.base_settlement,
            failure_code=intent.failure_code,
            failure_message=intent.failure_message,
            needs_attention=intent.needs_attention,
            expires_at=intent.expires_at,
            created_at=intent.created_at,
            completed_at=intent.completed_at,
        )
