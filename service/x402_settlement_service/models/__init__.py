"""SQLAlchemy models for the settlement service."""

from x402_settlement_service.models.consumed_nonce import ConsumedNonce
from x402_settlement_service.models.payment_intent import PaymentIntent
from x402_settlement_service.models.recipient_alias import RecipientAlias

__all__ = [
    "ConsumedNonce",
    "PaymentIntent",
    "RecipientAlias",
]
