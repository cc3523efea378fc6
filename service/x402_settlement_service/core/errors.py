"""Error taxonomy for the settlement service.

Every error carries a machine-readable ``error_code`` and the HTTP status it
maps to, so the API layer can render it without knowing the concrete class.
"""

from typing import Any, Optional


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    error_code: str = "SETTLEMENT_ERROR"
    status_code: int = 500
    default_message: str = "Settlement error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.status_code}] {self.error_code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidInput(SettlementError):
    """Raised when an intent creation request is invalid."""

    error_code = "INVALID_INPUT"
    status_code = 400
    default_message = "Invalid input"


class InvalidAmount(InvalidInput):
    """Raised when the amount is outside the allowed range or precision."""

    error_code = "INVALID_AMOUNT"
    default_message = "Invalid amount"


class InvalidRecipient(InvalidInput):
    """Raised when the recipient resolves to neither an email nor an address."""

    error_code = "INVALID_RECIPIENT"
    default_message = "Recipient could not be resolved"


class NotFound(SettlementError):
    """Raised when an intent id is unknown."""

    error_code = "INTENT_NOT_FOUND"
    status_code = 404
    default_message = "Payment intent not found"


class InvalidTransition(SettlementError):
    """Raised when a status change is not reachable from the current status."""

    error_code = "INVALID_TRANSITION"
    status_code = 409
    default_message = "Invalid status transition"


class IntentTerminal(InvalidTransition):
    """Raised when an intent has already reached a terminal failure state."""

    error_code = "INTENT_TERMINAL"
    default_message = "Payment intent is in a terminal state"


class MalformedProof(SettlementError):
    """Raised when a proof fails base64, JSON or schema decoding."""

    error_code = "MALFORMED_PROOF"
    status_code = 400
    default_message = "Malformed payment proof"


class VerificationFailed(SettlementError):
    """Base class for failures that move an intent to VERIFICATION_FAILED."""

    error_code = "VERIFICATION_FAILED"
    status_code = 422
    default_message = "Payment verification failed"


class RequirementsMismatch(VerificationFailed):
    """Raised when the proof's accepted terms diverge from the stored snapshot."""

    error_code = "REQUIREMENTS_MISMATCH"
    default_message = "Accepted payment requirements do not match the intent"


class SignatureInvalid(VerificationFailed):
    """Raised when a signature does not verify against the claimed payer."""

    error_code = "SIGNATURE_INVALID"
    default_message = "Signature does not match the claimed payer"


class ExpiredWindow(VerificationFailed):
    """Raised when the authorization validity window does not include now."""

    error_code = "EXPIRED_WINDOW"
    default_message = "Authorization is outside its validity window"


class NonceReplayed(VerificationFailed):
    """Raised when an authorization nonce has already been consumed."""

    error_code = "NONCE_REPLAYED"
    default_message = "Authorization nonce has already been used"


class AmountMismatch(VerificationFailed):
    """Raised when the signed amount differs from the intent amount."""

    error_code = "AMOUNT_MISMATCH"
    default_message = "Signed amount does not match the intent amount"


class MalformedInstructions(VerificationFailed):
    """Raised when a Solana transaction does not have the expected shape."""

    error_code = "MALFORMED_INSTRUCTIONS"
    default_message = "Transaction instructions do not match the expected shape"


class SettlementRejected(VerificationFailed):
    """Raised when the source chain refuses a verified authorization."""

    error_code = "SETTLEMENT_REJECTED"
    default_message = "Source chain rejected the settlement"


class AdapterUnavailable(SettlementError):
    """Raised when a chain adapter or its backend cannot serve the request."""

    error_code = "ADAPTER_UNAVAILABLE"
    status_code = 503
    default_message = "Chain adapter unavailable"


class Unauthorized(SettlementError):
    """Raised when an operator API key is missing or invalid."""

    error_code = "INVALID_API_KEY"
    status_code = 401
    default_message = "Invalid API key"


class RateLimitExceeded(SettlementError):
    """Raised when the client exceeds its request budget."""

    error_code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Rate limit exceeded"


class InternalError(SettlementError):
    """Raised for unexpected failures, including storage outages."""

    error_code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

