"""x402 v2 wire schemas: payment requirements and settle proofs."""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

X402_VERSION = 2

_DIGITS = r"^\d+$"
_HEX = r"^0x[0-9a-fA-F]+$"
_EVM_ADDRESS = r"^0x[0-9a-fA-F]{40}$"


class PaymentRequirements(BaseModel):
    """Frozen payment terms; the contract a proof is checked against."""

    model_config = ConfigDict(populate_by_name=True)

    scheme: str = Field(..., description="Payment scheme, always 'exact' here")
    network: str = Field(..., description="CAIP-2 network identifier")
    amount: str = Field(..., pattern=_DIGITS, description="Amount in integer minor units")
    asset: str = Field(..., description="Token contract (EVM) or mint (Solana) address")
    pay_to: str = Field(..., alias="payTo", description="Settlement address receiving the funds")
    max_timeout_seconds: int = Field(..., alias="maxTimeoutSeconds", ge=0)
    extra: Optional[dict[str, Any]] = Field(None, description="Asset metadata")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ResourceInfo(BaseModel):
    """Resource the payment is made for."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(None, alias="mimeType")


class EIP3009Authorization(BaseModel):
    """TransferWithAuthorization message signed by the payer."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    from_: str = Field(..., alias="from", pattern=_EVM_ADDRESS)
    to: str = Field(..., pattern=_EVM_ADDRESS)
    value: str = Field(..., pattern=_DIGITS)
    valid_after: str = Field(..., alias="validAfter", pattern=_DIGITS)
    valid_before: str = Field(..., alias="validBefore", pattern=_DIGITS)
    nonce: str = Field(..., pattern=_HEX)


class ExactEvmPayload(BaseModel):
    """EIP-712 signature plus the authorization it covers."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    signature: str = Field(..., pattern=_HEX)
    authorization: EIP3009Authorization


class ExactSvmPayload(BaseModel):
    """Partially signed Solana transaction, base64 encoded."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    transaction: str = Field(..., min_length=1)


class SettleProof(BaseModel):
    """x402 v2 payment payload submitted by the payer."""

    model_config = ConfigDict(populate_by_name=True)

    x402_version: Literal[2] = Field(..., alias="x402Version")
    resource: ResourceInfo
    accepted: PaymentRequirements
    payload: Union[ExactEvmPayload, ExactSvmPayload]
    extensions: Optional[dict[str, Any]] = None

    @property
    def is_evm(self) -> bool:
        return isinstance(self.payload, ExactEvmPayload)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
