"""Codec for x402 v2 payment payloads (base64 JSON envelope)."""

import base64
import binascii
import json
from typing import Any

from pydantic import ValidationError

from x402_settlement_service.core.errors import MalformedProof
from x402_settlement_service.schemas.proof import X402_VERSION, PaymentRequirements, SettleProof

# Fields of ``accepted`` that must equal the stored snapshot
COMPARED_FIELDS = ("scheme", "network", "amount", "asset", "pay_to", "max_timeout_seconds")


def decode(data: str) -> SettleProof:
    """Decode a base64 payment payload into a SettleProof.

    Validation is structural only; signatures are not looked at here.

    Raises:
        MalformedProof: On base64, JSON, schema or version errors
    """
    if not isinstance(data, str) or not data.strip():
        raise MalformedProof(message="Proof is empty")

    text = data.strip()
    text += "=" * (-len(text) % 4)

    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedProof(message="Proof is not valid base64")

    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedProof(message="Proof is not valid JSON")

    if not isinstance(document, dict):
        raise MalformedProof(message="Proof must be a JSON object")

    version = document.get("x402Version")
    if version != X402_VERSION:
        raise MalformedProof(
            message=f"Unsupported x402Version: {version!r}",
            details={"expected": X402_VERSION, "received": version},
        )

    try:
        return SettleProof.model_validate(document)
    except ValidationError as e:
        raise MalformedProof(
            message="Proof does not match the x402 v2 schema",
            details={"errors": _summarize(e)},
        )


def encode(proof: SettleProof) -> str:
    """Encode a SettleProof as the base64 JSON envelope ``decode`` accepts."""
    body = json.dumps(proof.to_wire(), separators=(",", ":"), sort_keys=True)
    return base64.b64encode(body.encode("utf-8")).decode("ascii")


def diff_requirements(
    accepted: PaymentRequirements,
    snapshot: PaymentRequirements,
) -> list[str]:
    """Return the wire names of compared fields that differ."""
    mismatched = []
    for name in COMPARED_FIELDS:
        if getattr(accepted, name) != getattr(snapshot, name):
            field = PaymentRequirements.model_fields[name]
            mismatched.append(field.alias or name)
    return mismatched


def _summarize(error: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in item["loc"]), "msg": item["msg"]}
        for item in error.errors()
    ]
