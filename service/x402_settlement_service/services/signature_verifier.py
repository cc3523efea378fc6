"""Signature verification for x402 exact-scheme proofs.

Two variants, selected by the CAIP-2 namespace of the frozen requirements:

* ``eip155``: EIP-3009 ``TransferWithAuthorization`` signed as EIP-712 typed
  data. The domain is rebuilt from the snapshot, so a signature made over any
  other token, chain or contract recovers to the wrong address.
* ``solana``: a partially signed transaction whose only instructions are the
  two compute-budget settings and a ``TransferChecked`` to the settlement
  address' associated token account.

Verification is pure: it never touches storage. Nonce consumption happens in
the orchestrator once a proof has verified.
"""

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as SignatureValidationError
from eth_utils import to_checksum_address
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from x402_settlement_service.core.errors import (
    AmountMismatch,
    ExpiredWindow,
    MalformedInstructions,
    RequirementsMismatch,
    SignatureInvalid,
)
from x402_settlement_service.schemas.proof import (
    ExactEvmPayload,
    ExactSvmPayload,
    PaymentRequirements,
    SettleProof,
)

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# Instruction discriminators
SET_COMPUTE_UNIT_LIMIT = 2
SET_COMPUTE_UNIT_PRICE = 3
TRANSFER_CHECKED = 12


@dataclass(frozen=True)
class VerifiedAuthorization:
    """Outcome of a successful verification."""

    payer: str
    nonce: str
    network: str
    asset: str
    amount_minor: int


def chain_id_from_network(network: str) -> int:
    """Extract the numeric chain id from an ``eip155:<id>`` network."""
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        raise ValueError(f"Not an EVM network: {network}")
    return int(reference)


def build_eip712_domain(requirements: PaymentRequirements) -> dict[str, Any]:
    """Rebuild the token's EIP-712 domain from frozen requirements."""
    extra = requirements.extra or {}
    if "name" not in extra or "version" not in extra:
        raise SignatureInvalid(message="EIP-712 domain metadata missing from requirements")
    return {
        "name": extra["name"],
        "version": extra["version"],
        "chainId": chain_id_from_network(requirements.network),
        "verifyingContract": to_checksum_address(requirements.asset),
    }


def build_transfer_authorization(
    requirements: PaymentRequirements,
    authorization: dict[str, Any],
) -> dict[str, Any]:
    """Assemble the full EIP-712 typed data for a transfer authorization."""
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": build_eip712_domain(requirements),
        "message": {
            "from": to_checksum_address(authorization["from"]),
            "to": to_checksum_address(authorization["to"]),
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": _nonce_bytes(authorization["nonce"]),
        },
    }


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    """Derive the associated token account of ``owner`` for ``mint``."""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class SignatureVerifier:
    """Checks that a proof was signed by its claimed payer under the frozen terms."""

    def __init__(self, max_compute_unit_price: int = 5_000_000) -> None:
        self.max_compute_unit_price = max_compute_unit_price

    def verify(
        self,
        requirements: PaymentRequirements,
        proof: SettleProof,
        now: datetime,
    ) -> VerifiedAuthorization:
        """Verify ``proof`` against ``requirements``.

        Raises:
            VerificationFailed: A subclass naming the specific reason
        """
        namespace = requirements.network.partition(":")[0]

        if namespace == "eip155":
            if not isinstance(proof.payload, ExactEvmPayload):
                raise RequirementsMismatch(message="EVM network requires an EIP-3009 payload")
            return self._verify_evm(requirements, proof.payload, now)

        if namespace == "solana":
            if not isinstance(proof.payload, ExactSvmPayload):
                raise RequirementsMismatch(message="Solana network requires a transaction payload")
            return self._verify_svm(requirements, proof.payload)

        raise RequirementsMismatch(
            message=f"Unsupported network namespace: {namespace}",
            details={"network": requirements.network},
        )

    def _verify_evm(
        self,
        requirements: PaymentRequirements,
        payload: ExactEvmPayload,
        now: datetime,
    ) -> VerifiedAuthorization:
        authorization = payload.authorization

        if authorization.to.lower() != requirements.pay_to.lower():
            raise RequirementsMismatch(
                message="Authorization recipient does not match payTo",
                details={"expected": requirements.pay_to, "received": authorization.to},
            )

        if int(authorization.value) != int(requirements.amount):
            raise AmountMismatch(
                details={"expected": requirements.amount, "received": authorization.value},
            )

        timestamp = int(now.timestamp())
        valid_after = int(authorization.valid_after)
        valid_before = int(authorization.valid_before)
        if not valid_after <= timestamp <= valid_before:
            raise ExpiredWindow(
                details={
                    "validAfter": valid_after,
                    "validBefore": valid_before,
                    "now": timestamp,
                },
            )

        signature = _signature_bytes(payload.signature)
        typed_data = build_transfer_authorization(
            requirements,
            authorization.model_dump(by_alias=True),
        )

        try:
            signable = encode_typed_data(full_message=typed_data)
            recovered = Account.recover_message(signable, signature=signature)
        except (ValueError, BadSignature, SignatureValidationError) as e:
            raise SignatureInvalid(message=f"Signature could not be recovered: {e}")

        if recovered.lower() != authorization.from_.lower():
            raise SignatureInvalid(
                details={"claimed": authorization.from_, "recovered": recovered},
            )

        return VerifiedAuthorization(
            payer=to_checksum_address(authorization.from_),
            nonce=authorization.nonce.lower(),
            network=requirements.network,
            asset=requirements.asset,
            amount_minor=int(authorization.value),
        )

    def _verify_svm(
        self,
        requirements: PaymentRequirements,
        payload: ExactSvmPayload,
    ) -> VerifiedAuthorization:
        transaction = _decode_transaction(payload.transaction)
        message = transaction.message
        account_keys = list(message.account_keys)
        instructions = list(message.instructions)

        required_signatures = message.header.num_required_signatures
        if len(transaction.signatures) != required_signatures:
            raise MalformedInstructions(
                message="Signature count does not match the required signers",
                details={"required": required_signatures, "received": len(transaction.signatures)},
            )

        if len(instructions) != 3:
            raise MalformedInstructions(
                message="Expected compute limit, compute price and transferChecked instructions",
                details={"instruction_count": len(instructions)},
            )

        limit_ix, price_ix, transfer_ix = instructions

        if _program_of(limit_ix, account_keys) != COMPUTE_BUDGET_PROGRAM_ID or not (
            len(limit_ix.data) == 5 and limit_ix.data[0] == SET_COMPUTE_UNIT_LIMIT
        ):
            raise MalformedInstructions(message="First instruction must set the compute unit limit")

        if _program_of(price_ix, account_keys) != COMPUTE_BUDGET_PROGRAM_ID or not (
            len(price_ix.data) == 9 and price_ix.data[0] == SET_COMPUTE_UNIT_PRICE
        ):
            raise MalformedInstructions(message="Second instruction must set the compute unit price")

        unit_price = int.from_bytes(bytes(price_ix.data[1:9]), "little")
        if unit_price > self.max_compute_unit_price:
            raise MalformedInstructions(
                message="Compute unit price exceeds the allowed maximum",
                details={"price": unit_price, "max": self.max_compute_unit_price},
            )

        token_program = _program_of(transfer_ix, account_keys)
        if token_program not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            raise MalformedInstructions(message="Third instruction must be a token program call")

        data = bytes(transfer_ix.data)
        if len(data) != 10 or data[0] != TRANSFER_CHECKED:
            raise MalformedInstructions(message="Third instruction must be transferChecked")

        account_indexes = list(transfer_ix.accounts)
        if len(account_indexes) < 4 or max(account_indexes[:4]) >= len(account_keys):
            raise MalformedInstructions(message="transferChecked is missing accounts")

        source, mint, destination, authority = (account_keys[i] for i in account_indexes[:4])
        amount = int.from_bytes(data[1:9], "little")
        decimals = data[9]

        expected_mint = Pubkey.from_string(requirements.asset)
        if mint != expected_mint:
            raise MalformedInstructions(
                message="transferChecked mint does not match the asset",
                details={"expected": requirements.asset, "received": str(mint)},
            )

        extra = requirements.extra or {}
        if "decimals" in extra and decimals != int(extra["decimals"]):
            raise MalformedInstructions(
                message="transferChecked decimals do not match the asset",
                details={"expected": extra["decimals"], "received": decimals},
            )

        expected_destination = associated_token_address(
            Pubkey.from_string(requirements.pay_to),
            expected_mint,
            token_program,
        )
        if destination != expected_destination:
            raise RequirementsMismatch(
                message="transferChecked destination is not the payTo token account",
                details={"expected": str(expected_destination), "received": str(destination)},
            )

        if amount != int(requirements.amount):
            raise AmountMismatch(
                details={"expected": requirements.amount, "received": str(amount)},
            )

        fee_payer = account_keys[0]
        if extra.get("feePayer"):
            if fee_payer != Pubkey.from_string(extra["feePayer"]):
                raise MalformedInstructions(message="Fee payer does not match the facilitator")
            if authority == fee_payer:
                raise MalformedInstructions(message="Fee payer must not authorize the transfer")

        signer_index = account_keys.index(authority)
        if signer_index >= message.header.num_required_signatures:
            raise SignatureInvalid(message="Transfer authority is not a required signer")

        signature = transaction.signatures[signer_index]
        if not signature.verify(authority, to_bytes_versioned(message)):
            raise SignatureInvalid(details={"claimed": str(authority)})

        return VerifiedAuthorization(
            payer=str(authority),
            nonce=str(signature),
            network=requirements.network,
            asset=requirements.asset,
            amount_minor=amount,
        )


def extract_nonce(proof: SettleProof) -> Optional[str]:
    """Best-effort replay key of a proof, without verifying it.

    Returns the same value ``verify`` would report as the nonce, or None when
    the payload is too malformed to tell.
    """
    if proof.is_evm:
        return proof.payload.authorization.nonce.lower()

    try:
        transaction = _decode_transaction(proof.payload.transaction)
    except MalformedInstructions:
        return None

    instructions = list(transaction.message.instructions)
    if not instructions:
        return None
    accounts = list(instructions[-1].accounts)
    if len(accounts) < 4 or accounts[3] >= len(transaction.signatures):
        return None
    return str(transaction.signatures[accounts[3]])


def _nonce_bytes(nonce: str) -> bytes:
    try:
        value = bytes.fromhex(nonce[2:] if nonce.startswith("0x") else nonce)
    except ValueError:
        raise SignatureInvalid(message="Nonce is not hex encoded")
    if len(value) != 32:
        raise SignatureInvalid(message="Nonce must be 32 bytes")
    return value


def _signature_bytes(signature: str) -> bytes:
    try:
        value = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    except ValueError:
        raise SignatureInvalid(message="Signature is not hex encoded")
    if len(value) != 65:
        raise SignatureInvalid(message="Signature must be 65 bytes")
    return value


def _decode_transaction(encoded: str) -> VersionedTransaction:
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedInstructions(message="Transaction is not valid base64")
    try:
        return VersionedTransaction.from_bytes(raw)
    except Exception as e:
        # solders surfaces bincode failures under several exception types
        raise MalformedInstructions(message=f"Transaction could not be decoded: {e}")


def _program_of(instruction: Any, account_keys: list[Pubkey]) -> Pubkey:
    index = instruction.program_id_index
    if index >= len(account_keys):
        raise MalformedInstructions(message="Instruction references an unknown program")
    return account_keys[index]
