"""Recipient resolution service."""

import re

from eth_utils import is_address, to_checksum_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from x402_settlement_service.core.errors import InvalidRecipient
from x402_settlement_service.models import RecipientAlias

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


async def resolve_recipient(
    db: AsyncSession,
    recipient: str,
    network: str,
) -> str:
    """Resolve a merchant recipient to a chain-qualified payout address.

    Args:
        db: Database session
        recipient: EVM address or registered email
        network: CAIP-2 network the payout settles on

    Returns:
        CAIP-10 account id (``<network>:<checksum address>``)

    Raises:
        InvalidRecipient: If the recipient cannot be resolved
    """
    value = recipient.strip()

    if value.startswith("0x"):
        return _qualify(network, _checksum(value))

    if EMAIL_PATTERN.match(value):
        address = await _resolve_by_email(db, value.lower())
        return _qualify(network, _checksum(address))

    raise InvalidRecipient(
        message="Recipient must be a Base address or a registered email",
        details={"recipient": value},
    )


async def _resolve_by_email(db: AsyncSession, email: str) -> str:
    """Resolve recipient by email alias."""
    result = await db.execute(
        select(RecipientAlias).where(RecipientAlias.email == email)
    )
    alias = result.scalar_one_or_none()

    if alias is None:
        raise InvalidRecipient(
            message=f"No payout address registered for {email}",
            details={"recipient": email},
        )

    return alias.address


def _checksum(address: str) -> str:
    if not is_address(address):
        raise InvalidRecipient(
            message="Invalid EVM address",
            details={"recipient": address},
        )
    return to_checksum_address(address)


def _qualify(network: str, address: str) -> str:
    return f"{network}:{address}"
