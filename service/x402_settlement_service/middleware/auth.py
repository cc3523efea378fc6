"""Operator API key authentication."""

import logging
from typing import Iterable, Optional

import argon2
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from x402_settlement_service.core.errors import Unauthorized

logger = logging.getLogger(__name__)

# Password hasher for API keys
ph = argon2.PasswordHasher()

# HTTP Bearer security scheme; a missing header is reported as INVALID_API_KEY
security = HTTPBearer(auto_error=False)


def hash_api_key(api_key: str) -> str:
    """Hash an API key using Argon2."""
    return ph.hash(api_key)


def verify_api_key(api_key: str, key_hash: str) -> bool:
    """Verify an API key against its hash."""
    try:
        ph.verify(key_hash, api_key)
        return True
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        logger.error("Configured operator key hash is not a valid argon2 hash")
        return False


def is_operator_key(raw_key: str, key_hashes: Iterable[str]) -> bool:
    return any(verify_api_key(raw_key, key_hash) for key_hash in key_hashes)


async def require_operator(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Dependency that admits only configured operator keys.

    Raises:
        Unauthorized: If the bearer key is missing or unknown
    """
    if credentials is None:
        raise Unauthorized(message="Operator API key required")

    settings = request.app.state.runtime.settings
    if not is_operator_key(credentials.credentials, settings.OPERATOR_API_KEY_HASHES):
        raise Unauthorized()
