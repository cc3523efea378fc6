"""Common schemas used across the API."""

from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""

    error_code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
