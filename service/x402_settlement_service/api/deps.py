"""Shared API dependencies."""

from fastapi import Request

from x402_settlement_service.runtime import SettlementRuntime


def get_runtime(request: Request) -> SettlementRuntime:
    """Settlement runtime attached to the running app."""
    return request.app.state.runtime
