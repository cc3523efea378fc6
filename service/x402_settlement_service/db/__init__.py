"""Database module for SQLAlchemy session management."""

from x402_settlement_service.db.session import AsyncSessionLocal, Base, engine

__all__ = ["AsyncSessionLocal", "Base", "engine"]
