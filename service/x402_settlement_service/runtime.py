"""Process-wide settlement components and their lifecycle."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from x402_settlement_service.core.config import Settings
from x402_settlement_service.db.types import utc_now
from x402_settlement_service.services.chain_adapters import ChainAdapters
from x402_settlement_service.services.intent_store import IntentStore
from x402_settlement_service.services.nonce_registry import NonceRegistry
from x402_settlement_service.services.orchestrator import SettlementOrchestrator
from x402_settlement_service.services.reaper import ExpiryReaper
from x402_settlement_service.services.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class SettlementRuntime:
    """Explicit handles to the stores and workers one process runs."""

    settings: Settings
    store: IntentStore
    nonces: NonceRegistry
    adapters: ChainAdapters
    orchestrator: SettlementOrchestrator
    reaper: ExpiryReaper

    async def start(self) -> None:
        """Start the reaper and pick up payouts a previous process left behind."""
        self.reaper.start()
        await self.orchestrator.resume_payouts()
        logger.info("Settlement runtime started")

    async def stop(self) -> None:
        await self.reaper.stop()
        await self.orchestrator.close()
        await self.adapters.aclose()
        logger.info("Settlement runtime stopped")


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    adapters: Optional[ChainAdapters] = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    auto_payout: bool = True,
) -> SettlementRuntime:
    """Wire the settlement components together.

    Args:
        settings: Application settings
        session_factory: Session factory bound to the intent database
        adapters: Chain adapters, facilitator-backed ones by default
        clock: Source of the current time
        sleep: Sleep coroutine for retries and polling
        auto_payout: Schedule payouts as soon as the source chain settles

    Returns:
        SettlementRuntime
    """
    store = IntentStore(session_factory, settings, clock=clock)
    nonces = NonceRegistry(session_factory)
    adapters = adapters or ChainAdapters.from_settings(settings)
    verifier = SignatureVerifier(max_compute_unit_price=settings.SOLANA_MAX_COMPUTE_UNIT_PRICE)

    orchestrator = SettlementOrchestrator(
        store=store,
        nonces=nonces,
        verifier=verifier,
        adapters=adapters,
        settings=settings,
        clock=clock,
        sleep=sleep,
        auto_payout=auto_payout,
    )
    reaper = ExpiryReaper(
        store,
        interval_seconds=settings.REAPER_INTERVAL_SECONDS,
        batch_size=settings.REAPER_BATCH_SIZE,
        clock=clock,
    )

    return SettlementRuntime(
        settings=settings,
        store=store,
        nonces=nonces,
        adapters=adapters,
        orchestrator=orchestrator,
        reaper=reaper,
    )
