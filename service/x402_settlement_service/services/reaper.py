"""Background expiry of unpaid intents."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from x402_settlement_service.core.errors import InvalidTransition
from x402_settlement_service.db.types import utc_now
from x402_settlement_service.models.payment_intent import PaymentIntentStatus
from x402_settlement_service.services.intent_store import IntentStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: int = 0
    skipped: int = 0


class ExpiryReaper:
    """Periodically moves intents past ``expires_at`` to EXPIRED.

    Each expiry goes through the store's guarded transition, so an intent that
    a proof submission claimed first (or that another reaper already expired)
    is skipped rather than overwritten.
    """

    def __init__(
        self,
        store: IntentStore,
        interval_seconds: float = 5.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if not self._running:
            self._running = True
            self._task = asyncio.create_task(self._loop(), name="expiry-reaper")
            logger.info("Expiry reaper started")

    async def stop(self) -> None:
        if self._running:
            self._running = False
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None
            logger.info("Expiry reaper stopped")

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepResult:
        """Expire one batch of overdue intents.

        Safe to run repeatedly and from several processes at once.
        """
        now = now or self.clock()
        result = SweepResult()

        for intent in await self.store.list_expirable(now, self.batch_size):
            try:
                await self.store.transition(intent.id, PaymentIntentStatus.EXPIRED)
            except InvalidTransition:
                result.skipped += 1
            else:
                result.expired += 1

        if result.expired or result.skipped:
            logger.info(f"Expiry sweep: {result.expired} expired, {result.skipped} skipped")
        return result

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}")
                await asyncio.sleep(self.interval_seconds)
