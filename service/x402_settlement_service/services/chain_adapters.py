"""Chain adapters: the narrow interface to on-chain settlement.

The service never talks to chain nodes directly. Each payer chain gets an
adapter that can settle a verified x402 authorization, send a payout transfer
and report confirmation. The shipped adapter delegates all of that to an x402
facilitator / treasury service over HTTP.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from x402_settlement_service.core.config import Settings
from x402_settlement_service.core.errors import AdapterUnavailable, SettlementRejected
from x402_settlement_service.models.payment_intent import PayerChain
from x402_settlement_service.schemas.proof import X402_VERSION, PaymentRequirements, SettleProof

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementReceipt:
    """Transaction an adapter submitted on a chain."""

    chain: str
    network: str
    transaction: str
    explorer_url: Optional[str] = None

    def to_record(self, settled_at: Optional[datetime] = None) -> dict[str, Any]:
        return {
            "chain": self.chain,
            "network": self.network,
            "transaction": self.transaction,
            "explorer_url": self.explorer_url,
            "settled_at": settled_at.isoformat() if settled_at else None,
        }


class ChainAdapter(Protocol):
    """Capability interface implemented once per chain."""

    chain: str
    network: str

    async def settle(
        self,
        requirements: PaymentRequirements,
        proof: SettleProof,
    ) -> SettlementReceipt:
        """Submit a verified authorization on the source chain."""
        ...

    async def transfer(
        self,
        recipient: str,
        amount_minor: int,
        reference: str,
    ) -> SettlementReceipt:
        """Send ``amount_minor`` of the chain's stablecoin to ``recipient``.

        ``reference`` is an idempotency key: resubmitting it must not pay twice.
        """
        ...

    async def is_confirmed(self, transaction: str) -> bool:
        """Whether ``transaction`` has reached finality."""
        ...


class FacilitatorChainAdapter:
    """ChainAdapter backed by an x402 facilitator HTTP API.

    Args:
        chain: Chain name (``base`` or ``solana``)
        network: CAIP-2 network served by this adapter
        asset: Stablecoin contract or mint used for transfers
        base_url: Facilitator base URL
        explorer_tx_url: Prefix for explorer links, empty to omit them
        timeout: Request timeout in seconds
        client: Optional pre-built client, mostly for tests
    """

    def __init__(
        self,
        chain: str,
        network: str,
        asset: str,
        base_url: str,
        explorer_tx_url: str = "",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.chain = chain
        self.network = network
        self.asset = asset
        self.explorer_tx_url = explorer_tx_url
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def settle(
        self,
        requirements: PaymentRequirements,
        proof: SettleProof,
    ) -> SettlementReceipt:
        data = await self._request(
            "POST",
            "/settle",
            json={
                "x402Version": X402_VERSION,
                "paymentPayload": proof.to_wire(),
                "paymentRequirements": requirements.to_wire(),
            },
        )
        receipt = self._receipt(data)
        logger.info(f"Settled on {self.network}: {receipt.transaction}")
        return receipt

    async def transfer(
        self,
        recipient: str,
        amount_minor: int,
        reference: str,
    ) -> SettlementReceipt:
        data = await self._request(
            "POST",
            "/transfer",
            json={
                "network": self.network,
                "asset": self.asset,
                "to": recipient,
                "amount": str(amount_minor),
                "reference": reference,
            },
            headers={"Idempotency-Key": reference},
        )
        receipt = self._receipt(data)
        logger.info(f"Transfer {reference} submitted on {self.network}: {receipt.transaction}")
        return receipt

    async def is_confirmed(self, transaction: str) -> bool:
        data = await self._request(
            "GET",
            f"/transactions/{transaction}",
            params={"network": self.network},
            not_found_ok=True,
        )
        if data is None:
            return False
        return data.get("status") == "confirmed" or data.get("confirmed") is True

    def explorer_url(self, transaction: str) -> Optional[str]:
        if not self.explorer_tx_url:
            return None
        return f"{self.explorer_tx_url}{transaction}"

    def _receipt(self, data: dict[str, Any]) -> SettlementReceipt:
        if not data.get("success"):
            raise SettlementRejected(
                message=data.get("errorReason") or SettlementRejected.default_message,
                details={"network": self.network},
            )

        transaction = data.get("transaction")
        if not transaction:
            raise AdapterUnavailable(
                message="Facilitator reported success without a transaction",
                details={"network": self.network},
            )

        return SettlementReceipt(
            chain=self.chain,
            network=data.get("network") or self.network,
            transaction=transaction,
            explorer_url=self.explorer_url(transaction),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        not_found_ok: bool = False,
    ) -> Optional[dict[str, Any]]:
        """Make a request to the facilitator.

        Raises:
            AdapterUnavailable: On transport errors, 5xx or unreadable bodies
            SettlementRejected: On other 4xx responses
        """
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                headers=headers,
            )
        except httpx.TransportError as e:
            raise AdapterUnavailable(
                message=f"Facilitator unreachable: {e.__class__.__name__}",
                details={"network": self.network},
            )

        if response.status_code == 404 and not_found_ok:
            return None

        if response.status_code >= 500:
            raise AdapterUnavailable(
                message=f"Facilitator returned {response.status_code}",
                details={"network": self.network},
            )

        try:
            data = response.json()
        except ValueError:
            raise AdapterUnavailable(
                message="Facilitator returned a non-JSON response",
                details={"network": self.network},
            )

        if response.status_code >= 400:
            reason = data.get("errorReason") if isinstance(data, dict) else None
            raise SettlementRejected(
                message=reason or f"Facilitator returned {response.status_code}",
                details={"network": self.network},
            )

        if not isinstance(data, dict):
            raise AdapterUnavailable(
                message="Facilitator returned an unexpected body",
                details={"network": self.network},
            )

        return data


class ChainAdapters:
    """Adapter registry keyed by payer chain. Payouts always go through Base."""

    def __init__(self, base: ChainAdapter, solana: ChainAdapter) -> None:
        self._adapters: dict[PayerChain, ChainAdapter] = {
            PayerChain.BASE: base,
            PayerChain.SOLANA: solana,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainAdapters":
        return cls(
            base=FacilitatorChainAdapter(
                chain=PayerChain.BASE.value,
                network=settings.BASE_NETWORK,
                asset=settings.BASE_USDC_ADDRESS,
                base_url=settings.FACILITATOR_URL,
                explorer_tx_url=settings.BASE_EXPLORER_TX_URL,
                timeout=settings.FACILITATOR_TIMEOUT_SECONDS,
            ),
            solana=FacilitatorChainAdapter(
                chain=PayerChain.SOLANA.value,
                network=settings.SOLANA_NETWORK,
                asset=settings.SOLANA_USDC_MINT,
                base_url=settings.FACILITATOR_URL,
                explorer_tx_url=settings.SOLANA_EXPLORER_TX_URL,
                timeout=settings.FACILITATOR_TIMEOUT_SECONDS,
            ),
        )

    def source_for(self, payer_chain: PayerChain) -> ChainAdapter:
        return self._adapters[payer_chain]

    @property
    def payout(self) -> ChainAdapter:
        return self._adapters[PayerChain.BASE]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()
