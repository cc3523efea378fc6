"""Test configuration and fixtures."""

import asyncio
import base64
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_typed_data
from httpx import ASGITransport, AsyncClient
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from x402_settlement_service.core.config import Settings
from x402_settlement_service.core.errors import SettlementError
from x402_settlement_service.db.session import Base
from x402_settlement_service.main import create_app
from x402_settlement_service.middleware.auth import hash_api_key
from x402_settlement_service.models.payment_intent import PayerChain
from x402_settlement_service.runtime import SettlementRuntime, build_runtime
from x402_settlement_service.schemas.payment_intent import CreatePaymentIntentRequest
from x402_settlement_service.services.chain_adapters import ChainAdapters, SettlementReceipt
from x402_settlement_service.services.signature_verifier import (
    COMPUTE_BUDGET_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    associated_token_address,
)

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

PAYER = Account.from_key("0x" + "11" * 32)
MERCHANT = Account.from_key("0x" + "22" * 32)
TREASURY = Account.from_key("0x" + "33" * 32)
STRANGER = Account.from_key("0x" + "44" * 32)

SOLANA_PAYER = Keypair.from_seed(bytes([7] * 32))
SOLANA_FEE_PAYER = Keypair.from_seed(bytes([5] * 32))
SOLANA_TREASURY = Keypair.from_seed(bytes([9] * 32))

OPERATOR_KEY = "op_test_key_1234567890"
OPERATOR_KEY_HASH = hash_api_key(OPERATOR_KEY)

TRANSFER_WITH_AUTHORIZATION = {
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


class FakeClock:
    """Settable clock shared by the store, orchestrator and reaper."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChainAdapter:
    """Chain adapter that records calls and replays scripted failures."""

    def __init__(self, chain: str, network: str) -> None:
        self.chain = chain
        self.network = network
        self.settle_errors: list[Exception] = []
        self.transfer_errors: list[SettlementError] = []
        self.confirmations: list[bool] = []
        self.settled: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []
        self.confirmation_checks: list[str] = []

    async def settle(self, requirements, proof) -> SettlementReceipt:
        if self.settle_errors:
            raise self.settle_errors.pop(0)
        self.settled.append({"requirements": requirements, "proof": proof})
        return SettlementReceipt(
            chain=self.chain,
            network=self.network,
            transaction=f"source-{len(self.settled)}",
        )

    async def transfer(self, recipient: str, amount_minor: int, reference: str) -> SettlementReceipt:
        if self.transfer_errors:
            raise self.transfer_errors.pop(0)
        self.transfers.append(
            {"recipient": recipient, "amount_minor": amount_minor, "reference": reference}
        )
        return SettlementReceipt(
            chain=self.chain,
            network=self.network,
            transaction=f"payout-{reference}",
        )

    async def is_confirmed(self, transaction: str) -> bool:
        self.confirmation_checks.append(transaction)
        if self.confirmations:
            return self.confirmations.pop(0)
        return True


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "BASE_SETTLEMENT_ADDRESS": TREASURY.address,
        "SOLANA_SETTLEMENT_ADDRESS": str(SOLANA_TREASURY.pubkey()),
        "SOLANA_FEE_PAYER": str(SOLANA_FEE_PAYER.pubkey()),
        "OPERATOR_API_KEY_HASHES": [OPERATOR_KEY_HASH],
        "PAYOUT_MAX_ATTEMPTS": 3,
        "PAYOUT_BASE_DELAY_SECONDS": 0.0,
        "CONFIRMATION_POLL_INTERVAL_SECONDS": 0.0,
        "CONFIRMATION_MAX_POLLS": 3,
        "SHUTDOWN_GRACE_SECONDS": 1.0,
        "REAPER_INTERVAL_SECONDS": 0.01,
    }
    values.update(overrides)
    return Settings(**values)


def encode_proof(document: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")


def evm_proof_document(
    requirements: dict[str, Any],
    account=PAYER,
    *,
    now: datetime = NOW,
    value: Optional[str] = None,
    to: Optional[str] = None,
    valid_after: Optional[int] = None,
    valid_before: Optional[int] = None,
    nonce: Optional[str] = None,
    chain_id: Optional[int] = None,
    accepted: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build an x402 v2 EVM payload signed the way a wallet signs it."""
    timestamp = int(now.timestamp())
    authorization = {
        "from": account.address,
        "to": to or requirements["payTo"],
        "value": value or requirements["amount"],
        "validAfter": str(valid_after if valid_after is not None else timestamp - 60),
        "validBefore": str(valid_before if valid_before is not None else timestamp + 300),
        "nonce": nonce or "0x" + os.urandom(32).hex(),
    }
    typed_data = {
        "types": TRANSFER_WITH_AUTHORIZATION,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": requirements["extra"]["name"],
            "version": requirements["extra"]["version"],
            "chainId": chain_id or int(requirements["network"].split(":")[1]),
            "verifyingContract": requirements["asset"],
        },
        "message": {
            "from": authorization["from"],
            "to": authorization["to"],
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": bytes.fromhex(authorization["nonce"][2:]),
        },
    }
    signed = account.sign_message(encode_typed_data(full_message=typed_data))

    return {
        "x402Version": 2,
        "resource": {"url": "https://merchant.example/checkout", "mimeType": "application/json"},
        "accepted": accepted or dict(requirements),
        "payload": {
            "signature": "0x" + bytes(signed.signature).hex(),
            "authorization": authorization,
        },
    }


def build_svm_transaction(
    requirements: dict[str, Any],
    payer: Keypair = SOLANA_PAYER,
    *,
    fee_payer: Optional[Keypair] = SOLANA_FEE_PAYER,
    amount: Optional[int] = None,
    pay_to: Optional[Pubkey] = None,
    unit_price: int = 1_000,
    decimals: Optional[int] = None,
    extra_instructions: Optional[list[Instruction]] = None,
    sign_with: Optional[Keypair] = None,
) -> str:
    """Build a partially signed exact-scheme Solana transfer, base64 encoded."""
    mint = Pubkey.from_string(requirements["asset"])
    owner = pay_to or Pubkey.from_string(requirements["payTo"])
    source = associated_token_address(payer.pubkey(), mint, TOKEN_PROGRAM_ID)
    destination = associated_token_address(owner, mint, TOKEN_PROGRAM_ID)

    amount = int(requirements["amount"]) if amount is None else amount
    decimals = requirements["extra"]["decimals"] if decimals is None else decimals

    instructions = [
        Instruction(COMPUTE_BUDGET_PROGRAM_ID, bytes([2]) + (200_000).to_bytes(4, "little"), []),
        Instruction(COMPUTE_BUDGET_PROGRAM_ID, bytes([3]) + unit_price.to_bytes(8, "little"), []),
        Instruction(
            TOKEN_PROGRAM_ID,
            bytes([12]) + amount.to_bytes(8, "little") + bytes([decimals]),
            [
                AccountMeta(source, is_signer=False, is_writable=True),
                AccountMeta(mint, is_signer=False, is_writable=False),
                AccountMeta(destination, is_signer=False, is_writable=True),
                AccountMeta(payer.pubkey(), is_signer=True, is_writable=False),
            ],
        ),
    ]
    instructions.extend(extra_instructions or [])

    message = MessageV0.try_compile(
        (fee_payer or payer).pubkey(), instructions, [], Hash.default()
    )
    keys = list(message.account_keys)
    signatures = [Signature.default()] * message.header.num_required_signatures
    signer = sign_with or payer
    signatures[keys.index(payer.pubkey())] = signer.sign_message(to_bytes_versioned(message))

    transaction = VersionedTransaction.populate(message, signatures)
    return base64.b64encode(bytes(transaction)).decode("ascii")


def svm_proof_document(requirements: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
    accepted = kwargs.pop("accepted", None)
    return {
        "x402Version": 2,
        "resource": {"url": "https://merchant.example/checkout"},
        "accepted": accepted or dict(requirements),
        "payload": {"transaction": build_svm_transaction(requirements, **kwargs)},
    }


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def base_adapter(settings: Settings) -> FakeChainAdapter:
    return FakeChainAdapter("base", settings.BASE_NETWORK)


@pytest.fixture
def solana_adapter(settings: Settings) -> FakeChainAdapter:
    return FakeChainAdapter("solana", settings.SOLANA_NETWORK)


@pytest_asyncio.fixture
async def runtime(
    settings: Settings,
    session_factory,
    clock: FakeClock,
    base_adapter: FakeChainAdapter,
    solana_adapter: FakeChainAdapter,
) -> AsyncGenerator[SettlementRuntime, None]:
    runtime = build_runtime(
        settings,
        session_factory,
        adapters=ChainAdapters(base=base_adapter, solana=solana_adapter),
        clock=clock,
        sleep=no_sleep,
    )
    yield runtime
    await runtime.reaper.stop()
    await runtime.orchestrator.wait_for_payouts(timeout=5)


@pytest_asyncio.fixture
async def manual_runtime(
    settings: Settings,
    session_factory,
    clock: FakeClock,
    base_adapter: FakeChainAdapter,
    solana_adapter: FakeChainAdapter,
) -> AsyncGenerator[SettlementRuntime, None]:
    """Runtime that leaves payouts to be scheduled explicitly."""
    runtime = build_runtime(
        settings,
        session_factory,
        adapters=ChainAdapters(base=base_adapter, solana=solana_adapter),
        clock=clock,
        sleep=no_sleep,
        auto_payout=False,
    )
    yield runtime
    await runtime.orchestrator.wait_for_payouts(timeout=5)


@pytest_asyncio.fixture
async def client(runtime: SettlementRuntime) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""
    transport = ASGITransport(app=create_app(runtime))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def base_intent(runtime: SettlementRuntime):
    return await runtime.store.create(
        CreatePaymentIntentRequest(
            recipient=MERCHANT.address,
            amount="10",
            payer_chain=PayerChain.BASE,
        )
    )


@pytest_asyncio.fixture
async def solana_intent(runtime: SettlementRuntime):
    return await runtime.store.create(
        CreatePaymentIntentRequest(
            recipient=MERCHANT.address,
            amount="25.5",
            payer_chain=PayerChain.SOLANA,
        )
    )
