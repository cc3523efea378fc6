"""Settlement schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:01

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enum types
    payer_chain = postgresql.ENUM("base", "solana", name="payer_chain")
    payer_chain.create(op.get_bind(), checkfirst=True)

    payment_intent_status = postgresql.ENUM(
        "awaiting_payment",
        "pending",
        "source_settled",
        "base_settling",
        "base_settled",
        "verification_failed",
        "expired",
        name="payment_intent_status",
    )
    payment_intent_status.create(op.get_bind(), checkfirst=True)

    # Create payment_intents table
    op.create_table(
        "payment_intents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_recipient", sa.String(128), nullable=False),
        sa.Column("recipient_input", sa.String(320), nullable=False),
        sa.Column("sending_amount_minor", sa.BigInteger, nullable=False),
        sa.Column("fee_minor", sa.BigInteger, nullable=False),
        sa.Column("receiving_amount_minor", sa.BigInteger, nullable=False),
        sa.Column("asset_decimals", sa.Integer, nullable=False),
        sa.Column(
            "payer_chain",
            postgresql.ENUM(name="payer_chain", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            postgresql.ENUM(name="payment_intent_status", create_type=False),
            nullable=False,
            server_default="awaiting_payment",
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("in_flight", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_requirements", postgresql.JSONB, nullable=False),
        sa.Column("payer_address", sa.String(128), nullable=True),
        sa.Column("proof_nonce", sa.String(128), nullable=True),
        sa.Column("source_settlement", postgresql.JSONB, nullable=True),
        sa.Column("base_settlement", postgresql.JSONB, nullable=True),
        sa.Column("failure_code", sa.String(64), nullable=True),
        sa.Column("failure_message", sa.Text, nullable=True),
        sa.Column("needs_attention", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("attention_reason", sa.Text, nullable=True),
        sa.Column("payout_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_payment_intents_merchant_recipient", "payment_intents", ["merchant_recipient"]
    )
    op.create_index("ix_payment_intents_status", "payment_intents", ["status"])
    op.create_index("ix_payment_intents_expires_at", "payment_intents", ["expires_at"])
    op.create_index("ix_payment_intents_needs_attention", "payment_intents", ["needs_attention"])

    # Create consumed_nonces table
    op.create_table(
        "consumed_nonces",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("asset", sa.String(128), nullable=False),
        sa.Column("network", sa.String(128), nullable=False),
        sa.Column("nonce", sa.String(128), nullable=False),
        sa.Column("intent_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "consumed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("asset", "network", "nonce", name="uq_consumed_nonce"),
    )
    op.create_index("ix_consumed_nonces_intent_id", "consumed_nonces", ["intent_id"])

    # Create recipient_aliases table
    op.create_table(
        "recipient_aliases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table("recipient_aliases")
    op.drop_table("consumed_nonces")
    op.drop_table("payment_intents")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS payment_intent_status")
    op.execute("DROP TYPE IF EXISTS payer_chain")
