"""Initial schema: registry, cursors, ownership index, snapshots and alerts.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _identity_columns() -> list[sa.Column]:
    return [
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("wallet_id", sa.Integer(), nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("token_id", sa.String(80), nullable=False),
    ]


def upgrade() -> None:
    # Users and wallets
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("discord_id", sa.String(32), nullable=True),
        sa.Column("discord_name", sa.String(100), nullable=True),
        sa.Column("accepts_dm", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("discord_id"),
    )
    op.create_table(
        "user_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.String(16), nullable=False),
        sa.Column("address_lower", sa.String(42), nullable=False),
        sa.Column("address_eip55", sa.String(42), nullable=False),
        sa.Column("label", sa.String(100), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "chain_id", "address_lower", name="uq_user_wallets_user_chain_address"),
    )
    op.create_index("idx_user_wallets_chain_address", "user_wallets", ["chain_id", "address_lower"])

    # Contract registry and scan cursors
    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.String(16), nullable=False),
        sa.Column("address_lower", sa.String(42), nullable=False),
        sa.Column("address_eip55", sa.String(42), nullable=False),
        sa.Column("protocol", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("default_start_block", sa.BigInteger(), nullable=True),
        sa.Column("config_json", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "address_lower", name="uq_contracts_chain_address"),
    )
    op.create_index("idx_contracts_kind", "contracts", ["kind"])

    op.create_table(
        "contract_scan_cursors",
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("start_block", sa.BigInteger(), nullable=False),
        sa.Column("last_scanned_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("contract_id"),
    )

    # Ownership index
    op.create_table(
        "position_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("token_id", sa.String(80), nullable=False),
        sa.Column("owner_lower", sa.String(42), nullable=False),
        sa.Column("is_burned", sa.Boolean(), nullable=False),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        sa.Column("last_log_index", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_id", "token_id", name="uq_position_tokens_contract_token"),
    )
    op.create_index("idx_position_tokens_owner", "position_tokens", ["owner_lower"])

    # Snapshots
    op.create_table(
        "loan_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        *_identity_columns(),
        sa.Column("chain_id", sa.String(16), nullable=False),
        sa.Column("protocol", sa.String(64), nullable=False),
        sa.Column("collateral", sa.Float(), nullable=True),
        sa.Column("debt", sa.Float(), nullable=True),
        sa.Column("interest_rate", sa.Float(), nullable=True),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("liquidation_price", sa.Float(), nullable=True),
        sa.Column("ltv_pct", sa.Float(), nullable=True),
        sa.Column("liquidation_buffer_frac", sa.Float(), nullable=True),
        sa.Column("debt_ahead", sa.Float(), nullable=True),
        sa.Column("total_debt", sa.Float(), nullable=True),
        sa.Column("debt_ahead_frac", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("liquidation_tier", sa.String(16), nullable=False),
        sa.Column("liquidation_label", sa.String(200), nullable=True),
        sa.Column("redemption_tier", sa.String(16), nullable=False),
        sa.Column("redemption_label", sa.String(200), nullable=True),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snapshot_run_id", sa.String(36), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_loan_snapshots_identity"),
    )
    op.create_index("idx_loan_snapshots_snapshot_at", "loan_snapshots", ["snapshot_at"])

    op.create_table(
        "lp_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        *_identity_columns(),
        sa.Column("chain_id", sa.String(16), nullable=False),
        sa.Column("protocol", sa.String(64), nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=True),
        sa.Column("token0", sa.String(42), nullable=True),
        sa.Column("token1", sa.String(42), nullable=True),
        sa.Column("token0_symbol", sa.String(32), nullable=True),
        sa.Column("token1_symbol", sa.String(32), nullable=True),
        sa.Column("fee", sa.Integer(), nullable=True),
        sa.Column("tick_lower", sa.Integer(), nullable=True),
        sa.Column("tick_upper", sa.Integer(), nullable=True),
        sa.Column("current_tick", sa.Integer(), nullable=True),
        sa.Column("liquidity", sa.String(80), nullable=True),
        sa.Column("amount0", sa.Float(), nullable=True),
        sa.Column("amount1", sa.Float(), nullable=True),
        sa.Column("fees0", sa.Float(), nullable=True),
        sa.Column("fees1", sa.Float(), nullable=True),
        sa.Column("pool_liquidity_share", sa.Float(), nullable=True),
        sa.Column("range_status", sa.String(16), nullable=False),
        sa.Column("range_tier", sa.String(16), nullable=False),
        sa.Column("range_label", sa.String(200), nullable=True),
        sa.Column("position_frac", sa.Float(), nullable=True),
        sa.Column("distance_frac", sa.Float(), nullable=True),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snapshot_run_id", sa.String(36), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_lp_snapshots_identity"),
    )
    op.create_index("idx_lp_snapshots_snapshot_at", "lp_snapshots", ["snapshot_at"])

    # Alert state and audit log
    op.create_table(
        "alert_state",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        *_identity_columns(),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("signature", sa.String(64), nullable=True),
        sa.Column("state_json", sa.Text(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_alert_state_identity"),
    )

    op.create_table(
        "alert_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        *_identity_columns(),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("phase", sa.String(10), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("signature", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_alert_log_identity", "alert_log", ["user_id", "wallet_id", "contract_id", "token_id"])
    op.create_index("idx_alert_log_created_at", "alert_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_alert_log_created_at", table_name="alert_log")
    op.drop_index("idx_alert_log_identity", table_name="alert_log")
    op.drop_table("alert_log")
    op.drop_table("alert_state")
    op.drop_index("idx_lp_snapshots_snapshot_at", table_name="lp_snapshots")
    op.drop_table("lp_snapshots")
    op.drop_index("idx_loan_snapshots_snapshot_at", table_name="loan_snapshots")
    op.drop_table("loan_snapshots")
    op.drop_index("idx_position_tokens_owner", table_name="position_tokens")
    op.drop_table("position_tokens")
    op.drop_table("contract_scan_cursors")
    op.drop_index("idx_contracts_kind", table_name="contracts")
    op.drop_table("contracts")
    op.drop_index("idx_user_wallets_chain_address", table_name="user_wallets")
    op.drop_table("user_wallets")
    op.drop_table("users")
