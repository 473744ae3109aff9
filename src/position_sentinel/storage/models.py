"""SQLAlchemy models for persistent storage.

This module defines the database schema for users and their wallets,
monitored contracts and their scan cursors, the position ownership index,
latest-value position snapshots, and alert state plus the alert audit log.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ContractKind(str, Enum):
    """What a monitored contract registers."""

    LOAN_NFT = "LOAN_NFT"
    LP_NFT = "LP_NFT"
    LP_ALM = "LP_ALM"
    VAULT_FACTORY = "VAULT_FACTORY"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserModel(Base):
    """A notification recipient."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_id: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    discord_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    accepts_dm: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserWalletModel(Base):
    """A wallet address watched on behalf of a user on one chain."""

    __tablename__ = "user_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    chain_id: Mapped[str] = mapped_column(String(16), nullable=False)
    address_lower: Mapped[str] = mapped_column(String(42), nullable=False)
    address_eip55: Mapped[str] = mapped_column(String(42), nullable=False)
    label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "chain_id", "address_lower", name="uq_user_wallets_user_chain_address"),
        Index("idx_user_wallets_chain_address", "chain_id", "address_lower"),
    )


class MonitoredContractModel(Base):
    """A registry contract (loan NFT, LP NFT, ALM vault or vault factory)."""

    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[str] = mapped_column(String(16), nullable=False)
    address_lower: Mapped[str] = mapped_column(String(42), nullable=False)
    address_eip55: Mapped[str] = mapped_column(String(42), nullable=False)
    protocol: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    default_start_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # Auxiliary addresses/parameters (trove manager, price feed, ...) as JSON.
    config_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("chain_id", "address_lower", name="uq_contracts_chain_address"),
        Index("idx_contracts_kind", "kind"),
    )


class ScanCursorModel(Base):
    """Resumable log-scan position for one contract."""

    __tablename__ = "contract_scan_cursors"

    contract_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_scanned_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PositionTokenModel(Base):
    """Current owner of a position NFT, maintained from Transfer events."""

    __tablename__ = "position_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[str] = mapped_column(String(80), nullable=False)
    owner_lower: Mapped[str] = mapped_column(String(42), nullable=False)
    is_burned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # (block, log index) of the event that produced this row; older events never overwrite it.
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("contract_id", "token_id", name="uq_position_tokens_contract_token"),
        Index("idx_position_tokens_owner", "owner_lower"),
    )


class LoanSnapshotModel(Base):
    """Latest computed state of one loan position."""

    __tablename__ = "loan_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[str] = mapped_column(String(80), nullable=False)
    chain_id: Mapped[str] = mapped_column(String(16), nullable=False)
    protocol: Mapped[str] = mapped_column(String(64), nullable=False)

    collateral: Mapped[float | None] = mapped_column(Float, nullable=True)
    debt: Mapped[float | None] = mapped_column(Float, nullable=True)
    interest_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    liquidation_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    ltv_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    liquidation_buffer_frac: Mapped[float | None] = mapped_column(Float, nullable=True)
    debt_ahead: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_debt: Mapped[float | None] = mapped_column(Float, nullable=True)
    debt_ahead_frac: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    liquidation_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    liquidation_label: Mapped[str | None] = mapped_column(String(200), nullable=True)
    redemption_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    redemption_label: Mapped[str | None] = mapped_column(String(200), nullable=True)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    snapshot_run_id: Mapped[str] = mapped_column(String(36), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_loan_snapshots_identity"),
        Index("idx_loan_snapshots_snapshot_at", "snapshot_at"),
    )


class LpSnapshotModel(Base):
    """Latest computed state of one liquidity position."""

    __tablename__ = "lp_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[str] = mapped_column(String(80), nullable=False)
    chain_id: Mapped[str] = mapped_column(String(16), nullable=False)
    protocol: Mapped[str] = mapped_column(String(64), nullable=False)

    pool_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token0: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token1: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token0_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    token1_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fee: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_lower: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tick_upper: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_tick: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # uint128 liquidity does not fit a BIGINT; stored as a decimal string.
    liquidity: Mapped[str | None] = mapped_column(String(80), nullable=True)
    amount0: Mapped[float | None] = mapped_column(Float, nullable=True)
    amount1: Mapped[float | None] = mapped_column(Float, nullable=True)
    fees0: Mapped[float | None] = mapped_column(Float, nullable=True)
    fees1: Mapped[float | None] = mapped_column(Float, nullable=True)
    pool_liquidity_share: Mapped[float | None] = mapped_column(Float, nullable=True)

    range_status: Mapped[str] = mapped_column(String(16), nullable=False)
    range_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    range_label: Mapped[str | None] = mapped_column(String(200), nullable=True)
    position_frac: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_frac: Mapped[float | None] = mapped_column(Float, nullable=True)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    snapshot_run_id: Mapped[str] = mapped_column(String(36), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_lp_snapshots_identity"),
        Index("idx_lp_snapshots_snapshot_at", "snapshot_at"),
    )


class AlertStateModel(Base):
    """Open/closed alert state for one identity tuple."""

    __tablename__ = "alert_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[str] = mapped_column(String(80), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Always NULL while inactive.
    signature: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "wallet_id", "contract_id", "token_id", name="uq_alert_state_identity"),
    )


class AlertEventModel(Base):
    """Append-only audit record of an alert transition."""

    __tablename__ = "alert_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contract_id: Mapped[int] = mapped_column(Integer, nullable=False)
    token_id: Mapped[str] = mapped_column(String(80), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False)
    phase: Mapped[str] = mapped_column(String(10), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_alert_log_identity", "user_id", "wallet_id", "contract_id", "token_id"),
        Index("idx_alert_log_created_at", "created_at"),
    )
