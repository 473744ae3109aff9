"""Repository pattern implementations for data access.

This module provides data access abstractions for users and wallets,
monitored contracts, scan cursors, the position ownership index,
position snapshots, and alert state/events.

Every write that other components rely on for idempotency is an
insert-or-update keyed by a unique constraint, executed with the
dialect-specific ``ON CONFLICT`` form of the bound engine.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from web3 import AsyncWeb3

from position_sentinel.storage.models import (
    AlertEventModel,
    AlertStateModel,
    ContractKind,
    LoanSnapshotModel,
    LpSnapshotModel,
    MonitoredContractModel,
    PositionTokenModel,
    ScanCursorModel,
    UserModel,
    UserWalletModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT for the session's engine."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


@dataclass(frozen=True)
class PositionIdentity:
    """The (user, wallet, contract, token) tuple that keys snapshots and alerts."""

    user_id: int
    wallet_id: int
    contract_id: int
    token_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "wallet_id": self.wallet_id,
            "contract_id": self.contract_id,
            "token_id": self.token_id,
        }


# ============================================================================
# Users and wallets
# ============================================================================


@dataclass
class UserDTO:
    """Data transfer object for users."""

    id: int
    discord_id: str | None
    discord_name: str | None
    accepts_dm: bool

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        return cls(
            id=model.id,
            discord_id=model.discord_id,
            discord_name=model.discord_name,
            accepts_dm=bool(model.accepts_dm),
        )


class UserRepository:
    """Repository for notification recipients."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: int) -> UserDTO | None:
        model = await self.session.get(UserModel, user_id)
        return UserDTO.from_model(model) if model else None

    async def create(
        self,
        *,
        discord_id: str | None,
        discord_name: str | None = None,
        accepts_dm: bool = True,
    ) -> UserDTO:
        model = UserModel(discord_id=discord_id, discord_name=discord_name, accepts_dm=accepts_dm)
        self.session.add(model)
        await self.session.flush()
        return UserDTO.from_model(model)

    async def set_accepts_dm(self, user_id: int, accepts_dm: bool) -> bool:
        """Flip the delivery opt-in flag.

        Returns:
            True if a user row was updated.
        """
        result = await self.session.execute(
            update(UserModel).where(UserModel.id == user_id).values(accepts_dm=accepts_dm)
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def list_heartbeat_recipients(self) -> list[UserDTO]:
        """Users reachable by DM that have at least one enabled wallet."""
        stmt = (
            select(UserModel)
            .where(UserModel.accepts_dm.is_(True))
            .where(UserModel.discord_id.is_not(None))
            .where(
                sa.exists().where(
                    (UserWalletModel.user_id == UserModel.id) & UserWalletModel.is_enabled.is_(True)
                )
            )
            .order_by(UserModel.id)
        )
        result = await self.session.execute(stmt)
        return [UserDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class UserWalletDTO:
    """Data transfer object for user wallets."""

    id: int
    user_id: int
    chain_id: str
    address_lower: str
    address_eip55: str
    label: str | None = None
    is_enabled: bool = True

    @classmethod
    def from_model(cls, model: UserWalletModel) -> UserWalletDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            chain_id=model.chain_id,
            address_lower=model.address_lower,
            address_eip55=model.address_eip55,
            label=model.label,
            is_enabled=bool(model.is_enabled),
        )


class WalletRepository:
    """Repository for user wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(
        self,
        *,
        user_id: int,
        chain_id: str,
        address: str,
        label: str | None = None,
    ) -> UserWalletDTO:
        model = UserWalletModel(
            user_id=user_id,
            chain_id=chain_id.upper(),
            address_lower=address.lower(),
            address_eip55=AsyncWeb3.to_checksum_address(address),
            label=label,
            is_enabled=True,
        )
        self.session.add(model)
        await self.session.flush()
        return UserWalletDTO.from_model(model)

    async def list_enabled(self, *, chain_id: str | None = None) -> list[UserWalletDTO]:
        stmt = select(UserWalletModel).where(UserWalletModel.is_enabled.is_(True))
        if chain_id is not None:
            stmt = stmt.where(UserWalletModel.chain_id == chain_id.upper())
        result = await self.session.execute(stmt.order_by(UserWalletModel.id))
        return [UserWalletDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Contracts and cursors
# ============================================================================


@dataclass
class MonitoredContractDTO:
    """Data transfer object for monitored contracts."""

    id: int
    chain_id: str
    address_lower: str
    address_eip55: str
    protocol: str
    kind: ContractKind
    default_start_block: int | None = None
    config: dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True

    @classmethod
    def from_model(cls, model: MonitoredContractModel) -> MonitoredContractDTO:
        return cls(
            id=model.id,
            chain_id=model.chain_id,
            address_lower=model.address_lower,
            address_eip55=model.address_eip55,
            protocol=model.protocol,
            kind=ContractKind(model.kind),
            default_start_block=model.default_start_block,
            config=json.loads(model.config_json) if model.config_json else {},
            is_enabled=bool(model.is_enabled),
        )


class ContractRepository:
    """Repository for monitored contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract_id: int) -> MonitoredContractDTO | None:
        model = await self.session.get(MonitoredContractModel, contract_id)
        return MonitoredContractDTO.from_model(model) if model else None

    async def list_enabled(
        self,
        *,
        kinds: list[ContractKind] | None = None,
        chain_id: str | None = None,
    ) -> list[MonitoredContractDTO]:
        stmt = select(MonitoredContractModel).where(MonitoredContractModel.is_enabled.is_(True))
        if kinds:
            stmt = stmt.where(MonitoredContractModel.kind.in_([k.value for k in kinds]))
        if chain_id is not None:
            stmt = stmt.where(MonitoredContractModel.chain_id == chain_id.upper())
        result = await self.session.execute(stmt.order_by(MonitoredContractModel.id))
        return [MonitoredContractDTO.from_model(m) for m in result.scalars().all()]

    async def register(
        self,
        *,
        chain_id: str,
        address: str,
        protocol: str,
        kind: ContractKind,
        default_start_block: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> bool:
        """Register a contract if it is not known yet.

        Existing rows are left untouched (contracts are immutable once created).

        Returns:
            True if a new row was inserted.
        """
        values = {
            "chain_id": chain_id.upper(),
            "address_lower": address.lower(),
            "address_eip55": AsyncWeb3.to_checksum_address(address),
            "protocol": protocol,
            "kind": kind.value,
            "default_start_block": default_start_block,
            "config_json": json.dumps(config, sort_keys=True) if config else None,
            "is_enabled": True,
            "created_at": datetime.now(UTC),
        }
        stmt = _insert_for(self.session, MonitoredContractModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain_id", "address_lower"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def set_enabled(self, contract_id: int, enabled: bool) -> bool:
        """Start or stop monitoring a contract.

        Returns:
            True if a contract row was updated.
        """
        result = await self.session.execute(
            update(MonitoredContractModel)
            .where(MonitoredContractModel.id == contract_id)
            .values(is_enabled=enabled)
        )
        await self.session.flush()
        return bool(result.rowcount)


@dataclass
class ScanCursorDTO:
    """Data transfer object for contract scan cursors."""

    contract_id: int
    start_block: int
    last_scanned_block: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ScanCursorModel) -> ScanCursorDTO:
        return cls(
            contract_id=model.contract_id,
            start_block=model.start_block,
            last_scanned_block=model.last_scanned_block,
            updated_at=as_utc(model.updated_at),
        )


class ScanCursorRepository:
    """Repository for resumable scan cursors.

    ``last_scanned_block`` only moves forward through this repository;
    ``reset`` is the single administrative exception.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract_id: int) -> ScanCursorDTO | None:
        model = await self.session.get(ScanCursorModel, contract_id)
        return ScanCursorDTO.from_model(model) if model else None

    async def ensure(self, contract_id: int, start_block: int) -> ScanCursorDTO:
        """Create the cursor at ``start_block`` unless one already exists."""
        if start_block < 0:
            raise ValueError("start_block must be >= 0")
        stmt = _insert_for(self.session, ScanCursorModel).values(
            contract_id=contract_id,
            start_block=start_block,
            last_scanned_block=start_block,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["contract_id"])
        await self.session.execute(stmt)
        await self.session.flush()
        cursor = await self._fetch(contract_id)
        assert cursor is not None
        return cursor

    async def advance(self, contract_id: int, block: int) -> ScanCursorDTO:
        """Move the cursor to ``block`` if that is ahead of its current position."""
        table = ScanCursorModel.__table__
        stmt = (
            update(ScanCursorModel)
            .where(ScanCursorModel.contract_id == contract_id)
            .values(
                last_scanned_block=sa.case(
                    (table.c.last_scanned_block < block, block),
                    else_=table.c.last_scanned_block,
                ),
                updated_at=datetime.now(UTC),
            )
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:
            raise LookupError(f"No scan cursor for contract {contract_id}")
        await self.session.flush()
        cursor = await self._fetch(contract_id)
        assert cursor is not None
        return cursor

    async def reset(self, contract_id: int, *, start_block: int) -> ScanCursorDTO:
        """Administrative rewind: restart scanning from ``start_block``."""
        if start_block < 0:
            raise ValueError("start_block must be >= 0")
        stmt = _insert_for(self.session, ScanCursorModel).values(
            contract_id=contract_id,
            start_block=start_block,
            last_scanned_block=start_block,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_id"],
            set_={
                "start_block": stmt.excluded.start_block,
                "last_scanned_block": stmt.excluded.last_scanned_block,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        logger.warning("Scan cursor reset: contract_id=%d start_block=%d", contract_id, start_block)
        cursor = await self._fetch(contract_id)
        assert cursor is not None
        return cursor

    async def _fetch(self, contract_id: int) -> ScanCursorDTO | None:
        result = await self.session.execute(
            select(ScanCursorModel)
            .where(ScanCursorModel.contract_id == contract_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return ScanCursorDTO.from_model(model) if model else None


# ============================================================================
# Position ownership
# ============================================================================


@dataclass
class PositionTokenDTO:
    """Data transfer object for position NFT ownership."""

    contract_id: int
    token_id: str
    owner_lower: str
    is_burned: bool
    last_block: int
    last_log_index: int

    @classmethod
    def from_model(cls, model: PositionTokenModel) -> PositionTokenDTO:
        return cls(
            contract_id=model.contract_id,
            token_id=model.token_id,
            owner_lower=model.owner_lower,
            is_burned=bool(model.is_burned),
            last_block=model.last_block,
            last_log_index=model.last_log_index,
        )


@dataclass(frozen=True)
class PositionRef:
    """A monitored position resolved to its user and wallet."""

    identity: PositionIdentity
    chain_id: str
    wallet_address: str
    contract: MonitoredContractDTO

    @property
    def token_id(self) -> str:
        return self.identity.token_id


class PositionTokenRepository:
    """Repository for the ownership index fed by Transfer events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract_id: int, token_id: str) -> PositionTokenDTO | None:
        result = await self.session.execute(
            select(PositionTokenModel)
            .where(PositionTokenModel.contract_id == contract_id)
            .where(PositionTokenModel.token_id == token_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return PositionTokenDTO.from_model(model) if model else None

    async def apply_transfer(
        self,
        *,
        contract_id: int,
        token_id: str,
        owner: str,
        is_burned: bool,
        block_number: int,
        log_index: int,
    ) -> None:
        """Record a Transfer unless a newer event for the token was already applied."""
        stmt = _insert_for(self.session, PositionTokenModel).values(
            contract_id=contract_id,
            token_id=token_id,
            owner_lower=owner.lower(),
            is_burned=is_burned,
            last_block=block_number,
            last_log_index=log_index,
            updated_at=datetime.now(UTC),
        )
        table = PositionTokenModel.__table__
        is_newer = (stmt.excluded.last_block > table.c.last_block) | (
            (stmt.excluded.last_block == table.c.last_block)
            & (stmt.excluded.last_log_index > table.c.last_log_index)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["contract_id", "token_id"],
            set_={
                "owner_lower": stmt.excluded.owner_lower,
                "is_burned": stmt.excluded.is_burned,
                "last_block": stmt.excluded.last_block,
                "last_log_index": stmt.excluded.last_log_index,
                "updated_at": stmt.excluded.updated_at,
            },
            where=is_newer,
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_owned_positions(self, *, chain_id: str | None = None) -> list[PositionRef]:
        """Live NFT positions held by enabled wallets in enabled contracts."""
        stmt = (
            select(PositionTokenModel, UserWalletModel, MonitoredContractModel)
            .join(MonitoredContractModel, MonitoredContractModel.id == PositionTokenModel.contract_id)
            .join(
                UserWalletModel,
                (UserWalletModel.address_lower == PositionTokenModel.owner_lower)
                & (UserWalletModel.chain_id == MonitoredContractModel.chain_id),
            )
            .where(PositionTokenModel.is_burned.is_(False))
            .where(MonitoredContractModel.is_enabled.is_(True))
            .where(UserWalletModel.is_enabled.is_(True))
            .where(
                MonitoredContractModel.kind.in_([ContractKind.LOAN_NFT.value, ContractKind.LP_NFT.value])
            )
        )
        if chain_id is not None:
            stmt = stmt.where(MonitoredContractModel.chain_id == chain_id.upper())
        stmt = stmt.order_by(MonitoredContractModel.id, PositionTokenModel.token_id, UserWalletModel.id)

        result = await self.session.execute(stmt)
        refs: list[PositionRef] = []
        for token, wallet, contract in result.all():
            refs.append(
                PositionRef(
                    identity=PositionIdentity(
                        user_id=wallet.user_id,
                        wallet_id=wallet.id,
                        contract_id=contract.id,
                        token_id=token.token_id,
                    ),
                    chain_id=contract.chain_id,
                    wallet_address=wallet.address_eip55,
                    contract=MonitoredContractDTO.from_model(contract),
                )
            )
        return refs

    async def list_vault_candidates(self, *, chain_id: str | None = None) -> list[PositionRef]:
        """Every (enabled wallet, enabled ALM vault) pair on the same chain.

        Vault shares are fungible, so a candidate only becomes a position
        once its share balance is read and found non-zero.
        """
        stmt = (
            select(UserWalletModel, MonitoredContractModel)
            .join(MonitoredContractModel, MonitoredContractModel.chain_id == UserWalletModel.chain_id)
            .where(MonitoredContractModel.kind == ContractKind.LP_ALM.value)
            .where(MonitoredContractModel.is_enabled.is_(True))
            .where(UserWalletModel.is_enabled.is_(True))
        )
        if chain_id is not None:
            stmt = stmt.where(MonitoredContractModel.chain_id == chain_id.upper())
        stmt = stmt.order_by(MonitoredContractModel.id, UserWalletModel.id)

        result = await self.session.execute(stmt)
        return [
            PositionRef(
                identity=PositionIdentity(
                    user_id=wallet.user_id,
                    wallet_id=wallet.id,
                    contract_id=contract.id,
                    token_id="0",
                ),
                chain_id=contract.chain_id,
                wallet_address=wallet.address_eip55,
                contract=MonitoredContractDTO.from_model(contract),
            )
            for wallet, contract in result.all()
        ]


# ============================================================================
# Snapshots
# ============================================================================


@dataclass
class LoanSnapshotDTO:
    """Data transfer object for loan snapshots."""

    identity: PositionIdentity
    chain_id: str
    protocol: str
    collateral: float | None
    debt: float | None
    interest_rate: float | None
    price: float | None
    liquidation_price: float | None
    ltv_pct: float | None
    liquidation_buffer_frac: float | None
    debt_ahead: float | None
    total_debt: float | None
    debt_ahead_frac: float | None
    liquidation_tier: str
    redemption_tier: str
    snapshot_at: datetime
    snapshot_run_id: str
    is_active: bool = True
    liquidation_label: str | None = None
    redemption_label: str | None = None
    wallet_address: str | None = None

    @classmethod
    def from_model(cls, model: LoanSnapshotModel) -> LoanSnapshotDTO:
        snapshot_at = as_utc(model.snapshot_at)
        assert snapshot_at is not None
        return cls(
            identity=PositionIdentity(model.user_id, model.wallet_id, model.contract_id, model.token_id),
            chain_id=model.chain_id,
            protocol=model.protocol,
            collateral=model.collateral,
            debt=model.debt,
            interest_rate=model.interest_rate,
            price=model.price,
            liquidation_price=model.liquidation_price,
            ltv_pct=model.ltv_pct,
            liquidation_buffer_frac=model.liquidation_buffer_frac,
            debt_ahead=model.debt_ahead,
            total_debt=model.total_debt,
            debt_ahead_frac=model.debt_ahead_frac,
            liquidation_tier=model.liquidation_tier,
            redemption_tier=model.redemption_tier,
            snapshot_at=snapshot_at,
            snapshot_run_id=model.snapshot_run_id,
            is_active=bool(model.is_active),
            liquidation_label=model.liquidation_label,
            redemption_label=model.redemption_label,
        )

    def column_values(self) -> dict[str, Any]:
        return {
            **self.identity.as_dict(),
            "chain_id": self.chain_id,
            "protocol": self.protocol,
            "collateral": self.collateral,
            "debt": self.debt,
            "interest_rate": self.interest_rate,
            "price": self.price,
            "liquidation_price": self.liquidation_price,
            "ltv_pct": self.ltv_pct,
            "liquidation_buffer_frac": self.liquidation_buffer_frac,
            "debt_ahead": self.debt_ahead,
            "total_debt": self.total_debt,
            "debt_ahead_frac": self.debt_ahead_frac,
            "is_active": self.is_active,
            "liquidation_tier": self.liquidation_tier,
            "liquidation_label": self.liquidation_label,
            "redemption_tier": self.redemption_tier,
            "redemption_label": self.redemption_label,
            "snapshot_at": self.snapshot_at,
            "snapshot_run_id": self.snapshot_run_id,
        }


@dataclass
class LpSnapshotDTO:
    """Data transfer object for liquidity position snapshots."""

    identity: PositionIdentity
    chain_id: str
    protocol: str
    range_status: str
    range_tier: str
    snapshot_at: datetime
    snapshot_run_id: str
    pool_address: str | None = None
    token0: str | None = None
    token1: str | None = None
    token0_symbol: str | None = None
    token1_symbol: str | None = None
    fee: int | None = None
    tick_lower: int | None = None
    tick_upper: int | None = None
    current_tick: int | None = None
    liquidity: int | None = None
    amount0: float | None = None
    amount1: float | None = None
    fees0: float | None = None
    fees1: float | None = None
    pool_liquidity_share: float | None = None
    range_label: str | None = None
    position_frac: float | None = None
    distance_frac: float | None = None
    wallet_address: str | None = None

    @classmethod
    def from_model(cls, model: LpSnapshotModel) -> LpSnapshotDTO:
        snapshot_at = as_utc(model.snapshot_at)
        assert snapshot_at is not None
        return cls(
            identity=PositionIdentity(model.user_id, model.wallet_id, model.contract_id, model.token_id),
            chain_id=model.chain_id,
            protocol=model.protocol,
            range_status=model.range_status,
            range_tier=model.range_tier,
            snapshot_at=snapshot_at,
            snapshot_run_id=model.snapshot_run_id,
            pool_address=model.pool_address,
            token0=model.token0,
            token1=model.token1,
            token0_symbol=model.token0_symbol,
            token1_symbol=model.token1_symbol,
            fee=model.fee,
            tick_lower=model.tick_lower,
            tick_upper=model.tick_upper,
            current_tick=model.current_tick,
            liquidity=int(model.liquidity) if model.liquidity is not None else None,
            amount0=model.amount0,
            amount1=model.amount1,
            fees0=model.fees0,
            fees1=model.fees1,
            pool_liquidity_share=model.pool_liquidity_share,
            range_label=model.range_label,
            position_frac=model.position_frac,
            distance_frac=model.distance_frac,
        )

    def column_values(self) -> dict[str, Any]:
        return {
            **self.identity.as_dict(),
            "chain_id": self.chain_id,
            "protocol": self.protocol,
            "pool_address": self.pool_address,
            "token0": self.token0,
            "token1": self.token1,
            "token0_symbol": self.token0_symbol,
            "token1_symbol": self.token1_symbol,
            "fee": self.fee,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "current_tick": self.current_tick,
            "liquidity": str(self.liquidity) if self.liquidity is not None else None,
            "amount0": self.amount0,
            "amount1": self.amount1,
            "fees0": self.fees0,
            "fees1": self.fees1,
            "pool_liquidity_share": self.pool_liquidity_share,
            "range_status": self.range_status,
            "range_tier": self.range_tier,
            "range_label": self.range_label,
            "position_frac": self.position_frac,
            "distance_frac": self.distance_frac,
            "snapshot_at": self.snapshot_at,
            "snapshot_run_id": self.snapshot_run_id,
        }


_IDENTITY_COLUMNS = ["user_id", "wallet_id", "contract_id", "token_id"]


class SnapshotRepository:
    """Repository for latest-value position snapshots (one row per identity)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _upsert(self, model: type[Any], values: dict[str, Any]) -> None:
        stmt = _insert_for(self.session, model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=_IDENTITY_COLUMNS,
            set_={k: getattr(stmt.excluded, k) for k in values if k not in _IDENTITY_COLUMNS},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def upsert_loan(self, dto: LoanSnapshotDTO) -> None:
        await self._upsert(LoanSnapshotModel, dto.column_values())

    async def upsert_lp(self, dto: LpSnapshotDTO) -> None:
        await self._upsert(LpSnapshotModel, dto.column_values())

    async def list_loans(self) -> list[LoanSnapshotDTO]:
        result = await self.session.execute(
            select(LoanSnapshotModel, UserWalletModel.address_eip55)
            .outerjoin(UserWalletModel, UserWalletModel.id == LoanSnapshotModel.wallet_id)
            .order_by(LoanSnapshotModel.id)
        )
        out: list[LoanSnapshotDTO] = []
        for model, address in result.all():
            dto = LoanSnapshotDTO.from_model(model)
            dto.wallet_address = address
            out.append(dto)
        return out

    async def list_lps(self) -> list[LpSnapshotDTO]:
        result = await self.session.execute(
            select(LpSnapshotModel, UserWalletModel.address_eip55)
            .outerjoin(UserWalletModel, UserWalletModel.id == LpSnapshotModel.wallet_id)
            .order_by(LpSnapshotModel.id)
        )
        out: list[LpSnapshotDTO] = []
        for model, address in result.all():
            dto = LpSnapshotDTO.from_model(model)
            dto.wallet_address = address
            out.append(dto)
        return out

    async def list_identities(self) -> set[PositionIdentity]:
        """Identities that have a loan or LP snapshot row."""
        identities: set[PositionIdentity] = set()
        for model in (LoanSnapshotModel, LpSnapshotModel):
            result = await self.session.execute(
                select(model.user_id, model.wallet_id, model.contract_id, model.token_id)
            )
            identities.update(PositionIdentity(*row) for row in result.all())
        return identities

    async def delete(self, identity: PositionIdentity) -> int:
        """Remove every snapshot row of ``identity``; returns the number of rows deleted."""
        removed = 0
        for model in (LoanSnapshotModel, LpSnapshotModel):
            result = await self.session.execute(
                sa.delete(model)
                .where(model.user_id == identity.user_id)
                .where(model.wallet_id == identity.wallet_id)
                .where(model.contract_id == identity.contract_id)
                .where(model.token_id == identity.token_id)
            )
            removed += result.rowcount or 0
        await self.session.flush()
        return removed

    async def max_snapshot_at(self) -> datetime | None:
        """Latest capture time across both snapshot tables."""
        loan_max = (await self.session.execute(select(sa.func.max(LoanSnapshotModel.snapshot_at)))).scalar()
        lp_max = (await self.session.execute(select(sa.func.max(LpSnapshotModel.snapshot_at)))).scalar()
        candidates = [as_utc(v) for v in (loan_max, lp_max) if v is not None]
        return max(candidates) if candidates else None  # type: ignore[type-var]


# ============================================================================
# Alerts
# ============================================================================


@dataclass
class AlertStateDTO:
    """Data transfer object for alert state."""

    identity: PositionIdentity
    alert_type: str
    is_active: bool
    signature: str | None
    state: dict[str, Any] | None
    last_seen_at: datetime
    last_changed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AlertStateModel) -> AlertStateDTO:
        last_seen_at = as_utc(model.last_seen_at)
        assert last_seen_at is not None
        return cls(
            identity=PositionIdentity(model.user_id, model.wallet_id, model.contract_id, model.token_id),
            alert_type=model.alert_type,
            is_active=bool(model.is_active),
            signature=model.signature,
            state=json.loads(model.state_json) if model.state_json else None,
            last_seen_at=last_seen_at,
            last_changed_at=as_utc(model.last_changed_at),
        )


class AlertStateRepository:
    """Repository for per-identity alert state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, identity: PositionIdentity) -> AlertStateDTO | None:
        result = await self.session.execute(
            select(AlertStateModel)
            .where(AlertStateModel.user_id == identity.user_id)
            .where(AlertStateModel.wallet_id == identity.wallet_id)
            .where(AlertStateModel.contract_id == identity.contract_id)
            .where(AlertStateModel.token_id == identity.token_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return AlertStateDTO.from_model(model) if model else None

    async def upsert(self, dto: AlertStateDTO) -> None:
        """Write the state row for the identity; inactive rows never keep a signature."""
        signature = dto.signature if dto.is_active else None
        values = {
            **dto.identity.as_dict(),
            "alert_type": dto.alert_type,
            "is_active": dto.is_active,
            "signature": signature,
            "state_json": json.dumps(dto.state, sort_keys=True, default=str) if dto.state is not None else None,
            "last_seen_at": dto.last_seen_at,
            "last_changed_at": dto.last_changed_at,
        }
        stmt = _insert_for(self.session, AlertStateModel).values(**values, created_at=datetime.now(UTC))
        stmt = stmt.on_conflict_do_update(
            index_elements=_IDENTITY_COLUMNS,
            set_={k: getattr(stmt.excluded, k) for k in values if k not in _IDENTITY_COLUMNS},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_active(self) -> list[AlertStateDTO]:
        result = await self.session.execute(
            select(AlertStateModel).where(AlertStateModel.is_active.is_(True)).order_by(AlertStateModel.id)
        )
        return [AlertStateDTO.from_model(m) for m in result.scalars().all()]


@dataclass
class AlertEventDTO:
    """Data transfer object for alert audit events."""

    identity: PositionIdentity
    alert_type: str
    phase: str
    message: str
    meta: dict[str, Any] | None
    signature: str | None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AlertEventModel) -> AlertEventDTO:
        return cls(
            identity=PositionIdentity(model.user_id, model.wallet_id, model.contract_id, model.token_id),
            alert_type=model.alert_type,
            phase=model.phase,
            message=model.message,
            meta=json.loads(model.meta_json) if model.meta_json else None,
            signature=model.signature,
            created_at=as_utc(model.created_at),
        )


class AlertEventRepository:
    """Append-only repository for alert transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, dto: AlertEventDTO) -> None:
        model = AlertEventModel(
            **dto.identity.as_dict(),
            alert_type=dto.alert_type,
            phase=dto.phase,
            message=dto.message,
            meta_json=json.dumps(dto.meta, sort_keys=True, default=str) if dto.meta is not None else None,
            signature=dto.signature,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()

    async def list_for_identity(self, identity: PositionIdentity) -> list[AlertEventDTO]:
        result = await self.session.execute(
            select(AlertEventModel)
            .where(AlertEventModel.user_id == identity.user_id)
            .where(AlertEventModel.wallet_id == identity.wallet_id)
            .where(AlertEventModel.contract_id == identity.contract_id)
            .where(AlertEventModel.token_id == identity.token_id)
            .order_by(AlertEventModel.id)
        )
        return [AlertEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_recent(self, *, limit: int = 50) -> list[AlertEventDTO]:
        result = await self.session.execute(
            select(AlertEventModel).order_by(AlertEventModel.id.desc()).limit(limit)
        )
        return [AlertEventDTO.from_model(m) for m in result.scalars().all()]
