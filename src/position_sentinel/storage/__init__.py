"""Storage layer - Database schemas and repositories."""

from position_sentinel.storage.database import (
    DatabaseManager,
    SessionFactory,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from position_sentinel.storage.models import (
    AlertEventModel,
    AlertStateModel,
    Base,
    ContractKind,
    LoanSnapshotModel,
    LpSnapshotModel,
    MonitoredContractModel,
    PositionTokenModel,
    ScanCursorModel,
    UserModel,
    UserWalletModel,
)
from position_sentinel.storage.repos import (
    AlertEventDTO,
    AlertEventRepository,
    AlertStateDTO,
    AlertStateRepository,
    ContractRepository,
    LoanSnapshotDTO,
    LpSnapshotDTO,
    MonitoredContractDTO,
    PositionIdentity,
    PositionRef,
    PositionTokenRepository,
    ScanCursorDTO,
    ScanCursorRepository,
    SnapshotRepository,
    UserRepository,
    WalletRepository,
)

__all__ = [
    "AlertEventDTO",
    "AlertEventModel",
    "AlertEventRepository",
    "AlertStateDTO",
    "AlertStateModel",
    "AlertStateRepository",
    "Base",
    "ContractKind",
    "ContractRepository",
    "DatabaseManager",
    "LoanSnapshotDTO",
    "LoanSnapshotModel",
    "LpSnapshotDTO",
    "LpSnapshotModel",
    "MonitoredContractDTO",
    "MonitoredContractModel",
    "PositionIdentity",
    "PositionRef",
    "PositionTokenModel",
    "PositionTokenRepository",
    "ScanCursorDTO",
    "ScanCursorModel",
    "ScanCursorRepository",
    "SessionFactory",
    "SnapshotRepository",
    "UserModel",
    "UserRepository",
    "UserWalletModel",
    "WalletRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
