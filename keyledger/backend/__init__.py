"""Backend package for the key ledger."""

from .claims import ClaimOrchestrator
from .config import BackendSettings, load_settings
from .config_store import ConfigStore, ConfigUpdate, LedgerConfig
from .ingest import IngestionSync, KeyFileWatcher, read_key_file
from .inventory import KeyInventory
from .models import (
    ActiveRound,
    ClaimError,
    ClaimOutcome,
    IngestOutcome,
    IngestResult,
    RoundError,
    RoundListing,
    RoundOutcome,
    RoundStatus,
    StorageError,
    SyncReport,
    TokenLookup,
    UnclaimedCount,
    UserLookup,
)
from .rounds import RoundManager
from .service import KeyLedger, build_ledger
from .store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore, create_store
from .users import UserRegistry

__all__ = [
    "ActiveRound",
    "BackendSettings",
    "build_ledger",
    "ClaimError",
    "ClaimOrchestrator",
    "ClaimOutcome",
    "ConfigStore",
    "ConfigUpdate",
    "create_store",
    "IngestionSync",
    "IngestOutcome",
    "IngestResult",
    "InMemoryLedgerStore",
    "KeyFileWatcher",
    "KeyInventory",
    "KeyLedger",
    "LedgerConfig",
    "LedgerStore",
    "load_settings",
    "PostgresLedgerStore",
    "read_key_file",
    "RoundError",
    "RoundListing",
    "RoundManager",
    "RoundOutcome",
    "RoundStatus",
    "StorageError",
    "SyncReport",
    "TokenLookup",
    "UnclaimedCount",
    "UserLookup",
    "UserRegistry",
]
