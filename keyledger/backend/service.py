"""Wiring of the ledger components around a single store."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from keyledger.backend.claims import ClaimOrchestrator
from keyledger.backend.config import BackendSettings
from keyledger.backend.config_store import ConfigStore, LedgerConfig
from keyledger.backend.errors import LedgerStorageError
from keyledger.backend.ingest import IngestionSync
from keyledger.backend.inventory import KeyInventory
from keyledger.backend.models import ActiveRound, StorageError
from keyledger.backend.rounds import RoundManager
from keyledger.backend.store import DEFAULT_POOL_SIZE, LedgerStore, create_store
from keyledger.backend.users import UserRegistry

logger = logging.getLogger(__name__)


@dataclass
class KeyLedger:
    store: LedgerStore
    inventory: KeyInventory
    users: UserRegistry
    rounds: RoundManager
    claims: ClaimOrchestrator
    config: ConfigStore
    ingestion: IngestionSync

    @classmethod
    def from_store(
        cls,
        store: LedgerStore,
        defaults: LedgerConfig | None = None,
        strict_rounds: bool = False,
    ) -> "KeyLedger":
        config = ConfigStore(store, defaults)
        inventory = KeyInventory(store)
        users = UserRegistry(store)
        return cls(
            store=store,
            inventory=inventory,
            users=users,
            rounds=RoundManager(store, config, strict=strict_rounds),
            claims=ClaimOrchestrator(store, users),
            config=config,
            ingestion=IngestionSync(inventory),
        )

    async def start(self) -> ActiveRound:
        """Open the store, load persisted config and make sure a round is active.

        Returns the active round, or the storage error that stopped startup.
        """
        try:
            await self.store.open()
        except LedgerStorageError as exc:
            logger.error("Could not open the store: %s", exc)
            return ActiveRound(error=StorageError.of(exc))
        loaded = await self.config.load()
        if loaded.error is not None:
            return ActiveRound(error=loaded.error)
        active = await self.rounds.ensure_initial_round()
        if active.ok:
            logger.info("Ledger started, active round: %s", active.number)
        return active

    async def stop(self) -> None:
        await self.store.close()


def build_ledger(settings: BackendSettings | None = None) -> KeyLedger:
    if settings is None:
        return KeyLedger.from_store(create_store(database_url=None, pool_size=DEFAULT_POOL_SIZE))
    store = create_store(database_url=settings.database_url, pool_size=settings.pool_size)
    return KeyLedger.from_store(
        store,
        defaults=settings.ledger_defaults(),
        strict_rounds=settings.strict_rounds,
    )
