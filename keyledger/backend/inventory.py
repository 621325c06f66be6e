"""Key inventory: the pool of single-use tokens."""

from __future__ import annotations

import logging

from keyledger.backend.errors import LedgerStorageError
from keyledger.backend.models import (
    IngestOutcome,
    IngestResult,
    StorageError,
    TokenLookup,
    UnclaimedCount,
    local_now,
)
from keyledger.backend.store import LedgerStore

logger = logging.getLogger(__name__)


class KeyInventory:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def ingest(self, candidate: str) -> IngestResult:
        """Insert the token unless it is blank or already known."""
        value = candidate.strip()
        if not value:
            return IngestResult(outcome=IngestOutcome.BLANK)
        try:
            async with self._store.transaction() as tx:
                inserted = await tx.insert_token(value, local_now())
        except LedgerStorageError as exc:
            logger.warning("Could not store a key: %s", exc)
            return IngestResult(error=StorageError.of(exc))
        return IngestResult(outcome=IngestOutcome.INSERTED if inserted else IngestOutcome.ALREADY_PRESENT)

    async def count_unclaimed(self) -> UnclaimedCount:
        try:
            async with self._store.transaction() as tx:
                remaining = await tx.count_unclaimed()
        except LedgerStorageError as exc:
            logger.warning("Could not count unclaimed keys: %s", exc)
            return UnclaimedCount(error=StorageError.of(exc))
        return UnclaimedCount(remaining=remaining)

    async def get(self, value: str) -> TokenLookup:
        try:
            async with self._store.transaction() as tx:
                token = await tx.get_token(value.strip())
        except LedgerStorageError as exc:
            logger.warning("Could not look up a key: %s", exc)
            return TokenLookup(error=StorageError.of(exc))
        return TokenLookup(token=token)
