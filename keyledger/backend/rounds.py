"""Round lifecycle: exactly one round is active at a time."""

from __future__ import annotations

import logging

from keyledger.backend.config_store import ConfigStore
from keyledger.backend.errors import LedgerStorageError, StorageUnavailableError, TransactionFailedError
from keyledger.backend.models import (
    ActiveRound,
    RoundError,
    RoundListing,
    RoundOutcome,
    RoundStatus,
    StorageError,
)
from keyledger.backend.store import LedgerStore

logger = logging.getLogger(__name__)

INITIAL_ROUND = 1


class RoundManager:
    """Opens and completes rounds.

    Reopening a round number that already exists reactivates that row. With
    ``strict=True`` the number is refused instead, so round numbers can only
    ever be used once.
    """

    def __init__(self, store: LedgerStore, config: ConfigStore, strict: bool = False) -> None:
        self._store = store
        self._config = config
        self.strict = strict

    async def get_active_round(self) -> ActiveRound:
        try:
            async with self._store.transaction() as tx:
                number = await tx.active_round()
        except LedgerStorageError as exc:
            logger.warning("Could not read the active round: %s", exc)
            return ActiveRound(error=StorageError.of(exc))
        return ActiveRound(number=number)

    async def list_rounds(self) -> RoundListing:
        try:
            async with self._store.transaction() as tx:
                rounds = await tx.list_rounds()
        except LedgerStorageError as exc:
            logger.warning("Could not list rounds: %s", exc)
            return RoundListing(error=StorageError.of(exc))
        return RoundListing(rounds=tuple(rounds))

    async def open_round(self, number: int) -> RoundOutcome:
        if isinstance(number, bool) or not isinstance(number, int) or number < 1:
            return RoundOutcome(number=number, error=RoundError.INVALID_NUMBER)

        try:
            async with self._store.transaction() as tx:
                await tx.lock_rounds()
                if self.strict and await tx.round_exists(number):
                    return RoundOutcome(number=number, error=RoundError.ALREADY_EXISTS)
                completed = await tx.complete_active_rounds()
                await tx.upsert_round(number, RoundStatus.ACTIVE)
        except StorageUnavailableError as exc:
            logger.warning("Could not open round %s: %s", number, exc)
            return RoundOutcome(number=number, error=RoundError.STORAGE_UNAVAILABLE)
        except TransactionFailedError as exc:
            logger.warning("Could not open round %s: %s", number, exc)
            return RoundOutcome(number=number, error=RoundError.TRANSACTION_FAILED)

        self._config.refresh("current_round", str(number))
        logger.info("Round %s is now active (%d round(s) completed)", number, completed)
        return RoundOutcome(number=number)

    async def ensure_initial_round(self) -> ActiveRound:
        """Open the first round when none has ever been opened."""
        try:
            async with self._store.transaction() as tx:
                active = await tx.active_round()
                rounds = await tx.list_rounds()
        except LedgerStorageError as exc:
            logger.warning("Could not read rounds at startup: %s", exc)
            return ActiveRound(error=StorageError.of(exc))
        if active is None and not rounds:
            logger.info("No round has been opened yet, opening round %s", INITIAL_ROUND)
            outcome = await self.open_round(INITIAL_ROUND)
            if outcome.error is RoundError.STORAGE_UNAVAILABLE:
                return ActiveRound(error=StorageError.STORAGE_UNAVAILABLE)
            if not outcome.ok:
                logger.error("Could not open the initial round: %s", outcome.error.value)
                return ActiveRound(error=StorageError.TRANSACTION_FAILED)
            return ActiveRound(number=INITIAL_ROUND)
        if active is not None:
            self._config.refresh("current_round", str(active))
        return ActiveRound(number=active)
