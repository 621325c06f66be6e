"""Exceptions raised by the storage layer and mapped at the ledger boundary."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""


class LedgerStorageError(LedgerError):
    """The persistent store could not complete an operation."""


class StorageUnavailableError(LedgerStorageError):
    """No connection to the store could be obtained."""


class TransactionFailedError(LedgerStorageError):
    """A transaction was rolled back by the store."""


class LedgerInvariantError(LedgerError):
    """A state the transaction isolation should have made impossible was observed."""
