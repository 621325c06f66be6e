"""Domain records and result types for the key ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from keyledger.backend.errors import LedgerStorageError, StorageUnavailableError


def local_now() -> datetime:
    """Server-local wall-clock time, timezone-aware."""
    return datetime.now().astimezone()


class RoundStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class StorageError(str, Enum):
    """Why a read or write against the store did not complete."""

    TRANSACTION_FAILED = "transaction_failed"
    STORAGE_UNAVAILABLE = "storage_unavailable"

    @classmethod
    def of(cls, exc: LedgerStorageError) -> "StorageError":
        if isinstance(exc, StorageUnavailableError):
            return cls.STORAGE_UNAVAILABLE
        return cls.TRANSACTION_FAILED


class ClaimError(str, Enum):
    USER_INELIGIBLE = "user_ineligible"
    ALREADY_CLAIMED_THIS_ROUND = "already_claimed_this_round"
    POOL_EXHAUSTED = "pool_exhausted"
    NO_ACTIVE_ROUND = "no_active_round"
    TRANSACTION_FAILED = "transaction_failed"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class RoundError(str, Enum):
    INVALID_NUMBER = "invalid_number"
    ALREADY_EXISTS = "already_exists"
    TRANSACTION_FAILED = "transaction_failed"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class IngestOutcome(str, Enum):
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"
    BLANK = "blank"


@dataclass(frozen=True)
class TokenRecord:
    value: str
    claimed: bool
    claiming_user: int | None
    claimed_at: datetime | None
    added_at: datetime
    claim_round: int | None


@dataclass(frozen=True)
class RoundRecord:
    number: int
    status: RoundStatus


@dataclass(frozen=True)
class ClaimOutcome:
    """Either a token or the reason no token was handed out."""

    token: str | None = None
    error: ClaimError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def granted(cls, token: str) -> "ClaimOutcome":
        return cls(token=token)

    @classmethod
    def refused(cls, error: ClaimError) -> "ClaimOutcome":
        return cls(error=error)


@dataclass(frozen=True)
class RoundOutcome:
    number: int
    error: RoundError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ActiveRound:
    number: int | None = None
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RoundListing:
    rounds: tuple[RoundRecord, ...] = ()
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UnclaimedCount:
    remaining: int = 0
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TokenLookup:
    token: TokenRecord | None = None
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UserLookup:
    user_id: int | None = None
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome | None = None
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SyncReport:
    """Counts of one sync pass; ``error`` is set when the pass stopped early."""

    inserted: int = 0
    already_present: int = 0
    blank: int = 0
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def seen(self) -> int:
        return self.inserted + self.already_present + self.blank
