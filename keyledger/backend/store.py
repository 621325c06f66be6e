"""Persistence interfaces and implementations for the key ledger."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Any, Protocol

from keyledger.backend.errors import (
    LedgerInvariantError,
    LedgerStorageError,
    StorageUnavailableError,
    TransactionFailedError,
)
from keyledger.backend.models import RoundRecord, RoundStatus, TokenRecord

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 4


class LedgerTransaction(Protocol):
    async def ensure_user(self, name: str) -> int:
        """Insert the user when absent and return the internal id."""

    async def lock_user(self, user_id: int) -> None:
        """Serialise concurrent claims of one user until the transaction ends."""

    async def lock_rounds(self) -> None:
        """Block claims and other rollovers until the transaction ends."""

    async def active_round(self, lock: bool = False) -> int | None:
        """Return the number of the round with status active."""

    async def round_exists(self, number: int) -> bool:
        """Return True when a row for the round number exists."""

    async def complete_active_rounds(self) -> int:
        """Mark every active round completed and return how many changed."""

    async def upsert_round(self, number: int, status: RoundStatus) -> None:
        """Insert or replace the round row."""

    async def list_rounds(self) -> list[RoundRecord]:
        """Return all rounds ordered by number."""

    async def insert_token(self, value: str, added_at: datetime) -> bool:
        """Insert the token when absent; True when a row was created."""

    async def get_token(self, value: str) -> TokenRecord | None:
        """Return the token row."""

    async def count_unclaimed(self) -> int:
        """Count tokens that are not claimed."""

    async def has_active_round_claim(self, user_id: int) -> bool:
        """Return True when the user holds a token bound to the active round."""

    async def select_unclaimed(self, user_id: int, one_per_round: bool = True) -> str | None:
        """Pick an unclaimed token the user may take."""

    async def wait_for_unclaimed(self) -> str | None:
        """Lock the first unclaimed token, waiting for claims in flight to finish."""

    async def bind(self, value: str, user_id: int, round_number: int, claimed_at: datetime) -> None:
        """Mark the token claimed by the user in the given round."""

    async def load_config(self) -> dict[str, str]:
        """Return every persisted config entry."""

    async def set_config(self, key: str, value: str) -> None:
        """Insert or replace a config entry."""


class LedgerStore(Protocol):
    async def open(self) -> None:
        """Acquire the resources needed to run transactions."""

    async def close(self) -> None:
        """Release the resources acquired by open."""

    def transaction(self) -> AbstractAsyncContextManager[LedgerTransaction]:
        """Run a unit of work that commits on success and rolls back on error."""


@dataclass
class InMemoryLedgerStore:
    """Process-local store; transactions are serialised by a single lock."""

    def __post_init__(self) -> None:
        self._users: dict[str, int] = {}
        self._tokens: dict[str, TokenRecord] = {}
        self._rounds: dict[int, RoundStatus] = {}
        self._config: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        async with self._lock:
            tx = _InMemoryTransaction(self)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise


class _InMemoryTransaction:
    def __init__(self, store: InMemoryLedgerStore) -> None:
        self._store = store
        self._undo: list[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    async def ensure_user(self, name: str) -> int:
        users = self._store._users
        if name in users:
            return users[name]
        users[name] = len(users) + 1
        self._undo.append(lambda: users.pop(name, None))
        return users[name]

    async def lock_user(self, user_id: int) -> None:
        if user_id not in self._store._users.values():
            raise LedgerInvariantError(f"user {user_id} does not exist")

    async def lock_rounds(self) -> None:
        return None

    async def active_round(self, lock: bool = False) -> int | None:
        for number, status in self._store._rounds.items():
            if status is RoundStatus.ACTIVE:
                return number
        return None

    async def round_exists(self, number: int) -> bool:
        return number in self._store._rounds

    async def complete_active_rounds(self) -> int:
        rounds = self._store._rounds
        active = [number for number, status in rounds.items() if status is RoundStatus.ACTIVE]
        for number in active:
            rounds[number] = RoundStatus.COMPLETED
            self._undo.append(lambda number=number: rounds.__setitem__(number, RoundStatus.ACTIVE))
        return len(active)

    async def upsert_round(self, number: int, status: RoundStatus) -> None:
        rounds = self._store._rounds
        if status is RoundStatus.ACTIVE:
            current = await self.active_round()
            if current is not None and current != number:
                raise TransactionFailedError(f"round {current} is already active")
        previous = rounds.get(number)
        rounds[number] = status
        if previous is None:
            self._undo.append(lambda: rounds.pop(number, None))
        else:
            self._undo.append(lambda: rounds.__setitem__(number, previous))

    async def list_rounds(self) -> list[RoundRecord]:
        return [RoundRecord(number=number, status=status) for number, status in sorted(self._store._rounds.items())]

    async def insert_token(self, value: str, added_at: datetime) -> bool:
        tokens = self._store._tokens
        if value in tokens:
            return False
        tokens[value] = TokenRecord(
            value=value,
            claimed=False,
            claiming_user=None,
            claimed_at=None,
            added_at=added_at,
            claim_round=None,
        )
        self._undo.append(lambda: tokens.pop(value, None))
        return True

    async def get_token(self, value: str) -> TokenRecord | None:
        return self._store._tokens.get(value)

    async def count_unclaimed(self) -> int:
        return sum(1 for token in self._store._tokens.values() if not token.claimed)

    async def has_active_round_claim(self, user_id: int) -> bool:
        rounds = self._store._rounds
        return any(
            token.claimed
            and token.claiming_user == user_id
            and rounds.get(token.claim_round) is RoundStatus.ACTIVE
            for token in self._store._tokens.values()
        )

    async def select_unclaimed(self, user_id: int, one_per_round: bool = True) -> str | None:
        if one_per_round and await self.has_active_round_claim(user_id):
            return None
        for token in self._store._tokens.values():
            if not token.claimed:
                return token.value
        return None

    async def wait_for_unclaimed(self) -> str | None:
        return await self.select_unclaimed(0, one_per_round=False)

    async def bind(self, value: str, user_id: int, round_number: int, claimed_at: datetime) -> None:
        tokens = self._store._tokens
        token = tokens.get(value)
        if token is None or token.claimed:
            raise LedgerInvariantError(f"token is missing or already claimed (user {user_id})")
        if round_number not in self._store._rounds:
            raise TransactionFailedError(f"round {round_number} does not exist")
        tokens[value] = replace(
            token,
            claimed=True,
            claiming_user=user_id,
            claimed_at=claimed_at,
            claim_round=round_number,
        )
        self._undo.append(lambda: tokens.__setitem__(value, token))

    async def load_config(self) -> dict[str, str]:
        return dict(self._store._config)

    async def set_config(self, key: str, value: str) -> None:
        config = self._store._config
        previous = config.get(key)
        config[key] = value
        if previous is None:
            self._undo.append(lambda: config.pop(key, None))
        else:
            self._undo.append(lambda: config.__setitem__(key, previous))


@dataclass
class PostgresLedgerStore:
    database_url: str
    pool_size: int = DEFAULT_POOL_SIZE
    connect_timeout: float = 10.0

    def __post_init__(self) -> None:
        self._pool: Any = None

    async def open(self) -> None:
        from psycopg_pool import AsyncConnectionPool, PoolTimeout

        if self._pool is not None:
            return
        pool = AsyncConnectionPool(
            self.database_url,
            min_size=1,
            max_size=self.pool_size,
            timeout=self.connect_timeout,
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self.connect_timeout)
        except PoolTimeout as exc:
            await pool.close()
            raise StorageUnavailableError(f"could not connect to database: {exc}") from exc
        self._pool = pool
        logger.info("Opened database pool (max_size=%s)", self.pool_size)

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Closed database pool")

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[Any]:
        if self._pool is None:
            raise StorageUnavailableError("database pool is not open")
        async with self._pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        import psycopg
        from psycopg_pool import PoolTimeout

        try:
            async with self._connect() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        yield _PostgresTransaction(cur)
        except PoolTimeout as exc:
            raise StorageUnavailableError(f"no database connection available: {exc}") from exc
        except psycopg.Error as exc:
            raise _translate_driver_error(exc) from exc


def _translate_driver_error(exc: Any) -> LedgerStorageError:
    from psycopg import errors as pg_errors

    # Serialization failures and deadlocks (SQLSTATE class 40) subclass OperationalError.
    rolled_back = (pg_errors.TransactionRollback, pg_errors.SerializationFailure, pg_errors.DeadlockDetected)
    if isinstance(exc, rolled_back) or str(getattr(exc, "sqlstate", None) or "").startswith("40"):
        return TransactionFailedError(f"transaction rolled back: {exc}")
    if isinstance(exc, (pg_errors.OperationalError, pg_errors.InterfaceError)):
        return StorageUnavailableError(f"database unavailable: {exc}")
    return TransactionFailedError(f"transaction failed: {exc}")


class _PostgresTransaction:
    def __init__(self, cursor: Any) -> None:
        self._cur = cursor

    async def _fetchone(self, sql: str, params: tuple = ()) -> Any:
        await self._cur.execute(sql, params)
        return await self._cur.fetchone()

    async def ensure_user(self, name: str) -> int:
        await self._cur.execute(
            "INSERT INTO users (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
            (name,),
        )
        row = await self._fetchone("SELECT id FROM users WHERE name = %s", (name,))
        if row is None:
            raise LedgerInvariantError(f"user {name!r} missing after insert")
        return int(row[0])

    async def lock_user(self, user_id: int) -> None:
        row = await self._fetchone("SELECT id FROM users WHERE id = %s FOR UPDATE", (user_id,))
        if row is None:
            raise LedgerInvariantError(f"user {user_id} does not exist")

    async def lock_rounds(self) -> None:
        await self._cur.execute("LOCK TABLE rounds IN EXCLUSIVE MODE", ())

    async def active_round(self, lock: bool = False) -> int | None:
        sql = "SELECT number FROM rounds WHERE status = 'active'"
        if lock:
            sql += " FOR SHARE"
        row = await self._fetchone(sql)
        return int(row[0]) if row is not None else None

    async def round_exists(self, number: int) -> bool:
        row = await self._fetchone("SELECT 1 FROM rounds WHERE number = %s", (number,))
        return row is not None

    async def complete_active_rounds(self) -> int:
        await self._cur.execute("UPDATE rounds SET status = 'completed' WHERE status = 'active'", ())
        return max(self._cur.rowcount, 0)

    async def upsert_round(self, number: int, status: RoundStatus) -> None:
        await self._cur.execute(
            """
            INSERT INTO rounds (number, status) VALUES (%s, %s)
            ON CONFLICT (number) DO UPDATE SET status = EXCLUDED.status
            """,
            (number, status.value),
        )

    async def list_rounds(self) -> list[RoundRecord]:
        await self._cur.execute("SELECT number, status FROM rounds ORDER BY number", ())
        rows = await self._cur.fetchall()
        return [RoundRecord(number=int(number), status=RoundStatus(status)) for number, status in rows]

    async def insert_token(self, value: str, added_at: datetime) -> bool:
        await self._cur.execute(
            "INSERT INTO tokens (value, added_at) VALUES (%s, %s) ON CONFLICT (value) DO NOTHING",
            (value, added_at),
        )
        return self._cur.rowcount == 1

    async def get_token(self, value: str) -> TokenRecord | None:
        row = await self._fetchone(
            """
            SELECT value, claimed, claiming_user, claimed_at, added_at, claim_round
            FROM tokens
            WHERE value = %s
            """,
            (value,),
        )
        if row is None:
            return None
        value, claimed, claiming_user, claimed_at, added_at, claim_round = row
        return TokenRecord(
            value=value,
            claimed=bool(claimed),
            claiming_user=claiming_user,
            claimed_at=claimed_at,
            added_at=added_at,
            claim_round=claim_round,
        )

    async def count_unclaimed(self) -> int:
        row = await self._fetchone("SELECT count(*) FROM tokens WHERE claimed = FALSE")
        return int(row[0]) if row is not None else 0

    async def has_active_round_claim(self, user_id: int) -> bool:
        row = await self._fetchone(
            """
            SELECT 1
            FROM tokens c
            JOIN rounds r ON r.number = c.claim_round
            WHERE c.claiming_user = %s AND c.claimed = TRUE AND r.status = 'active'
            LIMIT 1
            """,
            (user_id,),
        )
        return row is not None

    async def select_unclaimed(self, user_id: int, one_per_round: bool = True) -> str | None:
        if one_per_round:
            row = await self._fetchone(
                """
                SELECT t.value
                FROM tokens t
                WHERE t.claimed = FALSE
                  AND NOT EXISTS (
                    SELECT 1
                    FROM tokens c
                    JOIN rounds r ON r.number = c.claim_round
                    WHERE c.claiming_user = %s AND c.claimed = TRUE AND r.status = 'active'
                  )
                ORDER BY t.id
                LIMIT 1
                FOR UPDATE OF t SKIP LOCKED
                """,
                (user_id,),
            )
        else:
            row = await self._fetchone(
                """
                SELECT t.value
                FROM tokens t
                WHERE t.claimed = FALSE
                ORDER BY t.id
                LIMIT 1
                FOR UPDATE OF t SKIP LOCKED
                """
            )
        return row[0] if row is not None else None

    async def wait_for_unclaimed(self) -> str | None:
        # Without SKIP LOCKED; the row is re-checked once its holder commits or
        # rolls back, so this comes back empty when that claim went through.
        row = await self._fetchone(
            """
            SELECT t.value
            FROM tokens t
            WHERE t.claimed = FALSE
            ORDER BY t.id
            LIMIT 1
            FOR UPDATE OF t
            """
        )
        return row[0] if row is not None else None

    async def bind(self, value: str, user_id: int, round_number: int, claimed_at: datetime) -> None:
        await self._cur.execute(
            """
            UPDATE tokens
            SET claimed = TRUE, claiming_user = %s, claimed_at = %s, claim_round = %s
            WHERE value = %s AND claimed = FALSE
            """,
            (user_id, claimed_at, round_number, value),
        )
        if self._cur.rowcount != 1:
            raise LedgerInvariantError(f"token is missing or already claimed (user {user_id})")

    async def load_config(self) -> dict[str, str]:
        await self._cur.execute("SELECT key, value FROM config", ())
        rows = await self._cur.fetchall()
        return {str(key): str(value) for key, value in rows}

    async def set_config(self, key: str, value: str) -> None:
        await self._cur.execute(
            """
            INSERT INTO config (key, value) VALUES (%s, %s)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
            """,
            (key, value),
        )


def create_store(database_url: str | None, pool_size: int = DEFAULT_POOL_SIZE) -> LedgerStore:
    if database_url:
        return PostgresLedgerStore(database_url=database_url, pool_size=pool_size)
    return InMemoryLedgerStore()
