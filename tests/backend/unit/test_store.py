import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import psycopg
from psycopg import errors as pg_errors
import pytest

from keyledger.backend.claims import ClaimOrchestrator
from keyledger.backend.errors import LedgerInvariantError, StorageUnavailableError, TransactionFailedError
from keyledger.backend.models import ClaimError, RoundStatus
from keyledger.backend.store import InMemoryLedgerStore, PostgresLedgerStore, create_store
from keyledger.backend.users import UserRegistry

NOW = datetime(2024, 1, 30, 21, 47, tzinfo=timezone.utc)


def test_create_store_returns_postgres_store_when_database_url_present() -> None:
    store = create_store(database_url="postgresql://local", pool_size=2)

    assert isinstance(store, PostgresLedgerStore)
    assert store.pool_size == 2


def test_create_store_returns_in_memory_store_when_database_url_missing() -> None:
    store = create_store(database_url=None)

    assert isinstance(store, InMemoryLedgerStore)


def test_in_memory_transaction_rolls_back_every_write_on_error() -> None:
    store = InMemoryLedgerStore()

    async def scenario() -> None:
        async with store.transaction() as tx:
            await tx.upsert_round(1, RoundStatus.ACTIVE)
            await tx.insert_token("K1", NOW)

        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                user_id = await tx.ensure_user("alice")
                await tx.bind("K1", user_id, 1, NOW)
                await tx.insert_token("K2", NOW)
                await tx.set_config("role_id", "42")
                await tx.complete_active_rounds()
                raise RuntimeError("boom")

        async with store.transaction() as tx:
            token = await tx.get_token("K1")
            assert token is not None
            assert token.claimed is False
            assert token.claiming_user is None
            assert await tx.get_token("K2") is None
            assert await tx.load_config() == {}
            assert await tx.active_round() == 1
            assert await tx.ensure_user("bob") == 1

    asyncio.run(scenario())


def test_in_memory_ensure_user_is_idempotent() -> None:
    store = InMemoryLedgerStore()

    async def scenario() -> None:
        async with store.transaction() as tx:
            first = await tx.ensure_user("alice")
            again = await tx.ensure_user("alice")
            other = await tx.ensure_user("bob")
        assert first == again
        assert other != first

    asyncio.run(scenario())


def test_in_memory_bind_refuses_claimed_or_missing_token() -> None:
    store = InMemoryLedgerStore()

    async def scenario() -> None:
        async with store.transaction() as tx:
            await tx.upsert_round(1, RoundStatus.ACTIVE)
            await tx.insert_token("K1", NOW)
            user_id = await tx.ensure_user("alice")
            await tx.bind("K1", user_id, 1, NOW)

        with pytest.raises(LedgerInvariantError):
            async with store.transaction() as tx:
                await tx.bind("K1", user_id, 1, NOW)
        with pytest.raises(LedgerInvariantError):
            async with store.transaction() as tx:
                await tx.bind("missing", user_id, 1, NOW)

    asyncio.run(scenario())


def test_in_memory_store_refuses_a_second_active_round() -> None:
    store = InMemoryLedgerStore()

    async def scenario() -> None:
        async with store.transaction() as tx:
            await tx.upsert_round(1, RoundStatus.ACTIVE)
        with pytest.raises(TransactionFailedError):
            async with store.transaction() as tx:
                await tx.upsert_round(2, RoundStatus.ACTIVE)
        async with store.transaction() as tx:
            rounds = await tx.list_rounds()
        assert [(record.number, record.status) for record in rounds] == [(1, RoundStatus.ACTIVE)]

    asyncio.run(scenario())


class _FakeCursor:
    def __init__(self, results: list) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.results = list(results)
        self.rowcounts: list[int] = []
        self.rowcount = -1
        self.fail_with: Exception | None = None

    async def execute(self, sql: str, params: tuple = ()) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.commands.append((sql, params))
        self.rowcount = self.rowcounts.pop(0) if self.rowcounts else 1

    async def fetchone(self):
        return self.results.pop(0) if self.results else None

    async def fetchall(self):
        return self.results.pop(0) if self.results else []

    async def __aenter__(self) -> "_FakeCursor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeTransaction:
    def __init__(self, connection: "_FakeConnection") -> None:
        self.connection = connection

    async def __aenter__(self) -> "_FakeTransaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.connection.commits += 1
        else:
            self.connection.rollbacks += 1
        return None


class _FakeConnection:
    def __init__(self, results: list) -> None:
        self.cursor_instance = _FakeCursor(results)
        self.commits = 0
        self.rollbacks = 0

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)


class _PostgresStoreWithFakeConnection(PostgresLedgerStore):
    def __init__(self, results: list | None = None) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(results or [])

    @asynccontextmanager
    async def _connect(self):
        yield self.fake_connection


def test_postgres_claim_locks_user_and_binds_selected_token() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), ("K1",)])
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("alice"))

    assert outcome.token == "K1"
    assert store.fake_connection.commits == 2
    assert store.fake_connection.rollbacks == 0
    commands = store.fake_connection.cursor_instance.commands
    assert "INSERT INTO users" in commands[0][0]
    assert "FOR UPDATE" in commands[2][0]
    assert "FOR SHARE" in commands[3][0]
    assert "NOT EXISTS" in commands[4][0]
    assert "SKIP LOCKED" in commands[4][0]
    assert commands[4][1] == (7,)
    assert "UPDATE tokens" in commands[5][0]
    assert "claimed = FALSE" in commands[5][0]
    user_id, claimed_at, round_number, value = commands[5][1]
    assert (user_id, round_number, value) == (7, 2, "K1")
    assert claimed_at.tzinfo is not None


def test_postgres_unchecked_claim_skips_round_predicate() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), ("K1",)])
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim_unchecked("alice"))

    assert outcome.token == "K1"
    select_sql = store.fake_connection.cursor_instance.commands[4][0]
    assert "NOT EXISTS" not in select_sql
    assert "SKIP LOCKED" in select_sql


def test_postgres_claim_rolls_back_when_bind_updates_nothing() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), ("K1",)])
    store.fake_connection.cursor_instance.rowcounts = [1, 1, 1, 1, 1, 0]
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("alice"))

    assert outcome.error is ClaimError.TRANSACTION_FAILED
    assert store.fake_connection.rollbacks == 1


def test_postgres_claim_reports_exhausted_pool() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), None, (0,)])
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("alice"))

    assert outcome.error is ClaimError.POOL_EXHAUSTED


def test_postgres_claim_reports_already_claimed_when_pool_has_keys() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), None, (3,), (1,)])
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("alice"))

    assert outcome.error is ClaimError.ALREADY_CLAIMED_THIS_ROUND


def test_postgres_claim_waits_for_rows_locked_by_other_claims() -> None:
    store = _PostgresStoreWithFakeConnection(results=[(7,), (7,), (2,), None, (1,), None, ("K2",)])
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("carol"))

    assert outcome.token == "K2"
    commands = store.fake_connection.cursor_instance.commands
    assert "count(*)" in commands[5][0]
    assert "c.claiming_user" in commands[6][0]
    assert "FOR UPDATE OF t" in commands[7][0]
    assert "SKIP LOCKED" not in commands[7][0]
    assert "UPDATE tokens" in commands[8][0]
    assert commands[8][1][3] == "K2"
    assert store.fake_connection.commits == 2


def test_postgres_claim_reports_exhaustion_after_locked_rows_are_claimed() -> None:
    store = _PostgresStoreWithFakeConnection(
        results=[(7,), (7,), (2,), None, (1,), None, None, None, (0,)],
    )
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("carol"))

    assert outcome.error is ClaimError.POOL_EXHAUSTED
    commands = [sql for sql, _ in store.fake_connection.cursor_instance.commands]
    assert "SKIP LOCKED" in commands[8]
    assert not any("UPDATE tokens" in sql for sql in commands)


def test_postgres_open_round_locks_table_before_rollover() -> None:
    from keyledger.backend.config_store import ConfigStore
    from keyledger.backend.rounds import RoundManager

    store = _PostgresStoreWithFakeConnection()
    config = ConfigStore(store)
    rounds = RoundManager(store, config)

    outcome = asyncio.run(rounds.open_round(3))

    assert outcome.ok
    commands = [sql for sql, _ in store.fake_connection.cursor_instance.commands]
    assert "LOCK TABLE rounds" in commands[0]
    assert "UPDATE rounds SET status = 'completed'" in commands[1]
    assert "ON CONFLICT (number)" in commands[2]
    assert store.fake_connection.cursor_instance.commands[2][1] == (3, "active")
    assert config.get("current_round") == "3"


def test_postgres_insert_token_reports_duplicates() -> None:
    store = _PostgresStoreWithFakeConnection()
    store.fake_connection.cursor_instance.rowcounts = [1, 0]

    async def scenario() -> tuple[bool, bool]:
        async with store.transaction() as tx:
            first = await tx.insert_token("K1", NOW)
            second = await tx.insert_token("K1", NOW)
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert "ON CONFLICT (value) DO NOTHING" in store.fake_connection.cursor_instance.commands[0][0]


@pytest.mark.parametrize(
    ("raised", "expected"),
    [
        (psycopg.OperationalError("connection lost"), StorageUnavailableError),
        (psycopg.InterfaceError("connection already closed"), StorageUnavailableError),
        (pg_errors.SerializationFailure("could not serialize"), TransactionFailedError),
        (pg_errors.DeadlockDetected("deadlock detected"), TransactionFailedError),
        (pg_errors.TransactionRollback("rolled back"), TransactionFailedError),
        (pg_errors.UniqueViolation("duplicate key"), TransactionFailedError),
    ],
)
def test_postgres_transaction_translates_driver_errors(raised, expected) -> None:
    store = _PostgresStoreWithFakeConnection()
    store.fake_connection.cursor_instance.fail_with = raised

    async def scenario() -> None:
        async with store.transaction() as tx:
            await tx.count_unclaimed()

    with pytest.raises(expected):
        asyncio.run(scenario())
    assert store.fake_connection.rollbacks == 1


def test_postgres_transaction_requires_open_pool() -> None:
    store = PostgresLedgerStore(database_url="postgresql://local")

    async def scenario() -> None:
        async with store.transaction() as tx:
            await tx.count_unclaimed()

    with pytest.raises(StorageUnavailableError):
        asyncio.run(scenario())


def test_postgres_claim_maps_unavailable_pool_to_claim_error() -> None:
    store = PostgresLedgerStore(database_url="postgresql://local")
    claims = ClaimOrchestrator(store, UserRegistry(store))

    outcome = asyncio.run(claims.claim("alice"))

    assert outcome.error is ClaimError.STORAGE_UNAVAILABLE
