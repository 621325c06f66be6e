"""Runtime settings persisted in the ledger and mirrored in memory.

Administrators change these at runtime (eligibility role, minimum account age,
giveaway duration). Every write goes to the store first and only then to the
in-memory copy, so a failed write never leaves the cache ahead of the store.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
import threading
from typing import Any, Callable

from keyledger.backend.errors import LedgerStorageError
from keyledger.backend.models import StorageError
from keyledger.backend.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerConfig:
    role_id: str | None = None
    age_bound_days: int = 5
    giveaway_duration: int = 3600
    current_round: int | None = None


@dataclass(frozen=True)
class ConfigUpdate:
    """The cached config after a load or write, and the storage error if it failed."""

    config: LedgerConfig
    error: StorageError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError(f"expected a non-negative integer, got {raw!r}")
    return value


def _non_empty(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise ValueError("expected a non-empty value")
    return value


_PARSERS: dict[str, Callable[[str], Any]] = {
    "role_id": _non_empty,
    "age_bound_days": _non_negative_int,
    "giveaway_duration": _non_negative_int,
    "current_round": _non_negative_int,
}

# Owned by the round manager; mirrored here but never written by administrators.
_CACHE_ONLY_KEYS = frozenset({"current_round"})

CONFIG_KEYS = tuple(field.name for field in fields(LedgerConfig))


def _parse(key: str, value: str) -> Any:
    parser = _PARSERS.get(key)
    if parser is None:
        raise ValueError(f"unknown config key {key!r}")
    try:
        return parser(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for {key!r}: {exc}") from exc


class ConfigStore:
    def __init__(self, store: LedgerStore, defaults: LedgerConfig | None = None) -> None:
        self._store = store
        self._defaults = defaults if defaults is not None else LedgerConfig()
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    async def load(self) -> ConfigUpdate:
        """Replace the cache with the persisted entries."""
        try:
            async with self._store.transaction() as tx:
                persisted = await tx.load_config()
        except LedgerStorageError as exc:
            logger.warning("Could not load persisted config: %s", exc)
            return ConfigUpdate(config=self.snapshot(), error=StorageError.of(exc))

        values: dict[str, str] = {}
        for key, value in persisted.items():
            if key in _CACHE_ONLY_KEYS:
                continue
            try:
                _parse(key, value)
            except ValueError as exc:
                logger.warning("Ignoring persisted config entry %s: %s", key, exc)
                continue
            values[key] = value

        with self._lock:
            current_round = self._values.get("current_round")
            self._values = values
            if current_round is not None:
                self._values["current_round"] = current_round
        logger.info("Loaded %d config entries", len(values))
        return ConfigUpdate(config=self.snapshot())

    def get(self, key: str) -> str | None:
        """Return the cached value or the default; unknown keys raise ``ValueError``."""
        if key not in _PARSERS:
            raise ValueError(f"unknown config key {key!r}")
        with self._lock:
            value = self._values.get(key)
        if value is not None:
            return value
        default = getattr(self._defaults, key)
        return None if default is None else str(default)

    async def set(self, key: str, value: str) -> ConfigUpdate:
        """Persist a validated value, then cache it.

        Unknown keys and invalid values raise ``ValueError``; storage failures
        leave the cache untouched and are returned on the result.
        """
        if key in _CACHE_ONLY_KEYS:
            raise ValueError(f"{key!r} cannot be set directly")
        parsed = _parse(key, value)
        stored = str(parsed)
        try:
            async with self._store.transaction() as tx:
                await tx.set_config(key, stored)
        except LedgerStorageError as exc:
            logger.warning("Could not persist config %s: %s", key, exc)
            return ConfigUpdate(config=self.snapshot(), error=StorageError.of(exc))
        with self._lock:
            self._values[key] = stored
        logger.info("Config %s set to %s", key, stored)
        return ConfigUpdate(config=self.snapshot())

    def refresh(self, key: str, value: str) -> None:
        """Update the in-memory copy only."""
        stored = str(_parse(key, value))
        with self._lock:
            self._values[key] = stored

    def snapshot(self) -> LedgerConfig:
        with self._lock:
            values = dict(self._values)
        overrides = {key: _parse(key, raw) for key, raw in values.items()}
        return replace(self._defaults, **overrides)
