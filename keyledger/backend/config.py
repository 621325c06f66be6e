"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from keyledger.backend.config_store import LedgerConfig


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    pool_size: int
    server_salt: str
    admin_token_hash: str | None
    keys_file: Path
    sync_interval: float
    giveaway_duration: int
    age_bound_days: int
    strict_rounds: bool
    host: str
    port: int
    log_level: str

    def ledger_defaults(self) -> LedgerConfig:
        return LedgerConfig(
            age_bound_days=self.age_bound_days,
            giveaway_duration=self.giveaway_duration,
        )


def load_settings() -> BackendSettings:
    pool_size = int(os.getenv("KEYLEDGER_POOL_SIZE", "4"))
    if pool_size < 1:
        raise ValueError("KEYLEDGER_POOL_SIZE must be at least 1")
    return BackendSettings(
        database_url=os.getenv("KEYLEDGER_DATABASE_URL"),
        pool_size=pool_size,
        server_salt=os.getenv("KEYLEDGER_SERVER_SALT", "dev-salt"),
        admin_token_hash=os.getenv("KEYLEDGER_ADMIN_TOKEN_HASH"),
        keys_file=Path(os.getenv("KEYLEDGER_KEYS_FILE", "fresh_keys.txt")),
        sync_interval=float(os.getenv("KEYLEDGER_SYNC_INTERVAL", "30")),
        giveaway_duration=int(os.getenv("KEYLEDGER_GIVEAWAY_DURATION", "3600")),
        age_bound_days=int(os.getenv("KEYLEDGER_AGE_BOUND_DAYS", "5")),
        strict_rounds=_env_flag("KEYLEDGER_STRICT_ROUNDS"),
        host=os.getenv("KEYLEDGER_HOST", "127.0.0.1"),
        port=int(os.getenv("KEYLEDGER_PORT", "8000")),
        log_level=os.getenv("KEYLEDGER_LOG_LEVEL", "INFO").upper(),
    )
