"""Command line entry point for serving and administering the key ledger."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys
from typing import Awaitable, Callable, TypeVar

from keyledger.backend.config import BackendSettings, load_settings
from keyledger.backend.security import issue_admin_token
from keyledger.backend.service import KeyLedger, build_ledger

T = TypeVar("T")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="keyledger", description="Single-use key giveaway ledger")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    commands.add_parser("migrate", help="apply the database schema")

    sync = commands.add_parser("sync", help="ingest a key file once")
    sync.add_argument("file", nargs="?", type=Path, default=None)

    open_round = commands.add_parser("open-round", help="complete the active round and open a new one")
    open_round.add_argument("number", type=int)

    claim = commands.add_parser("claim", help="claim a key for a user")
    claim.add_argument("user")
    claim.add_argument("--unchecked", action="store_true", help="ignore the one-key-per-round rule")

    commands.add_parser("remaining", help="print the number of unclaimed keys")
    commands.add_parser("admin-token", help="generate an administrator token and its hash")
    return parser.parse_args(argv)


def _with_ledger(settings: BackendSettings, action: Callable[[KeyLedger], Awaitable[T]]) -> T | None:
    async def run() -> T | None:
        ledger = build_ledger(settings)
        started = await ledger.start()
        if started.error is not None:
            print(f"Could not start the ledger: {started.error.value}", file=sys.stderr)
            await ledger.stop()
            return None
        try:
            return await action(ledger)
        finally:
            await ledger.stop()

    return asyncio.run(run())


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        from keyledger.backend.api import create_app

        uvicorn.run(
            create_app(settings=settings),
            host=args.host or settings.host,
            port=args.port or settings.port,
            log_level=settings.log_level.lower(),
        )
        return 0

    if args.command == "migrate":
        from keyledger.backend.migrate import apply_schema

        if not settings.database_url:
            print("KEYLEDGER_DATABASE_URL is required for migration", file=sys.stderr)
            return 1
        apply_schema(settings.database_url)
        return 0

    if args.command == "admin-token":
        token, token_hash = issue_admin_token(settings.server_salt)
        print(f"token: {token}")
        print(f"KEYLEDGER_ADMIN_TOKEN_HASH={token_hash}")
        return 0

    if args.command == "sync":
        from keyledger.backend.ingest import read_key_file

        path = args.file or settings.keys_file
        report = _with_ledger(settings, lambda ledger: ledger.ingestion.sync(read_key_file(path)))
        if report is None:
            return 1
        print(f"inserted={report.inserted} already_present={report.already_present} blank={report.blank}")
        if report.error is not None:
            print(f"Sync stopped early: {report.error.value}", file=sys.stderr)
            return 1
        return 0

    if args.command == "open-round":
        outcome = _with_ledger(settings, lambda ledger: ledger.rounds.open_round(args.number))
        if outcome is None:
            return 1
        if not outcome.ok:
            print(f"Could not open round {args.number}: {outcome.error.value}", file=sys.stderr)
            return 1
        print(f"Round {outcome.number} is active")
        return 0

    if args.command == "claim":
        def claim(ledger: KeyLedger):
            if args.unchecked:
                return ledger.claims.claim_unchecked(args.user)
            return ledger.claims.claim(args.user)

        outcome = _with_ledger(settings, claim)
        if outcome is None:
            return 1
        if not outcome.ok:
            print(f"No key for {args.user}: {outcome.error.value}", file=sys.stderr)
            return 1
        print(outcome.token)
        return 0

    if args.command == "remaining":
        count = _with_ledger(settings, lambda ledger: ledger.inventory.count_unclaimed())
        if count is None:
            return 1
        if count.error is not None:
            print(f"Could not count keys: {count.error.value}", file=sys.stderr)
            return 1
        print(count.remaining)
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
