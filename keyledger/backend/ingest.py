"""Ingestion of externally supplied keys."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
import logging
from pathlib import Path

from keyledger.backend.inventory import KeyInventory
from keyledger.backend.models import IngestOutcome, SyncReport

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 30.0


class IngestionSync:
    def __init__(self, inventory: KeyInventory) -> None:
        self._inventory = inventory

    async def sync(self, candidates: Iterable[str]) -> SyncReport:
        """Insert every candidate not yet known. Safe to re-run on the same input.

        The pass stops at the first storage failure; keys stored before it stay
        stored and the next pass picks up the rest.
        """
        counts = {outcome: 0 for outcome in IngestOutcome}
        error = None
        for candidate in candidates:
            result = await self._inventory.ingest(candidate)
            if result.error is not None:
                error = result.error
                break
            counts[result.outcome] += 1
        report = SyncReport(
            inserted=counts[IngestOutcome.INSERTED],
            already_present=counts[IngestOutcome.ALREADY_PRESENT],
            blank=counts[IngestOutcome.BLANK],
            error=error,
        )
        if error is not None:
            logger.warning("Sync stopped after %d key(s): %s", report.seen, error.value)
            return report
        if report.inserted:
            logger.info("Added %d new key(s) to the inventory", report.inserted)
        else:
            logger.debug("No new keys (%d already present)", report.already_present)
        return report


def read_key_file(path: Path) -> list[str]:
    """Return the lines of the key file, or nothing when it does not exist."""
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        logger.warning("Key file %s does not exist", path)
        return []


class KeyFileWatcher:
    """Re-reads a key file on a fixed interval and feeds it to ``IngestionSync``."""

    def __init__(self, sync: IngestionSync, path: Path, interval: float = DEFAULT_SYNC_INTERVAL) -> None:
        self.sync = sync
        self.path = path
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("Key file watcher already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Watching %s every %ss", self.path, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped watching %s", self.path)

    async def sync_now(self) -> SyncReport:
        lines = await asyncio.to_thread(read_key_file, self.path)
        return await self.sync.sync(lines)

    async def _loop(self) -> None:
        while True:
            try:
                await self.sync_now()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Reading keys from %s failed", self.path)
            await asyncio.sleep(self.interval)
