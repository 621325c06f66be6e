"""User registry keyed on the external user name."""

from __future__ import annotations

import logging

from keyledger.backend.errors import LedgerStorageError
from keyledger.backend.models import StorageError, UserLookup
from keyledger.backend.store import LedgerStore

logger = logging.getLogger(__name__)


class UserRegistry:
    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def ensure(self, name: str) -> UserLookup:
        """Return the internal id for ``name``, creating the user on first sight."""
        name = name.strip()
        if not name:
            raise ValueError("user name must not be empty")
        try:
            async with self._store.transaction() as tx:
                user_id = await tx.ensure_user(name)
        except LedgerStorageError as exc:
            logger.warning("Could not register user %s: %s", name, exc)
            return UserLookup(error=StorageError.of(exc))
        return UserLookup(user_id=user_id)
