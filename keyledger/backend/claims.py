"""Claim protocol: atomically hand one unclaimed token to one user.

A claim runs as a single transaction on the store:

1. lock the user row so two claims by the same user cannot interleave,
2. read the active round (shared lock, so a rollover waits for the claim),
3. pick an unclaimed token, skipping it entirely when the user already holds a
   token bound to the round whose status is ``active``,
4. bind the token to the user and round and commit.

When no token can be picked the transaction is inspected further to tell an
exhausted pool apart from a user who already claimed this round. Tokens that
are only row-locked by other claims in flight are waited for rather than
reported. The outcome is returned as a :class:`ClaimOutcome`; storage failures
never escape as exceptions.
"""

from __future__ import annotations

import logging

from keyledger.backend.errors import (
    LedgerInvariantError,
    StorageUnavailableError,
    TransactionFailedError,
)
from keyledger.backend.models import ClaimError, ClaimOutcome, local_now
from keyledger.backend.store import LedgerStore, LedgerTransaction
from keyledger.backend.users import UserRegistry

logger = logging.getLogger(__name__)

# Upper bound on waits for row locks held by concurrent claims.
MAX_LOCK_WAITS = 8


class ClaimOrchestrator:
    def __init__(self, store: LedgerStore, users: UserRegistry) -> None:
        self._store = store
        self._users = users

    async def claim(self, user: str) -> ClaimOutcome:
        """Claim a token, at most one per user and active round."""
        return await self._claim(user, one_per_round=True)

    async def claim_unchecked(self, user: str) -> ClaimOutcome:
        """Claim a token ignoring the one-per-round rule. Administrators only."""
        return await self._claim(user, one_per_round=False)

    async def _claim(self, user: str, one_per_round: bool) -> ClaimOutcome:
        user = user.strip()
        if not user:
            return ClaimOutcome.refused(ClaimError.USER_INELIGIBLE)
        registered = await self._users.ensure(user)
        if registered.error is not None:
            return ClaimOutcome.refused(ClaimError(registered.error.value))
        user_id = registered.user_id
        try:
            async with self._store.transaction() as tx:
                await tx.lock_user(user_id)
                round_number = await tx.active_round(lock=True)
                if round_number is None:
                    logger.debug("Claim by %s refused: no active round", user)
                    return ClaimOutcome.refused(ClaimError.NO_ACTIVE_ROUND)

                token, error = await self._pick_token(tx, user_id, one_per_round)
                if error is not None:
                    logger.debug("Claim by %s in round %s refused: %s", user, round_number, error.value)
                    return ClaimOutcome.refused(error)

                await tx.bind(token, user_id, round_number, local_now())
        except StorageUnavailableError as exc:
            logger.warning("Claim by %s failed, store unavailable: %s", user, exc)
            return ClaimOutcome.refused(ClaimError.STORAGE_UNAVAILABLE)
        except TransactionFailedError as exc:
            logger.warning("Claim by %s failed, transaction rolled back: %s", user, exc)
            return ClaimOutcome.refused(ClaimError.TRANSACTION_FAILED)
        except LedgerInvariantError:
            logger.exception("Claim by %s violated a ledger invariant", user)
            return ClaimOutcome.refused(ClaimError.TRANSACTION_FAILED)

        logger.info(
            "User %s claimed a key in round %s%s",
            user,
            round_number,
            "" if one_per_round else " (unchecked)",
        )
        return ClaimOutcome.granted(token)

    @staticmethod
    async def _pick_token(
        tx: LedgerTransaction,
        user_id: int,
        one_per_round: bool,
    ) -> tuple[str | None, ClaimError | None]:
        """Return a locked token for the user, or why there is none."""
        for _ in range(MAX_LOCK_WAITS):
            token = await tx.select_unclaimed(user_id, one_per_round=one_per_round)
            if token is not None:
                return token, None
            if await tx.count_unclaimed() == 0:
                return None, ClaimError.POOL_EXHAUSTED
            if one_per_round and await tx.has_active_round_claim(user_id):
                return None, ClaimError.ALREADY_CLAIMED_THIS_ROUND
            # Every remaining token is locked by another claim; wait for it.
            token = await tx.wait_for_unclaimed()
            if token is not None:
                return token, None
        logger.warning("Gave up waiting for locked keys after %d attempts", MAX_LOCK_WAITS)
        return None, ClaimError.TRANSACTION_FAILED
