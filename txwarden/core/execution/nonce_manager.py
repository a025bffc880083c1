"""
Nonce management for concurrent transactions.

The manager is the single writer of each account's next-nonce counter. All
operations for one account are serialized by a per-account lock; different
accounts never wait on each other.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Optional, Set

if TYPE_CHECKING:
    from ...providers.base import LedgerClient


logger = logging.getLogger(__name__)


@dataclass
class NonceState:
    """Tracks nonce state for one account."""
    account: str
    next_nonce: int                             # Next never-issued nonce
    confirmed_nonce: int = 0                    # One past the highest confirmed
    in_flight: Set[int] = field(default_factory=set)
    released: Set[int] = field(default_factory=set)  # Below next_nonce, free for reuse
    last_synced: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NonceManager:
    """
    Issues strictly increasing, gap-free nonces per account.

    Features:
    - Reads the network transaction count only when nothing is in flight
      for the account (first use, or after a restart)
    - Released nonces are handed out again before new ones, lowest first
    - Releasing the highest issued nonce rolls the counter back
    - Refresh after a NonceTooLow rejection
    """

    def __init__(self, client: "LedgerClient"):
        self._client = client
        self._states: Dict[str, NonceState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_key(self, account: str) -> str:
        return account.lower()

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _fetch_on_chain_nonce(self, account: str) -> int:
        return await self._client.get_transaction_count(account)

    def _apply_chain_nonce(self, key: str, on_chain_nonce: int) -> NonceState:
        state = self._states.get(key)
        if state is None:
            state = NonceState(
                account=key,
                next_nonce=on_chain_nonce,
                confirmed_nonce=on_chain_nonce,
            )
            self._states[key] = state
            return state

        # Nonces the chain has already consumed can never be reused
        state.released = {n for n in state.released if n >= on_chain_nonce}
        if on_chain_nonce > state.next_nonce:
            state.next_nonce = on_chain_nonce
        state.confirmed_nonce = max(state.confirmed_nonce, on_chain_nonce)
        state.last_synced = datetime.now(timezone.utc)
        return state

    def _take_next(self, state: NonceState) -> int:
        if state.released:
            nonce = min(state.released)
            state.released.discard(nonce)
        else:
            nonce = state.next_nonce
            state.next_nonce += 1
        state.in_flight.add(nonce)
        return nonce

    async def reserve(self, account: str) -> int:
        """
        Reserve the next nonce for an account.

        Returns:
            The reserved nonce; the caller must later confirm or release it.
        """
        key = self._get_key(account)

        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None or not state.in_flight:
                on_chain_nonce = await self._fetch_on_chain_nonce(account)
                state = self._apply_chain_nonce(key, on_chain_nonce)

            nonce = self._take_next(state)
            logger.debug(f"Reserved nonce {nonce} for {key}")
            return nonce

    async def release(self, account: str, nonce: int) -> bool:
        """
        Return a reserved nonce after a build or broadcast failure.

        Returns False (and changes nothing) if the nonce is not in flight,
        so a second release of the same nonce is harmless.
        """
        key = self._get_key(account)

        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None or nonce not in state.in_flight:
                logger.warning(f"Ignoring release of nonce {nonce} for {key}: not in flight")
                return False

            state.in_flight.discard(nonce)
            state.released.add(nonce)

            # Roll back over any released tail so no gap is left behind
            while state.next_nonce - 1 in state.released:
                state.next_nonce -= 1
                state.released.discard(state.next_nonce)

            logger.debug(f"Released nonce {nonce} for {key}")
            return True

    async def confirm(self, account: str, nonce: int) -> bool:
        """Mark a nonce as consumed on-chain (included, reverted or replaced)."""
        key = self._get_key(account)

        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None or nonce not in state.in_flight:
                return False

            state.in_flight.discard(nonce)
            if nonce >= state.confirmed_nonce:
                state.confirmed_nonce = nonce + 1
            return True

    async def replace_stale(self, account: str, stale_nonce: int) -> int:
        """
        Swap a nonce the network reported as already used for a fresh one.

        The stale nonce is dropped, not released: something else consumed it.
        """
        key = self._get_key(account)

        async with self._get_lock(key):
            on_chain_nonce = await self._fetch_on_chain_nonce(account)
            state = self._apply_chain_nonce(key, on_chain_nonce)
            state.in_flight.discard(stale_nonce)
            state.released.discard(stale_nonce)

            nonce = self._take_next(state)
            logger.info(f"Nonce {stale_nonce} for {key} was stale; chain at {on_chain_nonce}, reissued {nonce}")
            return nonce

    async def sync_with_chain(self, account: str) -> int:
        """
        Sync nonce state with on-chain data.

        Returns the current on-chain pending nonce.
        """
        key = self._get_key(account)

        async with self._get_lock(key):
            on_chain_nonce = await self._fetch_on_chain_nonce(account)
            state = self._apply_chain_nonce(key, on_chain_nonce)
            state.in_flight = {n for n in state.in_flight if n >= on_chain_nonce}
            return on_chain_nonce

    def get_state(self, account: str) -> Optional[NonceState]:
        """Get the current nonce state for an account."""
        return self._states.get(self._get_key(account))

    def clear_state(self, account: str) -> None:
        """Forget cached nonce state for an account."""
        self._states.pop(self._get_key(account), None)
