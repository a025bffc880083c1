"""
Tests for the NonceManager.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from txwarden.core.execution import NonceManager


ACCOUNT = "0x1111111111111111111111111111111111111111"
OTHER = "0x2222222222222222222222222222222222222222"


def make_client(*counts: int) -> MagicMock:
    client = MagicMock()
    if len(counts) == 1:
        client.get_transaction_count = AsyncMock(return_value=counts[0])
    else:
        client.get_transaction_count = AsyncMock(side_effect=list(counts))
    return client


class TestReserve:
    """Nonce issuance."""

    @pytest.mark.asyncio
    async def test_first_reserve_reads_chain(self):
        client = make_client(7)
        manager = NonceManager(client)

        assert await manager.reserve(ACCOUNT) == 7
        client.get_transaction_count.assert_awaited_once_with(ACCOUNT)

    @pytest.mark.asyncio
    async def test_chain_not_read_while_nonces_in_flight(self):
        client = make_client(7)
        manager = NonceManager(client)

        nonces = [await manager.reserve(ACCOUNT) for _ in range(3)]

        assert nonces == [7, 8, 9]
        assert client.get_transaction_count.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_reservations_are_distinct_and_contiguous(self):
        manager = NonceManager(make_client(0))

        nonces = await asyncio.gather(*(manager.reserve(ACCOUNT) for _ in range(20)))

        assert sorted(nonces) == list(range(20))

    @pytest.mark.asyncio
    async def test_accounts_are_independent(self):
        client = MagicMock()
        client.get_transaction_count = AsyncMock(side_effect=lambda account: 3 if account == ACCOUNT else 40)
        manager = NonceManager(client)

        assert await manager.reserve(ACCOUNT) == 3
        assert await manager.reserve(OTHER) == 40
        assert await manager.reserve(ACCOUNT) == 4

    @pytest.mark.asyncio
    async def test_account_key_is_case_insensitive(self):
        manager = NonceManager(make_client(1))

        mixed = "0xAbCdEfabcdefABCDEFabcdefabcdefabcdefABCD"
        await manager.reserve(mixed)
        assert await manager.reserve(mixed.lower()) == 2


class TestRelease:
    """Returning nonces after build or broadcast failures."""

    @pytest.mark.asyncio
    async def test_released_nonce_reused_before_new_ones(self):
        manager = NonceManager(make_client(5))
        for _ in range(3):
            await manager.reserve(ACCOUNT)  # 5, 6, 7

        assert await manager.release(ACCOUNT, 6) is True
        assert await manager.reserve(ACCOUNT) == 6
        assert await manager.reserve(ACCOUNT) == 8

    @pytest.mark.asyncio
    async def test_lowest_released_nonce_first(self):
        manager = NonceManager(make_client(0))
        for _ in range(4):
            await manager.reserve(ACCOUNT)  # 0..3

        await manager.release(ACCOUNT, 2)
        await manager.release(ACCOUNT, 1)

        assert await manager.reserve(ACCOUNT) == 1
        assert await manager.reserve(ACCOUNT) == 2

    @pytest.mark.asyncio
    async def test_releasing_top_nonce_rolls_counter_back(self):
        manager = NonceManager(make_client(10))
        await manager.reserve(ACCOUNT)  # 10
        await manager.reserve(ACCOUNT)  # 11

        await manager.release(ACCOUNT, 11)

        state = manager.get_state(ACCOUNT)
        assert state.next_nonce == 11
        assert state.released == set()
        assert await manager.reserve(ACCOUNT) == 11

    @pytest.mark.asyncio
    async def test_release_collapses_released_tail(self):
        manager = NonceManager(make_client(0))
        for _ in range(3):
            await manager.reserve(ACCOUNT)  # 0, 1, 2

        await manager.release(ACCOUNT, 1)
        await manager.release(ACCOUNT, 2)

        state = manager.get_state(ACCOUNT)
        assert state.next_nonce == 1
        assert state.released == set()
        assert state.in_flight == {0}

    @pytest.mark.asyncio
    async def test_double_release_is_a_no_op(self):
        manager = NonceManager(make_client(0))
        await manager.reserve(ACCOUNT)
        await manager.reserve(ACCOUNT)

        assert await manager.release(ACCOUNT, 0) is True
        assert await manager.release(ACCOUNT, 0) is False

        state = manager.get_state(ACCOUNT)
        assert state.released == {0}
        assert state.in_flight == {1}

    @pytest.mark.asyncio
    async def test_release_unknown_account(self):
        manager = NonceManager(make_client(0))
        assert await manager.release(ACCOUNT, 0) is False


class TestConfirmAndStale:
    """Settlement and NonceTooLow remediation."""

    @pytest.mark.asyncio
    async def test_confirm_removes_from_flight(self):
        manager = NonceManager(make_client(3))
        await manager.reserve(ACCOUNT)

        assert await manager.confirm(ACCOUNT, 3) is True
        state = manager.get_state(ACCOUNT)
        assert state.in_flight == set()
        assert state.confirmed_nonce == 4
        assert await manager.confirm(ACCOUNT, 3) is False

    @pytest.mark.asyncio
    async def test_chain_reread_once_nothing_in_flight(self):
        client = make_client(3, 9)
        manager = NonceManager(client)
        await manager.reserve(ACCOUNT)
        await manager.confirm(ACCOUNT, 3)

        # Another process sent transactions meanwhile
        assert await manager.reserve(ACCOUNT) == 9
        assert client.get_transaction_count.await_count == 2

    @pytest.mark.asyncio
    async def test_replace_stale_skips_to_chain_count(self):
        manager = NonceManager(make_client(5, 6))
        assert await manager.reserve(ACCOUNT) == 5

        fresh = await manager.replace_stale(ACCOUNT, 5)

        assert fresh == 6
        state = manager.get_state(ACCOUNT)
        assert state.in_flight == {6}
        assert state.next_nonce == 7

    @pytest.mark.asyncio
    async def test_replace_stale_drops_released_below_chain(self):
        manager = NonceManager(make_client(0, 3))
        for _ in range(3):
            await manager.reserve(ACCOUNT)  # 0, 1, 2
        await manager.release(ACCOUNT, 1)

        fresh = await manager.replace_stale(ACCOUNT, 0)

        assert fresh == 3
        assert manager.get_state(ACCOUNT).released == set()

    @pytest.mark.asyncio
    async def test_sync_with_chain_forgets_mined_nonces(self):
        manager = NonceManager(make_client(0, 2))
        for _ in range(3):
            await manager.reserve(ACCOUNT)

        assert await manager.sync_with_chain(ACCOUNT) == 2
        assert manager.get_state(ACCOUNT).in_flight == {2}

    @pytest.mark.asyncio
    async def test_clear_state(self):
        manager = NonceManager(make_client(0))
        await manager.reserve(ACCOUNT)

        manager.clear_state(ACCOUNT)

        assert manager.get_state(ACCOUNT) is None
