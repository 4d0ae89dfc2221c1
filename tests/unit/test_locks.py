"""Tests for the per-key lock registry."""

import asyncio

import pytest

from m365_assessment.core.locks import KeyedLocks


class TestKeyedLocks:
    """Tests for KeyedLocks.hold()."""

    @pytest.mark.asyncio
    async def test_released_lock_is_evicted(self):
        locks = KeyedLocks()
        for n in range(50):
            async with locks.hold(f"tenant-{n}.onmicrosoft.com"):
                assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("contoso.com"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert order == ["a-start", "a-end", "b-start", "b-end", "c-start", "c-end"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_lock_alive(self):
        locks = KeyedLocks()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("contoso.com"):
                entered.set()
                await release.wait()

        first = asyncio.create_task(holder())
        await entered.wait()
        entered.clear()
        second = asyncio.create_task(holder())
        await asyncio.sleep(0)

        release.set()
        await first
        # The waiter still needs the same lock object
        assert len(locks) == 1
        await second
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_is_evicted(self):
        locks = KeyedLocks()

        async with locks.hold("contoso.com"):
            waiter = asyncio.create_task(locks.hold("contoso.com").__aenter__())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        async with locks.hold("contoso.com"):
            await asyncio.wait_for(self._enter(locks, "fabrikam.com"), timeout=1.0)

    @staticmethod
    async def _enter(locks, key):
        async with locks.hold(key):
            return True
