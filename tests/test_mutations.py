"""
Tests for the optimistic write protocol: snapshot, apply, commit or roll back.
"""

import asyncio

import pytest

from comp_valuation.core.cache import Tier, TieredCache
from comp_valuation.core.errors import MutationError, MutationInFlightError
from comp_valuation.services.mutations import MutationPhase, MutationState, OptimisticMutator


KEY = ("asset", "a-1")


@pytest.fixture
def cache(clock):
    return TieredCache(clock=clock)


class TestMutationState:
    def test_lifecycle(self):
        state = MutationState()
        assert state.phase is MutationPhase.CLEAN

        state.begin("snap")
        assert state.pending
        assert state.snapshot == "snap"

        assert state.fail() == "snap"
        assert state.phase is MutationPhase.ROLLED_BACK
        assert state.snapshot is None

        state.begin(None)
        state.succeed()
        assert state.phase is MutationPhase.COMMITTED

    def test_begin_twice_rejected(self):
        state = MutationState()
        state.begin(None)
        with pytest.raises(RuntimeError):
            state.begin(None)


class TestCommit:
    def test_optimistic_value_visible_while_pending(self, cache):
        mutator = OptimisticMutator(cache)
        cache.set(Tier.DYNAMIC, KEY, {"listPrice": 10})
        seen = []

        async def write():
            seen.append(cache.get(Tier.DYNAMIC, KEY))
            seen.append(mutator.state(KEY).phase)
            return {"listPrice": 12, "server": True}

        committed = asyncio.run(mutator.mutate(KEY, {"listPrice": 12}, write))

        assert seen == [{"listPrice": 12}, MutationPhase.OPTIMISTIC_PENDING]
        assert committed == {"listPrice": 12, "server": True}
        assert mutator.state(KEY).phase is MutationPhase.CLEAN
        assert mutator.pending() == []

    def test_settled_key_is_stale(self, cache):
        mutator = OptimisticMutator(cache)

        async def write():
            return "ok"

        asyncio.run(mutator.mutate(KEY, "new", write))

        entry = cache.peek(Tier.DYNAMIC, KEY)
        assert entry.data == "new"
        assert cache.is_stale(entry)


class TestRollback:
    def test_reader_sees_snapshot_after_failure(self, cache):
        mutator = OptimisticMutator(cache)
        cache.set(Tier.DYNAMIC, KEY, {"listPrice": 10})

        async def write():
            raise RuntimeError("write rejected")

        with pytest.raises(MutationError) as info:
            asyncio.run(mutator.mutate(KEY, {"listPrice": -1}, write, user_message="Not saved."))

        assert info.value.user_message == "Not saved."
        assert isinstance(info.value.__cause__, RuntimeError)
        assert cache.get(Tier.DYNAMIC, KEY) == {"listPrice": 10}
        assert mutator.state(KEY).phase is MutationPhase.CLEAN
        assert mutator.pending() == []

    def test_rollback_without_snapshot_removes_entry(self, cache):
        mutator = OptimisticMutator(cache)

        async def write():
            raise ValueError("nope")

        with pytest.raises(MutationError):
            asyncio.run(mutator.mutate(KEY, "optimistic", write))

        assert cache.peek(Tier.DYNAMIC, KEY) is None

    def test_cancelled_write_rolls_back(self, cache):
        mutator = OptimisticMutator(cache)
        cache.set(Tier.DYNAMIC, KEY, "before")

        async def scenario():
            async def write():
                await asyncio.sleep(3600)

            task = asyncio.ensure_future(mutator.mutate(KEY, "after", write))
            await asyncio.sleep(0)
            assert cache.get(Tier.DYNAMIC, KEY) == "after"
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert cache.get(Tier.DYNAMIC, KEY) == "before"

    def test_next_mutation_allowed_after_rollback(self, cache):
        mutator = OptimisticMutator(cache)

        async def fail():
            raise RuntimeError

        async def ok():
            return "saved"

        with pytest.raises(MutationError):
            asyncio.run(mutator.mutate(KEY, 1, fail))
        assert asyncio.run(mutator.mutate(KEY, 2, ok)) == "saved"


class TestConcurrency:
    def test_second_mutation_while_pending_rejected(self, cache):
        mutator = OptimisticMutator(cache)

        async def scenario():
            release = asyncio.Event()

            async def slow_write():
                await release.wait()
                return "first"

            first = asyncio.ensure_future(mutator.mutate(KEY, 1, slow_write))
            await asyncio.sleep(0)
            with pytest.raises(MutationInFlightError):
                await mutator.mutate(KEY, 2, slow_write)
            release.set()
            return await first

        assert asyncio.run(scenario()) == "first"
        assert cache.get(Tier.DYNAMIC, KEY) == 1

    def test_mutation_cancels_inflight_read(self, cache, clock):
        mutator = OptimisticMutator(cache)

        async def scenario():
            loading = asyncio.Event()

            async def slow_read():
                loading.set()
                await asyncio.sleep(3600)
                return "server value"

            async def write():
                return "ok"

            reader = asyncio.ensure_future(cache.read(Tier.DYNAMIC, KEY, slow_read))
            await loading.wait()
            await mutator.mutate(KEY, "optimistic", write)
            return await reader

        assert asyncio.run(scenario()) == "optimistic"


class TestStateLifetime:
    def test_settled_keys_leave_no_state_behind(self, cache):
        mutator = OptimisticMutator(cache)

        async def ok():
            return "saved"

        async def fail():
            raise RuntimeError

        async def scenario():
            for n in range(50):
                await mutator.mutate(("asset", f"a-{n}"), n, ok)
            with pytest.raises(MutationError):
                await mutator.mutate(("asset", "a-bad"), 0, fail)

        asyncio.run(scenario())
        assert mutator._states == {}

    def test_pending_lists_only_inflight_writes(self, cache):
        mutator = OptimisticMutator(cache)

        async def scenario():
            release = asyncio.Event()

            async def slow_write():
                await release.wait()
                return "done"

            task = asyncio.ensure_future(mutator.mutate(KEY, 1, slow_write))
            await asyncio.sleep(0)
            during = mutator.pending()
            release.set()
            await task
            return during, mutator.pending()

        during, after = asyncio.run(scenario())
        assert during == [(Tier.DYNAMIC, KEY)]
        assert after == []
