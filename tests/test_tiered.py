"""Tests for the TieredCache engine."""

import asyncio
import logging
from typing import Any, Hashable, Optional
from unittest.mock import MagicMock

import pytest

from tiercache.exceptions import UnknownTierError
from tiercache.tiered import TierEntry, TieredCache, TierStatus, TierStrategy

TIMEOUTS = {"a": 50, "b": 50, "c": 50}


class ChainStrategy(TierStrategy):
    """a -> b -> c -> removed, payload unchanged."""

    tiers = ("a", "b", "c")
    NEXT = {"a": "b", "b": "c"}

    def __init__(self, timeouts_ms=None) -> None:
        super().__init__(TIMEOUTS if timeouts_ms is None else timeouts_ms)
        self.resolved = []

    def resolve(self, key: Hashable, tier: str, entry: Optional[TierEntry]) -> Optional[Any]:
        self.resolved.append((key, tier, entry))
        if entry is None or entry.tier != tier:
            return None
        return entry.payload

    def on_tier_timeout(self, key: Hashable, cache: TieredCache) -> Optional[int]:
        entry = cache.get_entry(key)
        next_tier = self.NEXT.get(entry.tier)
        if next_tier is None:
            cache.delete(key)
            return None
        cache.replace_entry(key, next_tier, entry.payload)
        return self.default_timeout_for(next_tier)


class AsyncChainStrategy(ChainStrategy):
    """Same policy with coroutine hooks."""

    async def resolve(self, key, tier, entry):
        await asyncio.sleep(0)
        return super().resolve(key, tier, entry)

    async def timeout_for(self, key, tier, payload):
        await asyncio.sleep(0)
        return self.default_timeout_for(tier)

    async def on_tier_timeout(self, key, cache):
        await asyncio.sleep(0)
        return super().on_tier_timeout(key, cache)


class KeepStrategy(ChainStrategy):
    """Timer fires but the entry is kept without a new timer."""

    def __init__(self) -> None:
        super().__init__()
        self.fired = []

    def on_tier_timeout(self, key, cache):
        self.fired.append(key)
        return None


class SlowKeepStrategy(KeepStrategy):
    """Keeps the entry, but the timeout hook yields for a while first."""

    async def on_tier_timeout(self, key, cache):
        self.fired.append(key)
        await asyncio.sleep(0.04)
        return 1000


class FailingStrategy(ChainStrategy):
    def on_tier_timeout(self, key, cache):
        raise RuntimeError("advance failed")


@pytest.fixture
def strategy() -> ChainStrategy:
    return ChainStrategy()


@pytest.fixture
def cache(strategy: ChainStrategy) -> TieredCache:
    return TieredCache(strategy)


class TestGetSet:
    """Tests for get / set and direct queries."""

    async def test_set_and_get(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value")
        assert await cache.get("k", "a") == "value"
        assert cache.get_tier("k") == "a"
        assert cache.has("k") is True
        assert cache.size() == 1
        assert list(cache.keys()) == ["k"]
        cache.clear()

    async def test_get_unknown_passes_none_entry(self, cache: TieredCache, strategy: ChainStrategy) -> None:
        assert await cache.get("missing", "a") is None
        assert strategy.resolved == [("missing", "a", None)]
        assert cache.get_tier("missing") is None
        assert cache.has("missing") is False

    async def test_get_other_tier_rejected(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value", timeout_ms=None)
        assert await cache.get("k", "b") is None
        assert cache.get_tier("k") == "a"
        cache.clear()

    async def test_unknown_tier_raises(self, cache: TieredCache) -> None:
        with pytest.raises(UnknownTierError):
            await cache.set("k", "z", "value")
        assert cache.size() == 0

    async def test_async_hooks(self) -> None:
        cache = TieredCache(AsyncChainStrategy())
        await cache.set("k", "a", "value")
        assert await cache.get("k", "a") == "value"
        assert cache.pending_timers() == 1
        cache.clear()

    async def test_timeout_override(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value", timeout_ms=1000)
        await asyncio.sleep(0.08)
        assert cache.get_tier("k") == "a"
        cache.clear()

    async def test_timeout_for_consulted(self) -> None:
        strategy = ChainStrategy()
        strategy.timeout_for = MagicMock(return_value=None)
        cache = TieredCache(strategy)
        await cache.set("k", "a", "value")
        strategy.timeout_for.assert_called_once_with("k", "a", "value")
        assert cache.pending_timers() == 0

    async def test_get_error_propagates(self, cache: TieredCache, strategy: ChainStrategy) -> None:
        strategy.resolve = MagicMock(side_effect=ValueError("bad shape"))
        with pytest.raises(ValueError, match="bad shape"):
            await cache.get("k", "a")


class TestTierTransitions:
    """Tests for timer-driven tier changes."""

    async def test_a_b_c_then_removed(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.075)
        assert cache.get_tier("k") == "b"
        await asyncio.sleep(0.05)
        assert cache.get_tier("k") == "c"
        await asyncio.sleep(0.05)
        assert cache.get_tier("k") is None
        assert cache.pending_timers() == 0

    async def test_async_transitions(self) -> None:
        cache = TieredCache(AsyncChainStrategy())
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.075)
        assert cache.get_tier("k") == "b"
        cache.clear()

    async def test_get_refreshes_timer(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.03)
        assert await cache.get("k", "a", timeout_ms=200) == "value"
        await asyncio.sleep(0.05)
        assert cache.get_tier("k") == "a"
        cache.clear()

    async def test_miss_does_not_refresh_timer(self, cache: TieredCache) -> None:
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.03)
        assert await cache.get("k", "b", timeout_ms=200) is None
        await asyncio.sleep(0.05)
        assert cache.get_tier("k") == "b"
        cache.clear()

    async def test_none_keeps_entry_without_timer(self) -> None:
        strategy = KeepStrategy()
        cache = TieredCache(strategy)
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.075)
        assert strategy.fired == ["k"]
        assert cache.get_tier("k") == "a"
        assert cache.pending_timers() == 0

    async def test_timer_error_logged_and_swallowed(self) -> None:
        sink = MagicMock()
        cache = TieredCache(FailingStrategy(), sink)
        updates = MagicMock()
        cache.events.on("update", updates)
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.075)
        assert cache.get_tier("k") == "a"
        assert cache.pending_timers() == 0
        assert updates.call_count == 2
        level, message = sink.log.call_args.args
        assert level == logging.ERROR
        assert "tier timeout failed for key: k" in message
        assert sink.log.call_args.kwargs["exc_info"] is True

    async def test_write_during_suspended_advance_keeps_new_timer(self) -> None:
        strategy = SlowKeepStrategy()
        cache = TieredCache(strategy)
        await cache.set("k", "a", 1, timeout_ms=10)
        await asyncio.sleep(0.02)
        assert strategy.fired == ["k"]
        await cache.set("k", "a", 2, timeout_ms=100)
        await asyncio.sleep(0.05)
        assert cache.pending_timers() == 1
        assert cache.get_entry("k").payload == 2
        await asyncio.sleep(0.08)
        assert strategy.fired == ["k", "k"]
        cache.clear()

    async def test_advance_logged_with_next_timeout(self) -> None:
        sink = MagicMock()
        cache = TieredCache(ChainStrategy(), sink, {"advance": "debug"})
        await cache.set("k", "a", "value")
        await asyncio.sleep(0.075)
        sink.log.assert_called_once_with(
            logging.DEBUG,
            "TieredCache advance key: k, tier: b, next timeout: 50",
            extra={"cache_op": "advance"},
        )
        cache.clear()

    async def test_clear_cancels_timers(self, cache: TieredCache) -> None:
        await cache.set("k1", "a", 1)
        await cache.set("k2", "b", 2)
        assert cache.pending_timers() == 2
        cache.clear()
        assert cache.pending_timers() == 0
        await cache.set("k1", "c", 3, timeout_ms=1000)
        await asyncio.sleep(0.075)
        assert cache.get_tier("k1") == "c"
        cache.clear()

    async def test_delete_cancels_timer(self, cache: TieredCache) -> None:
        await cache.set("k", "a", 1)
        assert cache.delete("k") is True
        assert cache.pending_timers() == 0


class TestBatchOperations:
    """Tests for set_entries / delete_keys / clear."""

    async def test_set_entries_single_notifications(self, cache: TieredCache) -> None:
        on_set, on_update = MagicMock(), MagicMock()
        cache.events.on("set", on_set)
        cache.events.on("update", on_update)
        stored = await cache.set_entries("b", [("x", 1), ("y", 2)], timeout_ms=1000)
        assert stored == ["x", "y"]
        on_set.assert_called_once_with(["x", "y"])
        on_update.assert_called_once()
        assert on_update.call_args.args[0].tiers["b"] == 2
        cache.clear()

    async def test_set_entries_accepts_mapping(self, cache: TieredCache) -> None:
        await cache.set_entries("a", {"x": 1, "y": 2})
        assert await cache.get("y", "a") == 2
        cache.clear()

    async def test_set_entries_isolates_failures(self, cache: TieredCache, strategy: ChainStrategy) -> None:
        def timeout_for(key, tier, payload):
            if key == "bad":
                raise ValueError("no timeout")
            return None

        strategy.timeout_for = timeout_for
        with pytest.raises(ValueError, match="no timeout"):
            await cache.set_entries("a", [("x", 1), ("bad", 2), ("y", 3)])
        assert sorted(cache.keys()) == ["x", "y"]
        assert cache.status().size == 2

    async def test_delete_keys(self, cache: TieredCache) -> None:
        await cache.set_entries("a", {"x": 1, "y": 2}, timeout_ms=1000)
        on_delete = MagicMock()
        cache.events.on("delete", on_delete)
        assert cache.delete_keys(["x", "missing", "y"]) == 2
        on_delete.assert_called_once_with(["x", "y"])
        assert cache.delete_keys(["x"]) == 0
        assert on_delete.call_count == 1

    async def test_delete_twice(self, cache: TieredCache) -> None:
        await cache.set("k", "a", 1)
        assert cache.delete("k") is True
        assert cache.delete("k") is False

    async def test_clear_notifications(self, cache: TieredCache) -> None:
        await cache.set_entries("a", {"x": 1, "y": 2})
        calls = []
        cache.events.on("delete", lambda keys: calls.append(("delete", keys)))
        cache.events.on("clear", lambda: calls.append(("clear",)))
        cache.events.on("update", lambda status: calls.append(("update", status.size)))
        cache.clear()
        assert calls == [("delete", ["x", "y"]), ("clear",), ("update", 0)]
        assert cache.size() == 0


class TestTierIteration:
    """Tests for tier_values / tier_entries."""

    async def test_tier_entries_filters_by_resolver(self, cache: TieredCache) -> None:
        await cache.set("x", "a", 1, timeout_ms=1000)
        await cache.set("y", "b", 2, timeout_ms=1000)
        await cache.set("z", "a", 3, timeout_ms=1000)
        assert [kv async for kv in cache.tier_entries("a")] == [("x", 1), ("z", 3)]
        assert [v async for v in cache.tier_values("b")] == [2]
        cache.clear()

    async def test_every_entry_passed_to_resolver(self, cache: TieredCache, strategy: ChainStrategy) -> None:
        await cache.set("x", "a", 1, timeout_ms=1000)
        await cache.set("y", "b", 2, timeout_ms=1000)
        strategy.resolved.clear()
        [v async for v in cache.tier_values("c")]
        assert [(key, tier) for key, tier, _ in strategy.resolved] == [("x", "c"), ("y", "c")]
        cache.clear()


class TestStatus:
    """Tests for the status snapshot."""

    def test_initial_status(self, cache: TieredCache) -> None:
        assert cache.status() == TierStatus(size=0, tiers={"a": 0, "b": 0, "c": 0})

    async def test_status_consistency(self, cache: TieredCache) -> None:
        await cache.set("x", "a", 1, timeout_ms=1000)
        await cache.set("y", "b", 2, timeout_ms=1000)
        await cache.set("z", "b", 3, timeout_ms=1000)
        cache.delete("x")
        status = cache.status()
        assert status.size == sum(status.tiers.values()) == cache.size() == 2
        assert status.tiers == {"a": 0, "b": 2, "c": 0}
        cache.clear()
        assert cache.status().size == 0

    async def test_snapshot_reused_between_mutations(self, cache: TieredCache) -> None:
        await cache.set("x", "a", 1, timeout_ms=1000)
        first = cache.status()
        assert cache.status() is first
        await cache.set("y", "a", 2, timeout_ms=1000)
        assert cache.status() is not first
        assert first.size == 1
        cache.clear()

    def test_snapshot_is_frozen(self, cache: TieredCache) -> None:
        with pytest.raises(Exception):
            cache.status().size = 5
        with pytest.raises(TypeError):
            cache.status().tiers["a"] = 1
        assert cache.status().tiers["a"] == 0

    def test_dump_gives_plain_dict(self, cache: TieredCache) -> None:
        dumped = cache.status().model_dump()
        assert dumped == {"size": 0, "tiers": {"a": 0, "b": 0, "c": 0}}
        assert type(dumped["tiers"]) is dict

    async def test_update_after_transition(self, cache: TieredCache) -> None:
        await cache.set("k", "a", 1)
        updates = []
        cache.events.on("update", lambda status: updates.append(dict(status.tiers)))
        await asyncio.sleep(0.075)
        assert updates[-1] == {"a": 0, "b": 1, "c": 0}
        cache.clear()

    async def test_replace_entry(self, cache: TieredCache) -> None:
        await cache.set("k", "a", 1, timeout_ms=1000)
        assert cache.replace_entry("k", "c", 9) is True
        assert cache.replace_entry("missing", "c", 9) is False
        assert cache.get_tier("k") == "c"
        assert cache.status().tiers["c"] == 1
        with pytest.raises(UnknownTierError):
            cache.replace_entry("k", "z", 1)
        cache.clear()
