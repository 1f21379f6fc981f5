"""
Tiered cache engine.

Every key lives in exactly one named tier.  Each key owns an ``asyncio``
timer; when it fires the engine asks the injected :class:`TierStrategy`
what happens next.  The strategy may rewrite the entry into another
tier (for example a serialized form) and return the next timeout, or
delete the key and return ``None``.

Strategy hooks may be plain functions or coroutines.  Hooks called from
:meth:`TieredCache.get` and :meth:`TieredCache.set` propagate their
errors to the caller; errors raised while a timer fires are logged and
swallowed.

There is no per-key locking: two operations on the same key that
interleave across a suspended hook resolve as last-write-wins.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    AsyncIterator,
    Dict,
    Hashable,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from tiercache.config import get_settings
from tiercache.events import EventEmitter
from tiercache.exceptions import SchedulerError, UnknownTierError
from tiercache.logging_map import LogLevel, MapLogger, build_log_mapping

T = TypeVar("T")
MaybeAwaitable = Union[T, Awaitable[T]]

DEFAULT_LOG_MAP: Dict[str, LogLevel] = {
    "advance": None,
    "clear": None,
    "clear_timeout": None,
    "constructor": None,
    "delete": None,
    "get": None,
    "has": None,
    "schedule": None,
    "set": None,
    "size": None,
    "timeout": None,
    "timeout_error": logging.ERROR,
    "update": None,
}


class TierEntry(BaseModel):
    """A stored record: the tier it lives in and its payload in that tier's shape.

    Attributes:
        tier: Name of the tier.
        payload: Stored value.
    """

    tier: str
    payload: Any = None


class TierStatus(BaseModel):
    """Immutable snapshot of the cache contents.

    Attributes:
        size: Total number of keys.
        tiers: Number of keys per tier; every declared tier is present.
    """

    size: int = 0
    tiers: Mapping[str, int] = Field(default_factory=dict, validate_default=True)

    model_config = ConfigDict(frozen=True)

    @field_validator("tiers", mode="after")
    @classmethod
    def _freeze_tiers(cls, value: Mapping[str, int]) -> Mapping[str, int]:
        return MappingProxyType(dict(value))

    @field_serializer("tiers")
    def _dump_tiers(self, value: Mapping[str, int]) -> Dict[str, int]:
        return dict(value)


class TierStrategy(ABC):
    """Tier policy injected into a :class:`TieredCache`.

    Subclasses declare :attr:`tiers` and implement :meth:`resolve` and
    :meth:`on_tier_timeout`.

    Args:
        timeouts_ms: Default timeout per tier in milliseconds (``None``
            means no timer).  Falls back to ``settings.tiered.timeouts_ms``.
    """

    tiers: Tuple[str, ...] = ()

    def __init__(self, timeouts_ms: Optional[Mapping[str, Optional[int]]] = None) -> None:
        if timeouts_ms is None:
            timeouts_ms = get_settings().tiered.timeouts_ms
        self._timeouts_ms: Dict[str, Optional[int]] = dict(timeouts_ms)

    def default_timeout_for(self, tier: str) -> Optional[int]:
        """Default timer duration for entries read or stored as *tier*."""
        return self._timeouts_ms.get(tier)

    def timeout_for(self, key: Hashable, tier: str, payload: Any) -> MaybeAwaitable[Optional[int]]:
        """Timer duration for a newly stored entry.  Defaults to the tier default."""
        return self.default_timeout_for(tier)

    @abstractmethod
    def resolve(
        self, key: Hashable, tier: str, entry: Optional[TierEntry]
    ) -> MaybeAwaitable[Optional[Any]]:
        """Return the payload of *entry* in the shape of *tier*.

        Args:
            key: The key being read.
            tier: The tier shape requested by the caller.
            entry: The stored record, or ``None`` if the key is unknown.

        Returns:
            The payload, or ``None`` if missing or not convertible.
        """

    @abstractmethod
    def on_tier_timeout(self, key: Hashable, cache: "TieredCache") -> MaybeAwaitable[Optional[int]]:
        """Advance *key* after its timer fired.

        Implementations rewrite the entry with
        :meth:`TieredCache.replace_entry` or remove it with
        :meth:`TieredCache.delete`.

        Returns:
            The next timer duration in milliseconds, or ``None`` for no
            further timer.
        """


async def _maybe_await(value: MaybeAwaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TieredCache:
    """Multi-stage cache driven by a :class:`TierStrategy`.

    Args:
        strategy: Tier policy.
        logger: Logger receiving per-operation messages.
        log_mapping: Operation name to level overrides, merged over
            :data:`DEFAULT_LOG_MAP` and ``settings.tiered.log_levels``.
        loop: Event loop used for timers.  Defaults to the running loop.

    Events (see :attr:`events`):
        ``set`` ``(keys)``, ``delete`` ``(keys)``, ``clear`` ``()`` and
        ``update`` ``(status)``.
    """

    def __init__(
        self,
        strategy: TierStrategy,
        logger: Optional[logging.Logger] = None,
        log_mapping: Optional[Mapping[str, Union[str, int, None]]] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        settings = get_settings().tiered
        self._strategy = strategy
        self._log = MapLogger(
            logger or logging.getLogger(__name__),
            build_log_mapping(DEFAULT_LOG_MAP, settings.log_levels, log_mapping),
        )
        self._loop = loop
        self._store: Dict[Hashable, TierEntry] = {}
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()
        self.events = EventEmitter()
        self._status = self._build_status()
        self._log.log_key(
            "constructor",
            f"TieredCache created, strategy: {type(strategy).__name__}, tiers: {list(strategy.tiers)}",
        )

    @property
    def strategy(self) -> TierStrategy:
        return self._strategy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: Hashable, tier: str, timeout_ms: Optional[int] = None) -> Optional[Any]:
        """Read *key* in the shape of *tier*.

        A hit refreshes the key's timer with *timeout_ms* or the
        strategy's default timeout for *tier*.

        Returns:
            The resolved payload, or ``None``.
        """
        self._log.log_key("get", f"TieredCache get key: {key}, tier: {tier}")
        entry = self._store.get(key)
        value = await _maybe_await(self._strategy.resolve(key, tier, entry))
        if value is not None and key in self._store:
            if timeout_ms is None:
                timeout_ms = self._strategy.default_timeout_for(tier)
            self._refresh_timer(key, timeout_ms)
        return value

    def get_entry(self, key: Hashable) -> Optional[TierEntry]:
        """The stored record for *key*, without resolving or touching its timer."""
        return self._store.get(key)

    def get_tier(self, key: Hashable) -> Optional[str]:
        entry = self._store.get(key)
        return entry.tier if entry is not None else None

    def has(self, key: Hashable) -> bool:
        self._log.log_key("has", f"TieredCache has key: {key}")
        return key in self._store

    def size(self) -> int:
        size = len(self._store)
        self._log.log_key("size", f"TieredCache size: {size}")
        return size

    def keys(self) -> Iterator[Hashable]:
        return iter(list(self._store))

    async def tier_entries(self, tier: str) -> AsyncIterator[Tuple[Hashable, Any]]:
        """Yield ``(key, payload)`` for every key resolvable as *tier*.

        Entries stored under other tiers are passed through the
        strategy's resolver; entries it rejects are skipped.
        """
        for key in list(self._store):
            entry = self._store.get(key)
            if entry is None:
                continue
            value = await _maybe_await(self._strategy.resolve(key, tier, entry))
            if value is not None:
                yield key, value

    async def tier_values(self, tier: str) -> AsyncIterator[Any]:
        async for _key, value in self.tier_entries(tier):
            yield value

    def status(self) -> TierStatus:
        """The snapshot computed at the last mutation."""
        return self._status

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        key: Hashable,
        tier: str,
        payload: Any,
        timeout_ms: Optional[int] = None,
    ) -> None:
        """Store *payload* under *key* in *tier* and (re)start its timer.

        Args:
            key: Cache key.
            tier: Tier the payload belongs to.
            payload: Value in the tier's shape.
            timeout_ms: Timer override; otherwise the strategy's
                :meth:`TierStrategy.timeout_for` decides.

        Raises:
            UnknownTierError: If *tier* is not declared by the strategy.
        """
        self._check_tier(tier)
        if timeout_ms is None:
            timeout_ms = await _maybe_await(self._strategy.timeout_for(key, tier, payload))
        self._log.log_key("set", f"TieredCache set key: {key}, tier: {tier}, timeout: {timeout_ms}")
        self._store[key] = TierEntry(tier=tier, payload=payload)
        self._refresh_timer(key, timeout_ms)
        self.events.emit("set", [key])
        self._update_status()

    async def set_entries(
        self,
        tier: str,
        entries: Union[Mapping[Hashable, Any], Iterable[Tuple[Hashable, Any]]],
        timeout_ms: Optional[int] = None,
    ) -> List[Hashable]:
        """Store many payloads in the same tier.

        A key whose timeout hook raises is skipped; the remaining keys
        are still stored and announced, then the first error is raised.

        Returns:
            The keys that were stored.

        Raises:
            UnknownTierError: If *tier* is not declared by the strategy.
        """
        self._check_tier(tier)
        pairs = entries.items() if isinstance(entries, Mapping) else entries
        stored: List[Hashable] = []
        first_error: Optional[Exception] = None
        for key, payload in pairs:
            key_timeout = timeout_ms
            if key_timeout is None:
                try:
                    key_timeout = await _maybe_await(self._strategy.timeout_for(key, tier, payload))
                except Exception as exc:
                    self._log.log_key(
                        "timeout_error",
                        f"TieredCache timeout_for failed for key: {key}",
                        exc_info=True,
                    )
                    if first_error is None:
                        first_error = exc
                    continue
            self._log.log_key("set", f"TieredCache set key: {key}, tier: {tier}, timeout: {key_timeout}")
            self._store[key] = TierEntry(tier=tier, payload=payload)
            self._refresh_timer(key, key_timeout)
            stored.append(key)
        if stored:
            self.events.emit("set", stored)
            self._update_status()
        if first_error is not None:
            raise first_error
        return stored

    def replace_entry(self, key: Hashable, tier: str, payload: Any) -> bool:
        """Rewrite an existing entry in place, keeping its timer.

        Intended for :meth:`TierStrategy.on_tier_timeout`.  The status
        snapshot is recomputed without emitting ``update``; the timer
        handler emits it once the hook returns.

        Returns:
            ``False`` if *key* is not stored.

        Raises:
            UnknownTierError: If *tier* is not declared by the strategy.
        """
        self._check_tier(tier)
        if key not in self._store:
            return False
        self._store[key] = TierEntry(tier=tier, payload=payload)
        self._status = self._build_status()
        return True

    def delete(self, key: Hashable) -> bool:
        """Remove *key* and cancel its timer.

        Returns:
            ``True`` if the key was stored.
        """
        self._log.log_key("delete", f"TieredCache delete key: {key}")
        if not self._remove(key):
            return False
        self.events.emit("delete", [key])
        self._update_status()
        return True

    def delete_keys(self, keys: Iterable[Hashable]) -> int:
        """Remove several keys; unknown keys are skipped.

        Returns:
            Number of keys removed.
        """
        removed = [key for key in keys if self._remove(key)]
        self._log.log_key("delete", f"TieredCache delete keys: {removed}")
        if removed:
            self.events.emit("delete", removed)
            self._update_status()
        return len(removed)

    def clear(self) -> None:
        """Cancel every timer and pending advance, then empty the store."""
        self._log.log_key("clear", f"TieredCache clear, size: {len(self._store)}")
        for key in list(self._timers):
            self._cancel_timer(key)
        current = _current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        removed = list(self._store)
        self._store.clear()
        self.events.emit("delete", removed)
        self.events.emit("clear")
        self._update_status()

    def pending_timers(self) -> int:
        return len(self._timers)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError as exc:
            raise SchedulerError("TieredCache needs a running event loop to schedule timers") from exc

    def _refresh_timer(self, key: Hashable, timeout_ms: Optional[int]) -> None:
        self._cancel_timer(key)
        if timeout_ms is None:
            return
        self._log.log_key("schedule", f"TieredCache schedule key: {key}, timeout: {timeout_ms} ms")
        self._timers[key] = self._event_loop().call_later(
            max(0, timeout_ms) / 1000, self._on_timer, key
        )

    def _cancel_timer(self, key: Hashable) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            self._log.log_key("clear_timeout", f"TieredCache clear timeout key: {key}")
            handle.cancel()

    def _on_timer(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        task = self._event_loop().create_task(self._advance(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _advance(self, key: Hashable) -> None:
        """Run the strategy's timeout hook for *key* and reschedule."""
        self._log.log_key("timeout", f"TieredCache timeout key: {key}, tier: {self.get_tier(key)}")
        try:
            next_timeout = await _maybe_await(self._strategy.on_tier_timeout(key, self))
        except Exception:
            self._log.log_key(
                "timeout_error",
                f"TieredCache tier timeout failed for key: {key}",
                exc_info=True,
            )
            next_timeout = None
        if key in self._timers:
            # A set/get during the hook scheduled a newer timer; it owns the key.
            next_timeout = None
        elif next_timeout is not None and key in self._store:
            self._refresh_timer(key, next_timeout)
        self._log.log_key(
            "advance",
            f"TieredCache advance key: {key}, tier: {self.get_tier(key)}, "
            f"next timeout: {next_timeout}",
        )
        self._update_status()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_tier(self, tier: str) -> None:
        if self._strategy.tiers and tier not in self._strategy.tiers:
            raise UnknownTierError(
                f"Unknown tier '{tier}', expected one of {list(self._strategy.tiers)}"
            )

    def _remove(self, key: Hashable) -> bool:
        self._cancel_timer(key)
        return self._store.pop(key, None) is not None

    def _build_status(self) -> TierStatus:
        counts: Dict[str, int] = {tier: 0 for tier in self._strategy.tiers}
        for entry in self._store.values():
            counts[entry.tier] = counts.get(entry.tier, 0) + 1
        return TierStatus(size=len(self._store), tiers=counts)

    def _update_status(self) -> None:
        self._status = self._build_status()
        self._log.log_key("update", f"TieredCache status: {self._status.model_dump()}")
        self.events.emit("update", self._status)
