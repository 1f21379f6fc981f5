"""
Lazy-expiring in-memory cache.

Entries carry an optional absolute expiry.  Nothing runs in the
background: expired entries are swept from the store whenever a
read-type operation (``get``, ``has``, ``expires`` or iteration) is
called.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, Hashable, Iterator, Mapping, Optional, Tuple, TypeVar, Union

from tiercache.config import get_settings
from tiercache.events import EventEmitter
from tiercache.logging_map import LogLevel, MapLogger, build_log_mapping

Payload = TypeVar("Payload")
Key = TypeVar("Key", bound=Hashable)

OnClearCallback = Callable[[Dict[Any, Any]], Any]

# All operations are silent unless a mapping or the settings enable them.
DEFAULT_LOG_MAP: Dict[str, LogLevel] = {
    "clean_expired": None,
    "clear": None,
    "constructor": None,
    "delete": None,
    "expires": None,
    "get": None,
    "has": None,
    "on_clear": None,
    "set": None,
    "size": None,
}


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class _Entry(Generic[Payload]):
    payload: Payload
    expires_at: Optional[datetime]


class ExpireCache(Generic[Payload, Key]):
    """In-memory cache whose entries expire on read.

    Args:
        logger: Logger receiving per-operation trace messages.
        log_mapping: Operation name to level overrides, merged over
            :data:`DEFAULT_LOG_MAP` and ``settings.cache.log_levels``.
        default_expire_ms: Default time-to-live applied by :meth:`set`
            when no explicit expiry is given.  Falls back to
            ``settings.cache.default_expire_ms``; ``None`` or ``0`` means
            entries never expire.

    Events (see :attr:`events`):
        ``set`` ``(key, payload, expires_at)``, ``get`` ``(key)``,
        ``delete`` ``(key, payload)``, ``expires`` ``(key, payload)``,
        ``evict`` ``(entries)`` and ``clear`` ``(entries)``.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        log_mapping: Optional[Mapping[str, Union[str, int, None]]] = None,
        default_expire_ms: Optional[int] = None,
    ) -> None:
        settings = get_settings().cache
        self._log = MapLogger(
            logger or logging.getLogger(type(self).__module__),
            build_log_mapping(DEFAULT_LOG_MAP, settings.log_levels, log_mapping),
        )
        self._store: Dict[Key, _Entry[Payload]] = {}
        self._default_expire_ms = (
            default_expire_ms if default_expire_ms is not None else settings.default_expire_ms
        )
        self.events = EventEmitter()
        self._log.log_key(
            "constructor",
            f"{self._name} created, defaultExpireMs: {self._default_expire_ms}",
        )

    @property
    def _name(self) -> str:
        return type(self).__name__

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def set(self, key: Key, payload: Payload, expires: Optional[datetime] = None) -> None:
        """Insert or replace *key*.

        Args:
            key: Cache key.
            payload: Value to store.
            expires: Absolute expiry instant.  When omitted the default
                TTL (if any) is added to the current time.
        """
        expires_at = self._resolve_expiry(expires)
        self._log.log_key("set", f"{self._name} set key: {key}, expires: {_format_ts(expires_at)}")
        self._store[key] = _Entry(payload=payload, expires_at=expires_at)
        self.events.emit("set", key, payload, expires_at)

    def get(self, key: Key) -> Optional[Payload]:
        """Return the payload for *key* after sweeping expired entries."""
        self._log.log_key("get", f"{self._name} get key: {key}")
        self.events.emit("get", key)
        self._clean_expired()
        entry = self._store.get(key)
        return entry.payload if entry is not None else None

    def has(self, key: Key) -> bool:
        self._log.log_key("has", f"{self._name} has key: {key}")
        self._clean_expired()
        return key in self._store

    def expires(self, key: Key) -> Optional[datetime]:
        """Return the absolute expiry of *key*, or ``None``.

        The stored value is read before the sweep runs, so a key that
        has just expired still reports its last expiry on this call.
        """
        self._log.log_key("expires", f"{self._name} get expire for key: {key}")
        entry = self._store.get(key)
        self._clean_expired()
        return entry.expires_at if entry is not None else None

    def delete(self, key: Key) -> bool:
        """Remove *key*.

        Returns:
            ``True`` if an entry was removed.
        """
        self._log.log_key("delete", f"{self._name} delete key: {key}")
        entry = self._store.pop(key, None)
        if entry is None:
            return False
        self.events.emit("delete", key, entry.payload)
        self.events.emit("evict", {key: entry.payload})
        return True

    def clear(self) -> None:
        """Remove every entry, announcing the prior contents once."""
        self._log.log_key("clear", f"{self._name} clear")
        snapshot = self._payload_map()
        self._store.clear()
        self.events.emit("evict", snapshot)
        self.events.emit("clear", snapshot)

    def size(self) -> int:
        """Number of stored entries.  Does not sweep."""
        size = len(self._store)
        self._log.log_key("size", f"{self._name} size: {size}")
        return size

    def set_expire_ms(self, expire_ms: Optional[int]) -> None:
        """Change the default TTL used by future :meth:`set` calls."""
        self._default_expire_ms = expire_ms

    def on_clear(self, callback: OnClearCallback) -> None:
        """Register *callback* for every batch of removed entries.

        The callback receives a ``{key: payload}`` dict for each
        ``delete``, each expiry sweep and each ``clear``.
        """
        self._log.log_key("on_clear", f"{self._name} on_clear")
        self.events.on("evict", callback)

    def entries(self) -> Iterator[Tuple[Key, Payload]]:
        self._clean_expired()
        return iter(self._payload_map().items())

    def keys(self) -> Iterator[Key]:
        self._clean_expired()
        return iter(self._payload_map().keys())

    def values(self) -> Iterator[Payload]:
        self._clean_expired()
        return iter(self._payload_map().values())

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_expiry(self, expires: Optional[datetime]) -> Optional[datetime]:
        if expires is not None:
            # Naive datetimes are taken as local time.
            return expires.astimezone(timezone.utc)
        if self._default_expire_ms:
            return utc_now() + timedelta(milliseconds=self._default_expire_ms)
        return None

    def _clean_expired(self) -> None:
        """Remove every entry whose expiry is at or before now."""
        now = utc_now()
        expired: Dict[Key, Payload] = {}
        for key, entry in list(self._store.items()):
            if entry.expires_at is not None and entry.expires_at <= now:
                expired[key] = entry.payload
                del self._store[key]
        if not expired:
            return
        for key, payload in expired.items():
            self.events.emit("expires", key, payload)
        self.events.emit("evict", expired)
        self._log.log_key("clean_expired", f"{self._name} expired count: {len(expired)}")

    def _payload_map(self) -> Dict[Key, Payload]:
        return {key: entry.payload for key, entry in self._store.items()}


def _format_ts(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "None"
