"""
Timer-driven expiring cache.

Same public surface as :class:`~tiercache.expire.ExpireCache`, but each
entry with an expiry owns an ``asyncio`` timer that removes it when it
fires, so reads never sweep.  Timers are scheduled with
``loop.call_later`` on the loop given to the constructor or, failing
that, the loop running when :meth:`ExpireTimeoutCache.set` is called.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Union

from tiercache.exceptions import SchedulerError
from tiercache.expire import ExpireCache, Key, Payload, _Entry, utc_now


@dataclass
class _TimedEntry(_Entry[Payload]):
    handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        """Cancel the pending timer.  Safe to call repeatedly."""
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


class ExpireTimeoutCache(ExpireCache[Payload, Key]):
    """In-memory cache whose entries are removed by per-entry timers.

    Args:
        logger: Logger receiving per-operation trace messages.
        log_mapping: Operation name to level overrides.
        default_expire_ms: Default time-to-live for :meth:`set`.
        loop: Event loop used for timers.  Defaults to the running loop
            at the time each timer is scheduled.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        log_mapping: Optional[Mapping[str, Union[str, int, None]]] = None,
        default_expire_ms: Optional[int] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._loop = loop
        super().__init__(logger, log_mapping, default_expire_ms)
        self._store: Dict[Key, _TimedEntry[Payload]] = {}

    def set(self, key: Key, payload: Payload, expires: Optional[datetime] = None) -> None:
        """Insert or replace *key*, cancelling any timer of the old entry.

        Raises:
            SchedulerError: If the entry needs a timer and no event loop
                is available.
        """
        expires_at = self._resolve_expiry(expires)
        delay_ms = None
        loop = None
        if expires_at is not None:
            delay_ms = max(0, int((expires_at - utc_now()).total_seconds() * 1000))
            # Raises before the old entry is touched.
            loop = self._event_loop()
        self._cancel_timer(key)
        delay = f"{delay_ms} ms" if delay_ms is not None else "None"
        self._log.log_key("set", f"{self._name} set key: {key}, expireTs: {delay}")
        entry = _TimedEntry(payload=payload, expires_at=expires_at)
        if loop is not None:
            entry.handle = loop.call_later(
                delay_ms / 1000, self._on_timeout, key, entry
            )
        self._store[key] = entry
        self.events.emit("set", key, payload, expires_at)

    def delete(self, key: Key) -> bool:
        self._cancel_timer(key)
        return super().delete(key)

    def clear(self) -> None:
        for entry in self._store.values():
            entry.cancel()
        super().clear()

    def pending_timers(self) -> int:
        """Number of entries with a scheduled expiry timer."""
        return sum(1 for entry in self._store.values() if entry.handle is not None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clean_expired(self) -> None:
        # Expired entries are removed by their own timers.
        return None

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError as exc:
            raise SchedulerError(
                f"{self._name} needs a running event loop to schedule expiry timers"
            ) from exc

    def _cancel_timer(self, key: Key) -> None:
        entry = self._store.get(key)
        if entry is not None:
            entry.cancel()

    def _on_timeout(self, key: Key, entry: _TimedEntry[Payload]) -> None:
        """Timer callback: remove *key* if *entry* is still the live record."""
        if self._store.get(key) is not entry:
            return
        entry.handle = None
        self.events.emit("expires", key, entry.payload)
        self.delete(key)
