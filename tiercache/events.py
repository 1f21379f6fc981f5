"""
In-process publish/subscribe used by the caches to announce mutations.

Each cache owns one :class:`EventEmitter`.  Subscribers are plain
callables registered per channel name and invoked synchronously, in
subscription order, inside the emitting call.
"""

from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

Listener = Callable[..., Any]


class EventEmitter:
    """Per-instance channel to listener registry."""

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, channel: str, callback: Listener) -> Listener:
        """Subscribe *callback* to *channel*.

        Returns:
            The callback, so the method can be used as a decorator.
        """
        self._listeners[channel].append(callback)
        return callback

    def off(self, channel: str, callback: Listener) -> bool:
        """Remove the first registration of *callback* from *channel*.

        Returns:
            ``True`` if the callback was subscribed.
        """
        listeners = self._listeners.get(channel)
        if not listeners or callback not in listeners:
            return False
        listeners.remove(callback)
        return True

    def emit(self, channel: str, *args: Any) -> int:
        """Invoke every listener of *channel* with *args*.

        Listener exceptions propagate to the caller of ``emit``.

        Returns:
            Number of listeners invoked.
        """
        listeners = self._listeners.get(channel)
        if not listeners:
            return 0
        # Copy so a listener can unsubscribe itself while being notified.
        snapshot = list(listeners)
        for callback in snapshot:
            callback(*args)
        return len(snapshot)

    def listener_count(self, channel: str) -> int:
        return len(self._listeners.get(channel, ()))
