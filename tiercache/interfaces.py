"""Structural cache interfaces shared by sync and async implementations."""

from datetime import datetime
from typing import Optional, Protocol, TypeVar, Union, runtime_checkable

Payload = TypeVar("Payload")
Key = TypeVar("Key")


@runtime_checkable
class Cache(Protocol[Payload, Key]):
    """Synchronous cache.

    Example::

        def warm(cache: Cache[str, str]) -> None:
            if cache.get("key") is None:
                cache.set("key", "value")
    """

    def get(self, key: Key) -> Optional[Payload]:
        """Return the cached value, or ``None`` if not cached."""

    def set(self, key: Key, value: Payload, expires: Optional[datetime] = None) -> None:
        """Store a value with an optional absolute expiry."""

    def delete(self, key: Key) -> bool:
        """Remove a value; ``True`` if something was removed."""

    def clear(self) -> None:
        """Remove all values."""


@runtime_checkable
class AsyncCache(Protocol[Payload, Key]):
    """Asynchronous cache; the same operations as :class:`Cache` as coroutines."""

    async def get(self, key: Key) -> Optional[Payload]:
        ...

    async def set(self, key: Key, value: Payload, expires: Optional[datetime] = None) -> None:
        ...

    async def delete(self, key: Key) -> bool:
        ...

    async def clear(self) -> None:
        ...


AnyCache = Union[Cache[Payload, Key], AsyncCache[Payload, Key]]
