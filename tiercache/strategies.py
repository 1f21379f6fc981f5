"""
Ready-made tier strategies.

:class:`JsonTierStrategy` keeps values live in the ``object`` tier,
serializes them to the ``json`` tier after the ``object`` timeout, and
drops them after the ``json`` timeout.  Reads can ask for either shape
regardless of where the value currently lives.
"""

import json
import logging
from typing import Any, Hashable, Mapping, Optional

from tiercache.tiered import TieredCache, TierEntry, TierStrategy

logger = logging.getLogger(__name__)

OBJECT = "object"
JSON = "json"


class JsonTierStrategy(TierStrategy):
    """Two-tier policy: live object, then serialized JSON, then removal.

    Args:
        timeouts_ms: Per-tier timeouts in milliseconds, keyed by
            ``"object"`` and ``"json"``.  Falls back to
            ``settings.tiered.timeouts_ms``.
    """

    tiers = (OBJECT, JSON)

    def __init__(self, timeouts_ms: Optional[Mapping[str, Optional[int]]] = None) -> None:
        super().__init__(timeouts_ms)

    def resolve(self, key: Hashable, tier: str, entry: Optional[TierEntry]) -> Optional[Any]:
        if entry is None:
            return None
        if entry.tier == tier:
            return entry.payload
        if tier == OBJECT and entry.tier == JSON:
            return json.loads(entry.payload)
        if tier == JSON and entry.tier == OBJECT:
            try:
                return json.dumps(entry.payload)
            except (TypeError, ValueError):
                return None
        return None

    def on_tier_timeout(self, key: Hashable, cache: TieredCache) -> Optional[int]:
        entry = cache.get_entry(key)
        if entry is None:
            return None
        if entry.tier == OBJECT:
            try:
                serialized = json.dumps(entry.payload)
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "Value is not JSON serializable; dropping",
                    extra={"cache_key": str(key), "error": str(exc)},
                )
                cache.delete(key)
                return None
            cache.replace_entry(key, JSON, serialized)
            return self.default_timeout_for(JSON)
        cache.delete(key)
        return None
