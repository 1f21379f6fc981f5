"""
tiercache exception hierarchy.

All custom exceptions inherit from TierCacheException so callers can
catch a single base type when they want a broad safety net.  Lookups
never raise for a missing key; they return ``None`` or ``False``.
"""


class TierCacheException(Exception):
    """Base exception for all tiercache errors."""


class ConfigurationError(TierCacheException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


class UnknownTierError(TierCacheException, KeyError):
    """Raised when a tier name is not declared by the tier strategy."""


class SchedulerError(TierCacheException, RuntimeError):
    """Raised when an expiry timer is needed but no event loop is available."""
