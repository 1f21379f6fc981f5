"""
Per-operation log level mapping for tiercache.

Every cache routes its trace output through a :class:`MapLogger`, which
looks up the level configured for the operation name and emits the
message on a standard :class:`logging.Logger` only when that level is
set.  By default all operations are mapped to ``None`` (disabled).

Example::

    cache = ExpireCache(
        logger=logging.getLogger("app.cache"),
        log_mapping={"get": logging.INFO, "set": TRACE},
    )
"""

import logging
from typing import Dict, Mapping, Optional, Union

from tiercache.exceptions import ConfigurationError

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LogLevel = Optional[int]
LogMapping = Dict[str, LogLevel]

_LEVEL_NAMES: Dict[str, LogLevel] = {
    "NONE": None,
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def parse_level(value: Union[str, int, None]) -> LogLevel:
    """Convert a level name or number into a logging level.

    Args:
        value: ``None``, an integer level, or a case-insensitive name
            (``"none"``, ``"trace"``, ``"debug"``, ``"info"``, ``"warn"``,
            ``"warning"``, ``"error"``).

    Returns:
        The integer level, or ``None`` when logging is disabled.

    Raises:
        ConfigurationError: If the name is not recognised.
    """
    if value is None or isinstance(value, int):
        return value
    try:
        return _LEVEL_NAMES[value.strip().upper()]
    except KeyError:
        raise ConfigurationError(f"Unknown log level: {value!r}") from None


def build_log_mapping(
    defaults: Mapping[str, LogLevel],
    *overrides: Optional[Mapping[str, Union[str, int, None]]],
) -> LogMapping:
    """Merge level overrides onto a default mapping.

    Later overrides win.  Names absent from *defaults* are accepted so
    callers can pre-configure operations of subclasses.
    """
    mapping: LogMapping = dict(defaults)
    for override in overrides:
        if not override:
            continue
        for name, level in override.items():
            mapping[name] = parse_level(level)
    return mapping


class MapLogger:
    """Logs messages under an operation name at its configured level.

    Args:
        logger: The underlying logger.  Defaults to the ``tiercache``
            package logger.
        log_mapping: Operation name to level mapping.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        log_mapping: Optional[Mapping[str, LogLevel]] = None,
    ) -> None:
        self._logger = logger or logging.getLogger("tiercache")
        self._log_mapping: LogMapping = dict(log_mapping or {})

    @property
    def log_mapping(self) -> LogMapping:
        """A copy of the current operation to level mapping."""
        return dict(self._log_mapping)

    def set_log_level(self, name: str, level: Union[str, int, None]) -> None:
        """Change the level used for a single operation."""
        self._log_mapping[name] = parse_level(level)

    def log_key(self, name: str, message: str, **kwargs) -> None:
        """Log *message* if operation *name* is mapped to a level.

        Extra keyword arguments (``exc_info`` and the like) are passed
        through to :meth:`logging.Logger.log`.
        """
        level = self._log_mapping.get(name)
        if level is None:
            return
        self._logger.log(level, message, extra={"cache_op": name}, **kwargs)
