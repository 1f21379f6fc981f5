"""
Central configuration loader for tiercache.

Reads ``config/config.yaml`` and ``.env``, merges environment-variable
overrides (``TIERCACHE_`` prefix), and exposes a typed :class:`Settings`
singleton via :func:`get_settings`.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from tiercache.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Resolve project root (directory containing ``config/``)
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent          # tiercache/
_PROJECT_ROOT = _THIS_DIR.parent                     # repo root


def _project_path(*parts: str) -> Path:
    """Build an absolute path relative to the project root."""
    return _PROJECT_ROOT.joinpath(*parts)


# ---------------------------------------------------------------------------
# Nested settings dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CacheSettings:
    default_expire_ms: Optional[int] = None
    log_levels: Dict[str, str] = field(default_factory=dict)


@dataclass
class TieredSettings:
    log_levels: Dict[str, str] = field(default_factory=dict)
    timeouts_ms: Dict[str, Optional[int]] = field(default_factory=dict)


@dataclass
class LoggingSettings:
    level: str = "WARNING"
    format: str = "text"


@dataclass
class Settings:
    """Top-level settings container."""
    cache: CacheSettings = field(default_factory=CacheSettings)
    tiered: TieredSettings = field(default_factory=TieredSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file.  Returns ``{}`` if the file is missing."""
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _apply_dict(target: object, data: Dict[str, Any]) -> None:
    """Apply *data* values onto a dataclass instance.

    Mapping-typed fields are merged rather than replaced so a YAML file
    can override a single operation's log level.
    """
    for key, value in data.items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        if isinstance(current, dict):
            if not isinstance(value, dict):
                raise ConfigurationError(
                    f"Expected a mapping for '{key}', got {type(value).__name__}"
                )
            current.update(value)
        else:
            setattr(target, key, value)


# ---------------------------------------------------------------------------
# Env-var overrides  (TIERCACHE_SECTION_KEY  e.g. TIERCACHE_CACHE_DEFAULT_EXPIRE_MS)
# ---------------------------------------------------------------------------

_FLAT_SECTIONS = ["cache", "tiered", "logging"]


def _parse_optional_int(value: str) -> Optional[int]:
    if value.strip().lower() in ("", "none", "null"):
        return None
    return int(value)


_TYPE_MAP = {
    int: int,
    float: float,
    bool: lambda v: v.lower() in ("1", "true", "yes"),
    str: str,
}

# Fields whose default is ``None`` have no usable runtime type to cast by.
_OPTIONAL_INT_FIELDS = {("cache", "default_expire_ms")}


def _apply_env_overrides(settings: Settings) -> None:
    """Override flat scalar fields via ``TIERCACHE_<SECTION>_<KEY>`` env vars."""
    for section_name in _FLAT_SECTIONS:
        section = getattr(settings, section_name, None)
        if section is None:
            continue
        prefix = f"TIERCACHE_{section_name.upper()}_"
        for key in list(vars(section)):
            env_key = prefix + key.upper()
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            current = getattr(section, key)
            if isinstance(current, dict):
                logger.warning("Env override not supported for mapping %s", env_key)
                continue
            if (section_name, key) in _OPTIONAL_INT_FIELDS:
                cast = _parse_optional_int
            else:
                cast = _TYPE_MAP.get(type(current), str)
            try:
                setattr(section, key, cast(env_val))
                logger.debug("Env override applied: %s=%s", env_key, env_val)
            except (ValueError, TypeError):
                logger.warning("Invalid env override %s=%s", env_key, env_val)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_lock = threading.Lock()


def get_settings(
    *,
    yaml_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
    _force_reload: bool = False,
) -> Settings:
    """Return the process-wide :class:`Settings` singleton.

    On first call (or when ``_force_reload=True``) the function:

    1. Calls ``load_dotenv()`` to populate env vars from ``.env``.
    2. Reads ``config/config.yaml``.
    3. Applies ``TIERCACHE_*`` environment-variable overrides.

    Args:
        yaml_path: Override the YAML config file path (testing).
        env_path: Override the ``.env`` file path (testing).
        _force_reload: Re-read everything even if already loaded.

    Returns:
        The global ``Settings`` instance.

    Raises:
        ConfigurationError: If the YAML file is malformed.
    """
    global _settings

    if _settings is not None and not _force_reload:
        return _settings

    with _lock:
        # Double-check after acquiring lock
        if _settings is not None and not _force_reload:
            return _settings

        # 1. Load .env
        dotenv_path = env_path or _project_path(".env")
        load_dotenv(dotenv_path, override=True)

        # 2. Read YAML
        config_path = yaml_path or _project_path("config", "config.yaml")
        raw = _load_yaml(config_path)

        # 3. Build Settings with defaults, then overlay YAML values
        settings = Settings()

        for section_name in _FLAT_SECTIONS:
            section_data = raw.get(section_name)
            if isinstance(section_data, dict):
                section_obj = getattr(settings, section_name)
                _apply_dict(section_obj, section_data)

        # 4. Apply TIERCACHE_* env-var overrides
        _apply_env_overrides(settings)

        _settings = settings
        logger.info("Settings loaded from %s", config_path)
        return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for testing)."""
    global _settings
    with _lock:
        _settings = None


_FORMATS = {
    "text": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    "short": "%(levelname)s %(name)s: %(message)s",
}


def configure_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Apply ``settings.logging`` to the ``tiercache`` package logger.

    Adds a stream handler only when the package logger has none, so
    applications that configure logging themselves are left alone.

    Returns:
        The configured package logger.

    Raises:
        ConfigurationError: If the level or format name is unknown.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {settings.logging.level}")
    fmt = _FORMATS.get(settings.logging.format)
    if fmt is None:
        raise ConfigurationError(f"Unknown log format: {settings.logging.format}")

    package_logger = logging.getLogger("tiercache")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        package_logger.addHandler(handler)
    return package_logger
