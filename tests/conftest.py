"""Shared fixtures for tiercache tests."""

import pytest

from tiercache.config import get_settings, reset_settings


@pytest.fixture(autouse=True)
def _default_settings(tmp_path, monkeypatch):
    """Load settings from defaults only, ignoring the repo config and env."""
    monkeypatch.delenv("TIERCACHE_CACHE_DEFAULT_EXPIRE_MS", raising=False)
    reset_settings()
    get_settings(
        yaml_path=tmp_path / "missing.yaml",
        env_path=tmp_path / ".env",
        _force_reload=True,
    )
    yield
    reset_settings()
