"""Root pytest configuration for all tests."""

from __future__ import annotations

import pytest

from agentcore.config import reset_config

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch, tmp_path):
    """Keep user/system config files and env overrides out of tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("AGENTCORE_LOG", raising=False)
    monkeypatch.delenv("AGENTCORE_MODEL", raising=False)
    reset_config()
    yield
    reset_config()
