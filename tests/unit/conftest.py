"""Shared fixtures for unit tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from braindrive_installer.core.domain.session import Session
from braindrive_installer.infrastructure.agent.layout import InstallLayout


@pytest.fixture
def mock_link():
    """Mock LinkProtocol that records sent messages."""
    link = MagicMock()
    link.is_open = True
    link.send_json = AsyncMock()
    link.close = AsyncMock()
    return link


@pytest.fixture
def session():
    """Fresh, isolated session."""
    return Session()


@pytest.fixture
def layout(tmp_path):
    """Install layout rooted in a temporary home directory."""
    home = tmp_path / "home"
    home.mkdir()
    return InstallLayout.default(home)
