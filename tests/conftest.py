"""Shared fixtures for patchbay tests."""

import pytest

from patchbay.core.settings import Settings
from patchbay.graph.store import GraphStore


@pytest.fixture
def settings(tmp_path):
    s = Settings(tmp_path / "settings.json")
    s.storage_dir = str(tmp_path / "storage")
    return s


@pytest.fixture
def store(settings):
    return GraphStore(settings)
