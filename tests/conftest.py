"""
Pytest configuration for Journal Sync tests.

Sets up the Python path so tests can import the journal_sync package and
provides in-memory stores for the sync core.
"""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# No API keys configured: requests are accepted in the test environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("API_KEYS", "")

from journal_sync.core.config import get_settings  # noqa: E402
from journal_sync.sync.monitoring import SyncMonitor  # noqa: E402

from .fakes import InMemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def monitor():
    return SyncMonitor(max_metrics=500, max_alerts=100)
