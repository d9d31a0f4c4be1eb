"""Shared fixtures for service tests."""

from unittest.mock import MagicMock

import pytest

from backend_client import BackendClient
from query_cache import QueryCache
from repository import Notifier


class RecordingNotifier(Notifier):
    """Collects notifier messages for assertions."""

    def __init__(self):
        self.successes = []
        self.errors = []

    def success(self, message: str) -> None:
        self.successes.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


@pytest.fixture
def client():
    """Backend client double; tests set return values per method."""
    mock = MagicMock(spec=BackendClient)
    mock.current_user_id.return_value = "user-1"
    return mock


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def cache():
    return QueryCache(ttl_seconds=300, enabled=True)
