"""Fixtures shared by the query-operator tests."""

import pytest

from query_operator.config import OperatorConfig
from query_operator.store import InMemoryStore


@pytest.fixture
def config() -> OperatorConfig:
    """Return a configuration with short timeouts."""
    return OperatorConfig(request_timeout=5.0)


@pytest.fixture
def store() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()
