# tests/conftest.py

import pytest

from tests.fakes import InMemoryAwardStore, InMemoryCatalog, InMemoryLedger


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
    config.addinivalue_line("markers", "mocked: Tests with mocking")
    config.addinivalue_line("markers", "concurrency: Concurrent reconciliation tests")


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def award_store():
    return InMemoryAwardStore()
