"""Root conftest for all tests - keep engine logging quiet unless a test configures it."""

import pytest

from lotledger.system import LoggerFactory, LoggingConfig


@pytest.fixture(autouse=True)
def quiet_logging():
    """Configure console logging at WARNING for each test."""
    LoggerFactory.reset()
    LoggerFactory.configure(LoggingConfig(level="WARNING"))
    yield
    LoggerFactory.reset()
