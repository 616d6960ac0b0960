"""
Pytest configuration and fixtures for favfund tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import FakeExchange


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    import infra.ledger
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    infra.ledger._ledger = None

    yield

    MetricsRecorder._reset_for_testing()
    infra.ledger._ledger = None


@pytest.fixture
def ledger(tmp_path):
    from infra.ledger import LedgerStore
    return LedgerStore(ledger_file=str(tmp_path / "ledger.json"))


@pytest.fixture
def exchange():
    return FakeExchange(cash=100_000)


@pytest.fixture
def no_sleep():
    return lambda seconds: None
