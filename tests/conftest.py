"""Test session fixtures.

Ensures database writes during tests go to an isolated file instead of the
production `trading-bot.db`.
"""

import atexit
import logging
import os
import tempfile
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

# Flag that we are under pytest so logger_config can direct logs to test files
os.environ.setdefault("PYTEST_RUNNING", "1")
# Test-safe defaults: no settle pauses, no strict ledger unless a test asks
os.environ.setdefault("FLIP_SETTLE_MS", "0")
os.environ.setdefault("RECONCILE_BOT_DELAY_MS", "0")
os.environ.setdefault("LEDGER_STRICT", "false")
os.environ.setdefault("EXCHANGE_ACCOUNTS", "")

from signal_trader.database import TradingDatabase
from signal_trader.services.admission_guard import BotAdmissionGuard
from tests.fakes import FakeCcxtExchange, FakeExchangeGateway

_cleanup_target = None


def _ensure_test_db_path():
    global _cleanup_target

    if os.environ.get("TRADING_DB_PATH"):
        return os.environ["TRADING_DB_PATH"]

    fd, path = tempfile.mkstemp(prefix="signal-trader-test-", suffix=".db")
    os.close(fd)
    os.environ["TRADING_DB_PATH"] = path
    _cleanup_target = path
    return path


TEST_DB_PATH = _ensure_test_db_path()


@atexit.register
def _remove_temp_db():
    if _cleanup_target and os.path.exists(_cleanup_target):
        try:
            os.remove(_cleanup_target)
        except OSError:
            pass


@pytest.fixture
def test_db_path(tmp_path, monkeypatch):
    """Provide an isolated DB path and set TRADING_DB_PATH for the test."""
    path = tmp_path / "signal-trader-test.db"
    monkeypatch.setenv("TRADING_DB_PATH", str(path))
    return path


@pytest.fixture
def db(test_db_path):
    database = TradingDatabase(str(test_db_path))
    yield database
    database.close()


@pytest.fixture
def fake_logger():
    """Shared lightweight logger mock for tests."""
    logger = MagicMock(spec=logging.Logger)
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    logger.exception = MagicMock()
    return logger


@pytest.fixture
def fake_clock():
    """Monotonic clock double: call it for the time, advance() to move it."""
    state = SimpleNamespace(now=1000.0)

    def _clock():
        return state.now

    def _advance(seconds):
        state.now += seconds

    _clock.advance = _advance
    return _clock


@pytest.fixture
def guard(fake_clock):
    return BotAdmissionGuard(cooldown_seconds=3, monotonic=fake_clock)


@pytest.fixture
def gateway():
    return FakeExchangeGateway()


@pytest.fixture
def fake_gateway_factory():
    """Factory for exchange gateway doubles with per-test configuration."""
    def _factory(**overrides):
        return FakeExchangeGateway(**overrides)

    return _factory


@pytest.fixture
def fake_exchange_factory():
    """Factory for ccxt-like exchange doubles."""
    def _factory(**overrides):
        return FakeCcxtExchange(**overrides)

    return _factory
