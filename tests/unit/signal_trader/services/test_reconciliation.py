import asyncio

import pytest

from signal_trader.models import ExchangeError, TradeKind, TradeSide
from signal_trader.services.profit_tracker import ProfitTracker
from signal_trader.services.reconciliation import (
    ADOPTED,
    CLEARED,
    IN_SYNC,
    OVERWRITTEN,
    SKIPPED,
    SYNTHETIC_CLOSE,
    ReconciliationService,
)
from tests.factories import log_trade, make_bot

SYMBOL = "BTCUSDT"
NOW_MS = 1700000000000


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service_factory(db, guard, fake_logger, sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    def _factory(gateways, **overrides):
        options = {
            "profit_tracker": ProfitTracker(db, logger=fake_logger),
            "actions_logger": fake_logger,
            "logger": fake_logger,
            "bot_delay_ms": 50,
            "sleep": _sleep,
            "now_ms": lambda: NOW_MS,
        }
        options.update(overrides)
        return ReconciliationService(db, gateways, guard, **options)

    return _factory


def _long_bot(db, **overrides):
    bot = make_bot(db, **overrides)
    return db.update_bot(bot.id, {"position": "long", "entry_price": 48000.0, "open_positions": 1})


@pytest.mark.asyncio
async def test_flat_exchange_with_unmatched_open_synthesizes_close(db, gateway, service_factory):
    bot = _long_bot(db)
    log_trade(db, bot.id, "OPEN", "LONG", 48000, 0.002)

    summary = await service_factory({"binance": gateway}).reconcile_once()

    assert summary["actions"][bot.id] == SYNTHETIC_CLOSE
    last = db.get_last_trade(bot.id)
    assert last.kind is TradeKind.CLOSE
    assert last.side is TradeSide.LONG
    assert last.price == 50000.0
    assert last.quantity == 0.002
    assert last.order_id == f"EXTERNAL_CLOSE_{NOW_MS}"
    refreshed = db.get_bot(bot.id)
    assert (refreshed.position, refreshed.entry_price, refreshed.open_positions) == ("none", 0, 0)
    assert refreshed.profit == pytest.approx(4.0)
    assert db.count_trades_by_kind(bot.id) == {"OPEN": 1, "CLOSE": 1}


@pytest.mark.asyncio
async def test_synthetic_close_uses_last_known_price_without_mark(db, fake_gateway_factory, service_factory):
    gateway = fake_gateway_factory(failures={"mark_price": ExchangeError("fetch_mark_price", "down")})
    bot = _long_bot(db)
    log_trade(db, bot.id, "OPEN", "LONG", 48000, 0.002)

    await service_factory({"binance": gateway}).reconcile_once()
    assert db.get_last_trade(bot.id).price == 48000


@pytest.mark.asyncio
async def test_flat_exchange_clears_local_position(db, gateway, service_factory):
    bot = _long_bot(db)
    summary = await service_factory({"binance": gateway}).reconcile_once()
    assert summary["actions"][bot.id] == CLEARED
    assert db.get_bot(bot.id).position == "none"
    assert db.get_trades_for_bot(bot.id) == []


@pytest.mark.asyncio
async def test_exchange_position_adopted_when_local_is_flat(db, gateway, service_factory):
    bot = make_bot(db)
    gateway.set_position(SYMBOL, "SHORT", 0.01, 3000.0)

    summary = await service_factory({"binance": gateway}).reconcile_once()

    assert summary["actions"][bot.id] == ADOPTED
    refreshed = db.get_bot(bot.id)
    assert refreshed.position == "short"
    assert refreshed.entry_price == 3000.0
    assert refreshed.open_positions == 1


@pytest.mark.asyncio
async def test_direction_mismatch_exchange_wins(db, gateway, service_factory):
    bot = _long_bot(db)
    log_trade(db, bot.id, "OPEN", "SHORT", 51000, 0.002)
    gateway.set_position(SYMBOL, "SHORT", 0.002, 51000.0)

    summary = await service_factory({"binance": gateway}).reconcile_once()

    assert summary["actions"][bot.id] == OVERWRITTEN
    refreshed = db.get_bot(bot.id)
    assert refreshed.position == "short"
    assert refreshed.entry_price == 51000.0
    # Unrealized at mark 50000 on a 51000 short
    assert refreshed.current_balance == pytest.approx(102.0)


@pytest.mark.asyncio
async def test_matching_state_is_left_alone(db, gateway, service_factory):
    bot = _long_bot(db)
    log_trade(db, bot.id, "OPEN", "LONG", 48000, 0.002)
    gateway.set_position(SYMBOL, "LONG", 0.002, 48000.0)
    summary = await service_factory({"binance": gateway}).reconcile_once()
    assert summary["actions"][bot.id] == IN_SYNC
    assert summary["corrected"] == 0


@pytest.mark.asyncio
async def test_busy_bot_is_skipped(db, gateway, guard, service_factory):
    bot = _long_bot(db)
    guard.try_admit(bot.id)
    summary = await service_factory({"binance": gateway}).reconcile_once()
    assert summary["actions"][bot.id] == SKIPPED
    assert db.get_bot(bot.id).position == "long"
    assert guard.is_busy(bot.id)


@pytest.mark.asyncio
async def test_reconcile_does_not_start_cooldown(db, gateway, guard, service_factory):
    bot = _long_bot(db)
    await service_factory({"binance": gateway}).reconcile_once()
    assert guard.check_cooldown(bot.id) == (True, 0)
    assert not guard.is_busy(bot.id)


@pytest.mark.asyncio
async def test_per_bot_errors_do_not_abort_pass(db, gateway, fake_gateway_factory, service_factory, sleeps):
    broken = fake_gateway_factory(failures={"positions": ExchangeError("fetch_positions", "rate limited")})
    bad = _long_bot(db, name="bad", token="t-bad", exchange="broken")
    good = _long_bot(db, name="good", token="t-good")

    summary = await service_factory({"binance": gateway, "broken": broken}).reconcile_once()

    assert summary["errors"] == 1
    assert summary["actions"][bad.id] == "error"
    assert summary["actions"][good.id] == CLEARED
    assert sleeps == [0.05]


@pytest.mark.asyncio
async def test_paused_bots_and_missing_gateways(db, gateway, service_factory):
    paused = _long_bot(db, name="paused", token="t-p", status="paused")
    orphan = _long_bot(db, name="orphan", token="t-o", exchange="unknown")
    summary = await service_factory({"binance": gateway}).reconcile_once()
    assert paused.id not in summary["actions"]
    assert summary["actions"][orphan.id] == SKIPPED


@pytest.mark.asyncio
async def test_stale_pending_flip_is_reported_and_cleared(db, gateway, service_factory, fake_logger):
    bot = _long_bot(db)
    log_trade(db, bot.id, "OPEN", "LONG", 48000, 0.002)
    log_trade(db, bot.id, "CLOSE", "LONG", 50000, 0.002)
    db.set_pending_flip(bot.id, SYMBOL, TradeSide.LONG, TradeSide.SHORT, 0.002, "opening")

    await service_factory({"binance": gateway}).reconcile_once()

    assert db.get_pending_flip(bot.id) is None
    assert any("stale flip" in str(call) for call in fake_logger.error.call_args_list)


@pytest.mark.asyncio
async def test_run_forever_until_stopped(db, gateway, service_factory):
    service = service_factory({"binance": gateway}, interval_seconds=0.01)
    passes = []
    original = service.reconcile_once

    async def _counting():
        passes.append(1)
        return await original()

    service.reconcile_once = _counting
    task = asyncio.create_task(service.run_forever())
    await asyncio.sleep(0.05)
    service.stop()
    await asyncio.wait_for(task, timeout=1)
    assert len(passes) >= 2
