import pytest

from signal_trader.engine import SignalEngine
from signal_trader.models import OrderRejected
from tests.factories import BOT_TOKEN, log_trade, make_bot


@pytest.fixture
def engine_factory(db, guard, fake_logger):
    def _factory(gateways):
        engine = SignalEngine(db=db, gateways=gateways, guard=guard, actions_logger=fake_logger, logger=fake_logger)
        engine.signal_handler.executor.flip_settle_ms = 0
        engine.reconciler.bot_delay_ms = 0
        return engine

    return _factory


@pytest.mark.asyncio
async def test_signal_then_profit_snapshot(db, gateway, engine_factory):
    bot = make_bot(db)
    engine = engine_factory({"binance": gateway})

    result = await engine.process_signal(bot.id, BOT_TOKEN, "BUY", "BTCUSDT")
    assert result.accepted

    gateway.mark_price = 51000.0
    snapshot = await engine.get_bot_profit_snapshot(bot.id)
    assert snapshot["markPrice"] == 51000.0
    assert snapshot["livePosition"]["side"] == "LONG"
    assert snapshot["unrealized_pnl"] == pytest.approx(2.0)
    assert snapshot["openTrades"] == 1
    assert snapshot["closeTrades"] == 0
    assert snapshot["currentBalance"] == pytest.approx(102.0)


@pytest.mark.asyncio
async def test_snapshot_survives_exchange_outage(db, fake_gateway_factory, engine_factory):
    from signal_trader.models import ExchangeError

    gateway = fake_gateway_factory(failures={
        "mark_price": ExchangeError("fetch_mark_price", "down"),
        "positions": ExchangeError("fetch_positions", "down"),
    })
    bot = make_bot(db)
    snapshot = await engine_factory({"binance": gateway}).get_bot_profit_snapshot(bot.id)
    assert snapshot["markPrice"] is None
    assert snapshot["livePosition"] is None
    assert snapshot["unrealized_pnl"] == 0


@pytest.mark.asyncio
async def test_snapshot_unknown_bot(gateway, engine_factory):
    with pytest.raises(OrderRejected):
        await engine_factory({"binance": gateway}).get_bot_profit_snapshot(12345)


def test_compute_profit_is_read_only(db, gateway, engine_factory):
    bot = make_bot(db)
    log_trade(db, bot.id, "OPEN", "LONG", 50000, 0.002)
    log_trade(db, bot.id, "CLOSE", "LONG", 52000, 0.002)
    result = engine_factory({"binance": gateway}).compute_profit(bot.id)
    assert result.realized_pnl == pytest.approx(4.0)
    assert result.percentage == pytest.approx(4.0)
    assert db.get_bot(bot.id).profit == 0


@pytest.mark.asyncio
async def test_bot_events_timeline_newest_first(db, gateway, engine_factory, fake_clock):
    bot = make_bot(db)
    engine = engine_factory({"binance": gateway})
    await engine.process_signal(bot.id, BOT_TOKEN, "long", "BTCUSDT")
    fake_clock.advance(3)
    await engine.process_signal(bot.id, BOT_TOKEN, "close", "BTCUSDT")

    events = engine.get_bot_events(bot.id)
    times = [event["time"] for event in events]
    assert times == sorted(times, reverse=True)
    trades = [event for event in events if event["type"] == "trade"]
    assert [t["kind"] for t in trades] == ["CLOSE", "OPEN"]
    assert len(engine.get_bot_events(bot.id, limit=2)) == 2


@pytest.mark.asyncio
async def test_reconcile_once_shares_the_guard(db, gateway, guard, engine_factory):
    bot = make_bot(db)
    db.update_bot(bot.id, {"position": "long", "entry_price": 1.0, "open_positions": 1})
    engine = engine_factory({"binance": gateway})

    guard.try_admit(bot.id)
    assert (await engine.reconcile_once())["skipped"] == 1
    guard.release(bot.id, start_cooldown=False)
    assert (await engine.reconcile_once())["corrected"] == 1


@pytest.mark.asyncio
async def test_connect_and_close(db, fake_gateway_factory, engine_factory):
    gateway = fake_gateway_factory(connected=False)
    engine = engine_factory({"binance": gateway})
    await engine.connect()
    assert gateway.connected
    await engine.close()
    assert not gateway.connected
