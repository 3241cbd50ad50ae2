import pytest

from signal_trader.exchange import BinanceFuturesGateway, load_gateways
from signal_trader.models import ExchangeError, PositionMode, TradeSide


def _gateway(exchange):
    return BinanceFuturesGateway("binance", exchange=exchange)


@pytest.mark.asyncio
async def test_symbol_rules_come_from_exchange_filters(fake_exchange_factory):
    gateway = _gateway(fake_exchange_factory())
    rules = await gateway.get_symbol_rules_async("BTCUSDT")
    assert rules.lot_step == 0.001
    assert rules.min_notional == 100
    assert rules.tick_size == 0.1
    assert rules.min_quantity == 0.001


@pytest.mark.asyncio
async def test_unknown_symbol_raises_exchange_error(fake_exchange_factory):
    gateway = _gateway(fake_exchange_factory())
    with pytest.raises(ExchangeError):
        await gateway.get_symbol_rules_async("DOGEUSDT")


@pytest.mark.asyncio
async def test_position_mode_detection(fake_exchange_factory):
    assert await _gateway(fake_exchange_factory(hedged=True)).get_position_mode_async("BTCUSDT") is PositionMode.HEDGE
    assert await _gateway(fake_exchange_factory()).get_position_mode_async("BTCUSDT") is PositionMode.ONE_WAY


@pytest.mark.asyncio
async def test_positions_parse_signed_amounts_and_skip_flat(fake_exchange_factory):
    positions = [
        {"info": {"positionAmt": "-0.004", "positionSide": "BOTH", "entryPrice": "51000"}},
        {"info": {"positionAmt": "0", "positionSide": "BOTH"}},
    ]
    gateway = _gateway(fake_exchange_factory(positions=positions))
    snapshots = await gateway.get_positions_async("BTCUSDT")
    assert len(snapshots) == 1
    assert snapshots[0].side is TradeSide.SHORT
    assert snapshots[0].quantity == pytest.approx(0.004)
    assert snapshots[0].entry_price == 51000


@pytest.mark.asyncio
async def test_hedge_legs_use_position_side(fake_exchange_factory):
    positions = [
        {"info": {"positionAmt": "0.01", "positionSide": "LONG", "entryPrice": "100"}},
        {"info": {"positionAmt": "-0.02", "positionSide": "SHORT", "entryPrice": "110"}},
    ]
    snapshots = await _gateway(fake_exchange_factory(positions=positions)).get_positions_async("BTCUSDT")
    assert {(s.side, s.position_side) for s in snapshots} == {(TradeSide.LONG, "LONG"), (TradeSide.SHORT, "SHORT")}


@pytest.mark.asyncio
async def test_mark_price_falls_back_to_ticker(fake_exchange_factory):
    assert await _gateway(fake_exchange_factory()).get_mark_price_async("BTCUSDT") == 50123.4
    gateway = _gateway(fake_exchange_factory(funding={}))
    assert await gateway.get_mark_price_async("BTCUSDT") == 50100.0


@pytest.mark.asyncio
async def test_market_order_params(fake_exchange_factory):
    exchange = fake_exchange_factory()
    gateway = _gateway(exchange)

    result = await gateway.place_market_order("BTCUSDT", "sell", 0.002, reduce_only=True)
    assert result["order_id"] == "12345"
    assert result["avg_price"] == 50010.0
    assert exchange.created_orders[-1]["symbol"] == "BTC/USDT:USDT"
    assert exchange.created_orders[-1]["params"] == {"reduceOnly": True}

    await gateway.place_market_order("BTCUSDT", "sell", 0.002, reduce_only=True, position_side="LONG")
    assert exchange.created_orders[-1]["params"] == {"positionSide": "LONG"}


@pytest.mark.asyncio
async def test_stop_market_order_closes_position(fake_exchange_factory):
    exchange = fake_exchange_factory()
    await _gateway(exchange).place_stop_market_order("BTCUSDT", "sell", 0.002, 49000.0)
    order = exchange.created_orders[-1]
    assert order["type"] == "STOP_MARKET"
    assert order["params"] == {"stopPrice": 49000.0, "closePosition": True}


@pytest.mark.asyncio
async def test_order_failure_wrapped_as_exchange_error(fake_exchange_factory):
    gateway = _gateway(fake_exchange_factory(create_order_error=RuntimeError("Margin is insufficient")))
    with pytest.raises(ExchangeError) as excinfo:
        await gateway.place_market_order("BTCUSDT", "buy", 0.002)
    assert excinfo.value.operation == "create_order"


@pytest.mark.asyncio
async def test_timeout_is_a_failure(fake_exchange_factory):
    gateway = _gateway(fake_exchange_factory(delay=0.2))
    gateway.timeout_seconds = 0.01
    with pytest.raises(ExchangeError) as excinfo:
        await gateway.place_market_order("BTCUSDT", "buy", 0.002)
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_calls_require_connection():
    gateway = BinanceFuturesGateway("binance", api_key="k", secret="s")
    assert not gateway.connected
    with pytest.raises(ExchangeError):
        await gateway.get_mark_price_async("BTCUSDT")


@pytest.mark.asyncio
async def test_margin_and_leverage_forwarded(fake_exchange_factory):
    exchange = fake_exchange_factory()
    gateway = _gateway(exchange)
    await gateway.set_margin_type_async("BTCUSDT", "ISOLATED")
    await gateway.set_leverage_async("BTCUSDT", 20)
    assert exchange.margin_modes == [("isolated", "BTC/USDT:USDT")]
    assert exchange.leverages == [(20, "BTC/USDT:USDT")]


def test_load_gateways_skips_accounts_without_credentials():
    gateways = load_gateways({
        "main": {"api_key": "k", "secret": "s", "testnet": True},
        "empty": {"api_key": "", "secret": "", "testnet": False},
    })
    assert list(gateways) == ["main"]
    assert gateways["main"].testnet is True
