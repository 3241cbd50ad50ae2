import pytest

from signal_trader.exchange import PositionSnapshot, SymbolRules
from signal_trader.models import Bot, OrderRejected, PositionMode, SignalAction, TradeKind, TradeSide
from signal_trader.services.order_planner import (
    NO_POSITION_TO_CLOSE,
    POSITION_ALREADY_OPEN,
    compute_entry_quantity,
    plan_order,
    sizing_basis,
)

ONE_WAY = PositionMode.ONE_WAY
HEDGE = PositionMode.HEDGE


def _pos(side, qty=0.002, entry=50000.0, position_side="BOTH"):
    return PositionSnapshot("BTCUSDT", TradeSide(side), qty, entry, position_side)


@pytest.mark.parametrize("mode", [ONE_WAY, HEDGE])
def test_close_without_position_rejected(mode):
    with pytest.raises(OrderRejected) as excinfo:
        plan_order(SignalAction.CLOSE, mode, [])
    assert excinfo.value.reason == NO_POSITION_TO_CLOSE


def test_close_one_way_reduces_full_size_on_opposite_side():
    plan = plan_order(SignalAction.CLOSE, ONE_WAY, [_pos("SHORT", qty=0.005)])
    step = plan.primary
    assert step.kind is TradeKind.CLOSE
    assert step.side is TradeSide.SHORT
    assert step.order_side == "buy"
    assert step.quantity == 0.005
    assert step.reduce_only
    assert step.position_side is None


def test_close_hedge_tags_position_side():
    plan = plan_order(SignalAction.CLOSE, HEDGE, [_pos("LONG", position_side="LONG")])
    assert plan.primary.position_side == "LONG"
    assert plan.primary.order_side == "sell"


def test_close_hedge_with_both_legs_closes_larger():
    plan = plan_order(SignalAction.CLOSE, HEDGE, [_pos("LONG", qty=0.001), _pos("SHORT", qty=0.003)])
    assert plan.primary.side is TradeSide.SHORT


@pytest.mark.parametrize("mode, position_side", [(ONE_WAY, None), (HEDGE, "SHORT")])
def test_open_when_flat(mode, position_side):
    plan = plan_order(SignalAction.SHORT, mode, [], entry_quantity=0.01)
    assert len(plan.steps) == 1
    assert plan.primary.kind is TradeKind.OPEN
    assert plan.primary.order_side == "sell"
    assert plan.primary.quantity == 0.01
    assert plan.primary.position_side == position_side


@pytest.mark.parametrize("mode", [ONE_WAY, HEDGE])
def test_same_direction_rejected(mode):
    with pytest.raises(OrderRejected) as excinfo:
        plan_order(SignalAction.LONG, mode, [_pos("LONG")])
    assert excinfo.value.reason == POSITION_ALREADY_OPEN
    assert excinfo.value.status_code == 409


def test_one_way_opposite_direction_flips():
    plan = plan_order(SignalAction.SHORT, ONE_WAY, [_pos("LONG", qty=0.004)], entry_quantity=0.002)
    assert plan.is_flip
    close, open_ = plan.steps
    assert (close.kind, close.side, close.quantity, close.order_side) == (TradeKind.CLOSE, TradeSide.LONG, 0.004, "sell")
    assert (open_.kind, open_.side, open_.quantity, open_.order_side) == (TradeKind.OPEN, TradeSide.SHORT, 0.002, "sell")


def test_hedge_never_flips():
    plan = plan_order(SignalAction.SHORT, HEDGE, [_pos("LONG", position_side="LONG")])
    assert not plan.is_flip
    assert plan.primary.position_side == "SHORT"


def test_sized_fills_only_open_steps():
    plan = plan_order(SignalAction.LONG, ONE_WAY, [_pos("SHORT", qty=0.004)]).sized(0.003)
    assert [s.quantity for s in plan.steps] == [0.004, 0.003]


RULES = SymbolRules("BTCUSDT", lot_step=0.001, min_notional=100.0, tick_size=0.1)


def test_entry_quantity_from_leverage_and_basis():
    # 10x * 100 USDT / 50000 = 0.02
    assert compute_entry_quantity(10, 100, 50000, RULES) == 0.02


def test_entry_quantity_bumped_to_min_notional():
    # 1x * 10 / 50000 floors to 0.0 -> (100 + 1) / 50000 = 0.00202 -> 0.002 is under 100 notional
    rules = SymbolRules("BTCUSDT", lot_step=0.0001, min_notional=100.0)
    quantity = compute_entry_quantity(1, 10, 50000, rules)
    assert quantity == 0.002
    assert quantity * 50000 >= 100


def test_entry_quantity_rejected_when_step_too_coarse():
    with pytest.raises(OrderRejected) as excinfo:
        compute_entry_quantity(1, 10, 60000, RULES)
    assert excinfo.value.detail["min_notional"] == 100.0


def test_entry_quantity_rejects_bad_price():
    with pytest.raises(OrderRejected):
        compute_entry_quantity(1, 10, 0, RULES)


def test_sizing_basis_policies():
    bot = Bot(id=1, name="b", pair="BTCUSDT", exchange="x", token="t", start_balance=200.0)
    bot.order_size_type, bot.order_size_value = "usdt", 25.0
    assert sizing_basis(bot) == 25.0
    bot.order_size_type, bot.order_size_value = "percent", 10.0
    assert sizing_basis(bot) == 20.0
    bot.order_size_type, bot.order_size_value = "usdt", 0.0
    assert sizing_basis(bot) == 200.0
