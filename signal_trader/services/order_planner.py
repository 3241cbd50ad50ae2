from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional

from signal_trader.config import NOTIONAL_BUFFER
from signal_trader.exchange import PositionSnapshot, SymbolRules
from signal_trader.models import Bot, OrderRejected, PositionMode, SignalAction, TradeKind, TradeSide
from signal_trader.utils import round_to_step

NO_POSITION_TO_CLOSE = "No position to close"
POSITION_ALREADY_OPEN = "Position already open"


@dataclass(frozen=True)
class OrderStep:
    """One exchange order of a plan, with the ledger record it produces."""

    kind: TradeKind
    side: TradeSide  # side of the position opened or closed
    quantity: Optional[float] = None
    reduce_only: bool = False
    position_side: Optional[str] = None  # hedge-mode tag

    @property
    def order_side(self) -> str:
        if self.kind is TradeKind.OPEN:
            return self.side.entry_order_side
        return self.side.exit_order_side


@dataclass(frozen=True)
class OrderPlan:
    action: SignalAction
    position_mode: PositionMode
    steps: List[OrderStep] = field(default_factory=list)

    @property
    def is_flip(self) -> bool:
        return len(self.steps) == 2

    @property
    def primary(self) -> OrderStep:
        return self.steps[-1]

    @property
    def flip_close(self) -> Optional[OrderStep]:
        return self.steps[0] if self.is_flip else None

    @property
    def opens_position(self) -> bool:
        return self.primary.kind is TradeKind.OPEN

    def sized(self, entry_quantity: float) -> "OrderPlan":
        """Copy of the plan with the opening step sized."""
        steps = [
            replace(step, quantity=entry_quantity) if step.kind is TradeKind.OPEN else step
            for step in self.steps
        ]
        return replace(self, steps=steps)


def _pick_close_target(positions: List[PositionSnapshot]) -> PositionSnapshot:
    # Hedge accounts can hold both legs; close the larger one
    return sorted(positions, key=lambda p: (-p.quantity, p.side is not TradeSide.LONG))[0]


def plan_order(
    action: SignalAction,
    position_mode: PositionMode,
    positions: Iterable[PositionSnapshot],
    entry_quantity: Optional[float] = None,
) -> OrderPlan:
    """
    Decide which orders a signal needs given the live exchange position.

    Raises OrderRejected when the signal must not reach the exchange.
    """
    live = [p for p in positions or [] if p.quantity > 0]
    hedge = position_mode is PositionMode.HEDGE

    if action is SignalAction.CLOSE:
        if not live:
            raise OrderRejected(NO_POSITION_TO_CLOSE, status_code=400)
        target = _pick_close_target(live)
        step = OrderStep(
            kind=TradeKind.CLOSE,
            side=target.side,
            quantity=target.quantity,
            reduce_only=True,
            position_side=target.side.value if hedge else None,
        )
        return OrderPlan(action, position_mode, [step])

    target_side = action.side
    open_step = OrderStep(
        kind=TradeKind.OPEN,
        side=target_side,
        quantity=entry_quantity,
        position_side=target_side.value if hedge else None,
    )

    if hedge:
        if any(p.side is target_side for p in live):
            raise OrderRejected(POSITION_ALREADY_OPEN, status_code=409, side=target_side.value)
        return OrderPlan(action, position_mode, [open_step])

    if not live:
        return OrderPlan(action, position_mode, [open_step])

    existing = live[0]
    if existing.side is target_side:
        raise OrderRejected(POSITION_ALREADY_OPEN, status_code=409, side=target_side.value)

    close_step = OrderStep(
        kind=TradeKind.CLOSE,
        side=existing.side,
        quantity=existing.quantity,
        reduce_only=True,
    )
    return OrderPlan(action, position_mode, [close_step, open_step])


def sizing_basis(bot: Bot) -> float:
    """Quote amount one entry commits before leverage."""
    if bot.order_size_type == "percent":
        return bot.start_balance * (bot.order_size_value or 0.0) / 100
    return bot.order_size_value or bot.start_balance


def compute_entry_quantity(
    leverage: float,
    basis: float,
    price: float,
    rules: SymbolRules,
    notional_buffer: float = NOTIONAL_BUFFER,
) -> float:
    """
    Entry size floored to the lot step.

    Below the minimum notional the size is bumped to what (min notional + buffer)
    buys at this price; anything still zero or under the minimum is rejected.
    """
    if not price or price <= 0:
        raise OrderRejected("Invalid reference price", status_code=400, price=price)

    quantity = round_to_step((max(leverage, 1) * basis) / price, rules.lot_step)
    if quantity * price < rules.min_notional:
        quantity = round_to_step((rules.min_notional + notional_buffer) / price, rules.lot_step)

    notional = quantity * price
    if quantity <= 0 or notional < rules.min_notional or quantity < rules.min_quantity:
        raise OrderRejected(
            "Quantity below exchange minimum",
            status_code=400,
            qty=quantity,
            notional=round(notional, 8),
            min_notional=rules.min_notional,
        )
    return quantity
