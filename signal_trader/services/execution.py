import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from signal_trader.config import FLIP_SETTLE_MS
from signal_trader.exchange import BaseExchangeGateway, PositionSnapshot, SymbolRules
from signal_trader.models import Bot, ExchangeError, PositionMode, ProfitResult, TradeKind, TradeRecord, TradeSide
from signal_trader.services.order_planner import OrderPlan, OrderStep, compute_entry_quantity, sizing_basis
from signal_trader.utils import round_to_tick

FLIP_STAGE_CLOSING = "closing"
FLIP_STAGE_OPENING = "opening"


@dataclass
class Fill:
    order_id: str
    quantity: float
    price: float


@dataclass
class ExecutionOutcome:
    fill: Fill
    plan: OrderPlan
    reference_price: float
    flip_fill: Optional[Fill] = None
    stop_order_id: Optional[str] = None
    verified: bool = False
    profit: Optional[ProfitResult] = None


class TradeExecutor:
    """
    Runs an order plan against the exchange and records the fills.

    Sequence: margin/leverage setup (best effort), reference price, optional flip close
    leg, primary order, ledger append, stop loss for entries, then post-trade
    verification of the cached position and a P&L refresh.
    """

    def __init__(
        self,
        db: Any,
        profit_tracker: Any,
        audit: Optional[Callable[..., None]] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
        flip_settle_ms: float = FLIP_SETTLE_MS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.db = db
        self.profit_tracker = profit_tracker
        self.audit = audit or (lambda *_args, **_kwargs: None)
        self.actions_logger = actions_logger or logging.getLogger(__name__)
        self.logger = logger or logging.getLogger(__name__)
        self.flip_settle_ms = flip_settle_ms
        self.sleep = sleep or asyncio.sleep

    async def configure_account(self, bot: Bot, gateway: BaseExchangeGateway, symbol: str) -> None:
        """Margin type and leverage; these may already match, so failures only warn."""
        try:
            await gateway.set_margin_type_async(symbol, bot.leverage_type)
        except Exception as exc:
            self.logger.warning(f"⚠️ Bot {bot.id}: margin type {bot.leverage_type} not applied for {symbol}: {exc}")
        try:
            await gateway.set_leverage_async(symbol, bot.leverage_value)
        except Exception as exc:
            self.logger.warning(f"⚠️ Bot {bot.id}: leverage {bot.leverage_value}x not applied for {symbol}: {exc}")

    async def resolve_reference_price(self, gateway: BaseExchangeGateway, symbol: str, limit_price: Optional[float]) -> float:
        if limit_price:
            return float(limit_price)
        return await gateway.get_mark_price_async(symbol)

    async def load_symbol_rules(self, gateway: BaseExchangeGateway, symbol: str) -> SymbolRules:
        try:
            return await gateway.get_symbol_rules_async(symbol)
        except ExchangeError as exc:
            self.logger.warning(f"⚠️ Using default lot/notional rules for {symbol}: {exc}")
            return SymbolRules(symbol=symbol)

    async def _submit(self, gateway: BaseExchangeGateway, symbol: str, step: OrderStep, reference_price: float) -> Fill:
        order = await gateway.place_market_order(
            symbol,
            step.order_side,
            step.quantity,
            reduce_only=step.reduce_only,
            position_side=step.position_side,
        )
        filled = order.get("filled")
        try:
            filled_qty = float(filled) if filled else 0.0
        except (TypeError, ValueError):
            filled_qty = 0.0
        return Fill(
            order_id=order.get("order_id") or "",
            quantity=filled_qty or float(step.quantity),
            price=float(order.get("avg_price") or reference_price),
        )

    def _record(self, bot: Bot, symbol: str, step: OrderStep, fill: Fill) -> TradeRecord:
        record = self.db.log_trade(
            TradeRecord(
                bot_id=bot.id,
                order_id=fill.order_id,
                kind=step.kind,
                side=step.side,
                price=fill.price,
                quantity=fill.quantity,
                symbol=symbol,
            )
        )
        self.db.increment_bot_trades(bot.id)
        return record

    async def _close_flip_leg(self, bot: Bot, gateway: BaseExchangeGateway, symbol: str, plan: OrderPlan, reference_price: float) -> Fill:
        close_step = plan.flip_close
        self.db.set_pending_flip(
            bot.id, symbol, close_step.side, plan.primary.side, close_step.quantity, FLIP_STAGE_CLOSING
        )
        try:
            fill = await self._submit(gateway, symbol, close_step, reference_price)
        except Exception:
            # Nothing reached the exchange that we know of; the bot is unchanged
            self.db.clear_pending_flip(bot.id)
            raise

        self._record(bot, symbol, close_step, fill)
        self.profit_tracker.update_bot_profit(bot.id, fill.price)
        self.db.set_pending_flip(
            bot.id, symbol, close_step.side, plan.primary.side, plan.primary.quantity or 0.0, FLIP_STAGE_OPENING
        )
        self.actions_logger.info(
            f"🔄 Bot {bot.name}: closed {close_step.side.value} {fill.quantity} {symbol} @ {fill.price} before flip"
        )
        self.audit(bot.id, "flip_close", price=fill.price, status="success",
                   payload={"orderId": fill.order_id, "side": close_step.side.value, "qty": fill.quantity})
        if self.flip_settle_ms:
            await self.sleep(self.flip_settle_ms / 1000)
        return fill

    async def _place_stop_loss(self, bot: Bot, gateway: BaseExchangeGateway, symbol: str, step: OrderStep, fill: Fill, rules: SymbolRules) -> Optional[str]:
        pct = float(bot.stop_loss or 0.0)
        offset = pct / 100
        raw_trigger = fill.price * (1 - offset) if step.side is TradeSide.LONG else fill.price * (1 + offset)
        trigger = round_to_tick(raw_trigger, rules.tick_size)
        try:
            order = await gateway.place_stop_market_order(
                symbol,
                step.side.exit_order_side,
                fill.quantity,
                trigger,
                position_side=step.position_side,
            )
        except Exception as exc:
            # The entry stays open without a stop
            self.logger.error(f"❌ Bot {bot.id}: stop loss placement failed for {symbol} @ {trigger}: {exc}")
            self.audit(bot.id, "stop_loss_failed", price=trigger, status="error",
                       payload={"error": str(exc), "stopLossPercent": pct})
            return None

        self.actions_logger.info(f"🛡️ Bot {bot.name}: stop loss {step.side.exit_order_side} {symbol} @ {trigger} ({pct}%)")
        self.audit(bot.id, "stop_loss_placed", price=trigger, status="success",
                   payload={"orderId": order.get("order_id"), "stopLossPercent": pct})
        return order.get("order_id")

    @staticmethod
    def _select_verified(plan: OrderPlan, positions: List[PositionSnapshot]) -> Optional[PositionSnapshot]:
        live = [p for p in positions if p.quantity > 0]
        if not live:
            return None
        if plan.opens_position:
            for position in live:
                if position.side is plan.primary.side:
                    return position
        return live[0]

    async def verify_position(self, bot: Bot, gateway: BaseExchangeGateway, symbol: str, plan: OrderPlan, fill: Fill) -> bool:
        """Overwrite the cached position with what the exchange reports; infer from the plan if it cannot be read."""
        try:
            positions = await gateway.get_positions_async(symbol)
        except Exception as exc:
            self.logger.warning(f"⚠️ Bot {bot.id}: position verification failed, inferring from signal: {exc}")
            if plan.opens_position:
                self.db.update_bot(bot.id, Bot.holding(plan.primary.side, fill.price))
            else:
                self.db.update_bot(bot.id, Bot.flat())
            return False

        position = self._select_verified(plan, positions)
        if position is None:
            if plan.opens_position:
                self.logger.warning(f"⚠️ Bot {bot.id}: exchange shows no {plan.primary.side.value} after entry on {symbol}")
            self.db.update_bot(bot.id, Bot.flat())
        else:
            if plan.opens_position and position.side is not plan.primary.side:
                self.logger.warning(
                    f"⚠️ Bot {bot.id}: expected {plan.primary.side.value}, exchange reports {position.side.value}"
                )
            self.db.update_bot(bot.id, Bot.holding(position.side, position.entry_price or fill.price))
        return True

    async def execute(
        self,
        bot: Bot,
        gateway: BaseExchangeGateway,
        plan: OrderPlan,
        symbol: str,
        limit_price: Optional[float] = None,
    ) -> ExecutionOutcome:
        """
        Execute a planned signal. Raises ExchangeError when the primary order fails
        (no ledger write for it) and OrderRejected when the entry cannot be sized.
        """
        await self.configure_account(bot, gateway, symbol)
        reference_price = await self.resolve_reference_price(gateway, symbol, limit_price)

        rules = None
        if plan.opens_position:
            rules = await self.load_symbol_rules(gateway, symbol)
            quantity = compute_entry_quantity(bot.leverage_value, sizing_basis(bot), reference_price, rules)
            plan = plan.sized(quantity)

        flip_fill = None
        if plan.is_flip:
            flip_fill = await self._close_flip_leg(bot, gateway, symbol, plan, reference_price)

        step = plan.primary
        self.audit(bot.id, "order_sent", price=reference_price, status="info",
                   payload={"side": step.order_side, "kind": step.kind.value, "qty": step.quantity, "symbol": symbol})
        try:
            fill = await self._submit(gateway, symbol, step, reference_price)
        except Exception:
            if flip_fill is not None:
                # Close leg done, open leg failed cleanly: the bot is flat
                self.db.clear_pending_flip(bot.id)
                self.db.update_bot(bot.id, Bot.flat())
                self.logger.error(f"❌ Bot {bot.id}: flip open leg failed after closing {flip_fill.quantity} {symbol}")
            raise

        self._record(bot, symbol, step, fill)
        if flip_fill is not None:
            self.db.clear_pending_flip(bot.id)

        verb = "opened" if step.kind is TradeKind.OPEN else "closed"
        self.actions_logger.info(f"✅ Bot {bot.name}: {verb} {step.side.value} {fill.quantity} {symbol} @ {fill.price}")

        stop_order_id = None
        if step.kind is TradeKind.OPEN and bot.stop_loss_enabled and bot.stop_loss > 0:
            stop_order_id = await self._place_stop_loss(bot, gateway, symbol, step, fill, rules or SymbolRules(symbol=symbol))

        verified = await self.verify_position(bot, gateway, symbol, plan, fill)
        # The verified position stands even when FIFO matching left no lot open
        current = self.db.get_bot(bot.id)
        profit = self.profit_tracker.update_bot_profit(
            bot.id, fill.price, keep_position=bool(current and current.has_position)
        )
        if profit.integrity_issues:
            self.logger.warning(
                f"⚠️ Bot {bot.id}: order {fill.order_id} filled but ledger reports {len(profit.integrity_issues)} integrity issue(s)"
            )

        return ExecutionOutcome(
            fill=fill,
            plan=plan,
            reference_price=reference_price,
            flip_fill=flip_fill,
            stop_order_id=stop_order_id,
            verified=verified,
            profit=profit,
        )


def describe_positions(positions: List[PositionSnapshot], mode: PositionMode) -> Dict[str, Any]:
    """Compact form of live positions for audit payloads."""
    return {
        "mode": mode.value,
        "positions": [{"side": p.side.value, "qty": p.quantity, "entry": p.entry_price} for p in positions],
    }
