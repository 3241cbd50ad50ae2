import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from signal_trader.config import SIGNAL_EVENT_RETENTION
from signal_trader.logger_config import bot_log_context
from signal_trader.models import (
    ExchangeError,
    LedgerIntegrityError,
    OrderRejected,
    SignalResult,
    utc_now_iso,
)
from signal_trader.services.admission_guard import BUSY, BotAdmissionGuard
from signal_trader.services.execution import TradeExecutor, describe_positions
from signal_trader.services.order_planner import plan_order
from signal_trader.services.profit_tracker import ProfitTracker
from signal_trader.signals import SignalPayload
from signal_trader.symbols import strip_symbol, to_exchange_symbol


class SignalHandler:
    """
    Webhook entry point: authenticates a signal, admits it through the per-bot guard,
    plans against live exchange state and hands the plan to the executor.

    Every path returns a SignalResult; nothing escapes to the caller.
    """

    def __init__(
        self,
        db: Any,
        gateways: Dict[str, Any],
        guard: Optional[BotAdmissionGuard] = None,
        profit_tracker: Optional[ProfitTracker] = None,
        executor: Optional[TradeExecutor] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
        event_retention: int = SIGNAL_EVENT_RETENTION,
    ):
        self.db = db
        self.gateways = gateways
        self.guard = guard or BotAdmissionGuard()
        self.actions_logger = actions_logger or logging.getLogger(__name__)
        self.logger = logger or logging.getLogger(__name__)
        self.profit_tracker = profit_tracker or ProfitTracker(db, logger=self.logger)
        self.executor = executor or TradeExecutor(
            db,
            self.profit_tracker,
            audit=self.record_event,
            actions_logger=self.actions_logger,
            logger=self.logger,
        )
        self.event_retention = event_retention

    def record_event(
        self,
        bot_id: Optional[int],
        event_type: str,
        price: float = 0.0,
        status: str = "info",
        payload: Any = None,
        time: Optional[str] = None,
    ) -> None:
        """Append a signal audit event and keep only the most recent ones."""
        try:
            self.db.log_signal_event(bot_id, event_type, price=price or 0.0, status=status, payload=payload, time=time)
            self.db.prune_signal_events(self.event_retention)
        except Exception as exc:
            self.logger.warning(f"Could not record signal event {event_type} for bot {bot_id}: {exc}")

    def _reject(self, bot_id: Any, reason: str, status_code: int, price: Any = 0.0, **detail: Any) -> SignalResult:
        self.logger.info(f"⛔ Signal for bot {bot_id} rejected ({status_code}): {reason}")
        self.record_event(
            bot_id if isinstance(bot_id, int) else None,
            "signal_rejected",
            price=price if isinstance(price, (int, float)) else 0.0,
            status="rejected",
            payload={"reason": reason, "statusCode": status_code, **detail},
        )
        return SignalResult.rejected(reason, status_code, **detail)

    def resolve_gateway(self, exchange_name: str) -> Any:
        gateway = self.gateways.get(exchange_name)
        if gateway is None or not gateway.connected:
            raise OrderRejected("Exchange not connected", status_code=400, exchange=exchange_name)
        return gateway

    async def process_signal(
        self,
        bot_id: int,
        token: Optional[str],
        action: Any,
        pair: Any,
        price: Any = None,
        time: Optional[str] = None,
    ) -> SignalResult:
        raw = {"action": action, "pair": pair, "price": price, "time": time}
        self.record_event(bot_id if isinstance(bot_id, int) else None, "webhook_received", status="info", payload=raw)

        bot = self.db.get_bot(bot_id)
        if not bot:
            return self._reject(None, "Bot not found", 404, bot_id=bot_id)
        with bot_log_context(bot.id):
            return await self._process_for_bot(bot, token, action, pair, price, time)

    async def _process_for_bot(self, bot: Any, token: Optional[str], action: Any, pair: Any, price: Any, time: Optional[str]) -> SignalResult:
        if not token or token != bot.token:
            return self._reject(bot.id, "Invalid token", 401)
        if not bot.is_active:
            return self._reject(bot.id, "Bot is not active", 400, status=bot.status)

        try:
            signal = SignalPayload(action=action, pair=pair, price=price, time=time, token=token)
        except ValidationError as exc:
            errors = "; ".join(err.get("msg", "invalid") for err in exc.errors())
            return self._reject(bot.id, f"Invalid signal: {errors}", 400)

        admission = self.guard.try_admit(bot.id)
        if not admission.granted:
            if admission.status == BUSY:
                return self._reject(bot.id, "Bot is busy processing another signal", 429)
            return self._reject(
                bot.id,
                f"Cooldown active, retry in {admission.wait_ms}ms",
                429,
                waitMs=admission.wait_ms,
            )

        try:
            return await self._handle_admitted(bot, signal)
        except OrderRejected as exc:
            return self._reject(bot.id, exc.reason, exc.status_code, price=signal.limit_price or 0.0, **exc.detail)
        except ExchangeError as exc:
            self.logger.error(f"❌ Bot {bot.id}: exchange failure during {exc.operation}: {exc.message}")
            self.record_event(bot.id, "signal_error", status="error",
                              payload={"operation": exc.operation, "error": exc.message})
            return SignalResult.rejected(f"Exchange error: {exc}", 502, operation=exc.operation)
        except LedgerIntegrityError as exc:
            self.logger.error(f"❌ {exc}")
            self.record_event(bot.id, "ledger_integrity", status="error", payload={"issues": exc.issues})
            return SignalResult.rejected(str(exc), 500, issues=exc.issues)
        except Exception as exc:
            self.logger.exception(f"❌ Bot {bot.id}: unexpected error processing signal: {exc}")
            self.record_event(bot.id, "signal_error", status="error", payload={"error": str(exc)})
            return SignalResult.rejected(f"Internal error: {exc}", 500)
        finally:
            self.guard.release(bot.id)

    async def _handle_admitted(self, bot: Any, signal: SignalPayload) -> SignalResult:
        gateway = self.resolve_gateway(bot.exchange)
        symbol = to_exchange_symbol(bot.pair)
        if not symbol:
            raise OrderRejected("Unsupported pair", status_code=400, pair=bot.pair)
        signal_symbol = to_exchange_symbol(strip_symbol(signal.pair))
        if signal_symbol != symbol:
            self.logger.warning(f"⚠️ Bot {bot.id}: signal pair {signal.pair} differs from bot pair {bot.pair}; trading {symbol}")

        # An already inconsistent ledger blocks trading in strict mode, before any order
        self.profit_tracker.ensure_ledger_integrity(bot.id)

        self.actions_logger.info(
            f"📨 Bot {bot.name}: {signal.action.value} {symbol} @ {signal.limit_price or 'market'}"
        )

        # Decisions use the live exchange position, never the cached bot fields
        mode = await gateway.get_position_mode_async(symbol)
        positions = await gateway.get_positions_async(symbol)
        plan = plan_order(signal.action, mode, positions)
        self.logger.debug(f"Bot {bot.id} plan {[s.kind.value + ':' + s.side.value for s in plan.steps]} "
                          f"from {describe_positions(positions, mode)}")

        outcome = await self.executor.execute(bot, gateway, plan, symbol, signal.limit_price)

        self.db.update_bot(bot.id, {"last_signal": signal.action.value, "last_signal_time": signal.time or utc_now_iso()})
        self.record_event(
            bot.id,
            "signal_success",
            price=outcome.fill.price,
            status="success",
            payload={
                "action": signal.action.value,
                "orderId": outcome.fill.order_id,
                "qty": outcome.fill.quantity,
                "flip": outcome.flip_fill is not None,
            },
        )
        detail: Dict[str, Any] = {}
        if outcome.flip_fill is not None:
            detail["flipCloseOrderId"] = outcome.flip_fill.order_id
        if outcome.stop_order_id:
            detail["stopLossOrderId"] = outcome.stop_order_id
        if outcome.profit is not None and outcome.profit.integrity_issues:
            detail["integrityIssues"] = list(outcome.profit.integrity_issues)
            self.record_event(bot.id, "ledger_integrity", status="error",
                              payload={"issues": outcome.profit.integrity_issues, "orderId": outcome.fill.order_id})
        return SignalResult(
            accepted=True,
            order_id=outcome.fill.order_id,
            filled_quantity=outcome.fill.quantity,
            filled_price=outcome.fill.price,
            detail=detail,
        )
