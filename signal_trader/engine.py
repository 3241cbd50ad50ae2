import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from signal_trader.config import RUN_ID, TRADING_DB_PATH
from signal_trader.database import TradingDatabase
from signal_trader.exchange import BaseExchangeGateway, load_gateways
from signal_trader.logger_config import set_logging_context, setup_logging
from signal_trader.models import OrderRejected, ProfitResult, SignalResult
from signal_trader.services.admission_guard import BotAdmissionGuard
from signal_trader.services.profit_tracker import ProfitTracker
from signal_trader.services.reconciliation import ReconciliationService
from signal_trader.services.signal_handler import SignalHandler
from signal_trader.symbols import to_exchange_symbol

logger = logging.getLogger(__name__)

DEFAULT_EVENTS_LIMIT = 50


class SignalEngine:
    """
    Wires the store, exchange gateways, admission guard and services together and
    exposes the operations the HTTP layer calls.
    """

    def __init__(
        self,
        db: Optional[TradingDatabase] = None,
        gateways: Optional[Dict[str, BaseExchangeGateway]] = None,
        guard: Optional[BotAdmissionGuard] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
        reconciler: Optional[ReconciliationService] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.actions_logger = actions_logger or logging.getLogger("signal_actions")
        self.db = db or TradingDatabase(TRADING_DB_PATH)
        self.gateways = load_gateways() if gateways is None else gateways
        # One guard instance shared by signals and reconciliation
        self.guard = guard or BotAdmissionGuard(logger=self.logger)
        self.profit_tracker = ProfitTracker(self.db, logger=self.logger)
        self.signal_handler = SignalHandler(
            self.db,
            self.gateways,
            guard=self.guard,
            profit_tracker=self.profit_tracker,
            actions_logger=self.actions_logger,
            logger=self.logger,
        )
        self.reconciler = reconciler or ReconciliationService(
            self.db,
            self.gateways,
            self.guard,
            profit_tracker=self.profit_tracker,
            actions_logger=self.actions_logger,
            logger=self.logger,
        )

    async def connect(self) -> None:
        for name, gateway in self.gateways.items():
            await gateway.connect_async()
            if not gateway.connected:
                self.logger.warning(f"⚠️ Exchange account '{name}' is not connected; its bots will be rejected")

    async def close(self) -> None:
        self.reconciler.stop()
        for gateway in self.gateways.values():
            try:
                await gateway.close()
            except Exception as exc:
                self.logger.warning(f"Error closing exchange gateway: {exc}")
        self.db.close()

    async def process_signal(
        self,
        bot_id: int,
        token: Optional[str],
        action: Any,
        pair: Any,
        price: Any = None,
        time: Optional[str] = None,
    ) -> SignalResult:
        return await self.signal_handler.process_signal(bot_id, token, action, pair, price=price, time=time)

    def compute_profit(self, bot_id: int, mark_price: Optional[float] = None) -> ProfitResult:
        """FIFO P&L for a bot; read-only."""
        return self.profit_tracker.compute(bot_id, mark_price)

    async def reconcile_once(self) -> Dict[str, Any]:
        return await self.reconciler.reconcile_once()

    async def get_bot_profit_snapshot(self, bot_id: int) -> Dict[str, Any]:
        """Live mark, live position and ledger P&L for one bot. Exchange failures leave the live fields empty."""
        bot = self.db.get_bot(bot_id)
        if not bot:
            raise OrderRejected("Bot not found", status_code=404, bot_id=bot_id)

        symbol = to_exchange_symbol(bot.pair)
        gateway = self.gateways.get(bot.exchange)
        mark_price = None
        live_position = None
        if gateway is not None and gateway.connected and symbol:
            try:
                mark_price = await gateway.get_mark_price_async(symbol)
            except Exception as exc:
                self.logger.warning(f"⚠️ Bot {bot_id}: mark price unavailable for snapshot: {exc}")
            try:
                positions = await gateway.get_positions_async(symbol)
                if positions:
                    position = positions[0]
                    live_position = {
                        "side": position.side.value,
                        "quantity": position.quantity,
                        "entryPrice": position.entry_price,
                        "positionSide": position.position_side,
                    }
            except Exception as exc:
                self.logger.warning(f"⚠️ Bot {bot_id}: live position unavailable for snapshot: {exc}")

        result = self.profit_tracker.compute(bot_id, mark_price)
        counts = self.db.count_trades_by_kind(bot_id)
        return {
            "botId": bot.id,
            "symbol": symbol,
            "markPrice": mark_price,
            "position": bot.position,
            "entryPrice": bot.entry_price,
            "livePosition": live_position,
            "startBalance": bot.start_balance,
            "currentBalance": bot.start_balance + result.total_pnl,
            "openTrades": counts.get("OPEN", 0),
            "closeTrades": counts.get("CLOSE", 0),
            **result.to_record(),
        }

    def get_bot_events(self, bot_id: int, limit: int = DEFAULT_EVENTS_LIMIT) -> List[Dict[str, Any]]:
        """Trades and signal audit events for a bot, newest first."""
        events: List[Dict[str, Any]] = []
        for trade in self.db.get_trades_for_bot(bot_id, order="desc", limit=limit):
            side = getattr(trade.side, "value", trade.side)
            events.append({
                "type": "trade",
                "kind": trade.kind.value,
                "side": side,
                "price": trade.price,
                "quantity": trade.quantity,
                "orderId": trade.order_id,
                "symbol": trade.symbol,
                "time": trade.timestamp,
                "seq": trade.seq,
            })
        for event in self.db.get_signal_events(bot_id, limit=limit):
            events.append({
                "type": event["type"],
                "price": event.get("price"),
                "status": event.get("status"),
                "payload": event.get("payload"),
                "time": event["time"],
            })
        events.sort(key=lambda item: item["time"] or "", reverse=True)
        return events[:limit]

    async def run(self) -> None:
        await self.connect()
        self.actions_logger.info(f"🚀 Signal engine started with {len(self.gateways)} exchange account(s)")
        try:
            await self.reconciler.run_forever()
        finally:
            await self.close()


async def main():
    bot_actions_logger = setup_logging()
    set_logging_context(run_id=RUN_ID or None)
    engine = SignalEngine(actions_logger=bot_actions_logger)

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully"""
        logger.info("Received shutdown signal, stopping engine...")
        bot_actions_logger.info("🛑 Signal engine shutting down...")
        engine.reconciler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await engine.run()
    finally:
        logger.info("Engine stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nEngine stopped by user")
        sys.exit(0)
