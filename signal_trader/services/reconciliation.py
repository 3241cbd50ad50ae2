import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from signal_trader.accounting import unmatched_open_lots
from signal_trader.config import RECONCILE_BOT_DELAY_MS, RECONCILE_INTERVAL_SECONDS
from signal_trader.exchange import PositionSnapshot
from signal_trader.logger_config import bot_log_context
from signal_trader.models import Bot, TradeKind, TradeRecord
from signal_trader.services.admission_guard import BotAdmissionGuard
from signal_trader.services.profit_tracker import ProfitTracker
from signal_trader.symbols import to_exchange_symbol

EXTERNAL_CLOSE_PREFIX = "EXTERNAL_CLOSE_"

IN_SYNC = "in_sync"
SKIPPED = "skipped"
CLEARED = "cleared"
ADOPTED = "adopted"
OVERWRITTEN = "overwritten"
SYNTHETIC_CLOSE = "synthetic_close"


class ReconciliationService:
    """
    Periodically corrects cached bot state against the exchange.

    The exchange is authoritative. Bots with a signal in flight are skipped, and the
    loop holds the bot's guard slot (without starting a cooldown) while it writes.
    """

    def __init__(
        self,
        db: Any,
        gateways: Dict[str, Any],
        guard: BotAdmissionGuard,
        profit_tracker: Optional[ProfitTracker] = None,
        actions_logger: Optional[logging.Logger] = None,
        logger: Optional[logging.Logger] = None,
        interval_seconds: float = RECONCILE_INTERVAL_SECONDS,
        bot_delay_ms: float = RECONCILE_BOT_DELAY_MS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.guard = guard
        self.logger = logger or logging.getLogger(__name__)
        self.actions_logger = actions_logger or logging.getLogger(__name__)
        self.profit_tracker = profit_tracker or ProfitTracker(db, logger=self.logger)
        self.interval_seconds = interval_seconds
        self.bot_delay_ms = bot_delay_ms
        self.sleep = sleep or asyncio.sleep
        self.now_ms = now_ms or (lambda: int(time.time() * 1000))
        self._stop_event = asyncio.Event()

    async def reconcile_once(self) -> Dict[str, Any]:
        """One pass over active bots. Per-bot failures are logged and counted, never raised."""
        summary: Dict[str, Any] = {"checked": 0, "skipped": 0, "corrected": 0, "errors": 0, "actions": {}}
        bots = self.db.get_active_bots()
        for index, bot in enumerate(bots):
            if index and self.bot_delay_ms:
                await self.sleep(self.bot_delay_ms / 1000)

            admission = self.guard.try_admit(bot.id, respect_cooldown=False)
            if not admission.granted:
                self.logger.debug(f"Reconcile: bot {bot.id} busy, skipping")
                summary["skipped"] += 1
                summary["actions"][bot.id] = SKIPPED
                continue

            try:
                with bot_log_context(bot.id):
                    action = await self.reconcile_bot(bot)
                summary["checked"] += 1
                summary["actions"][bot.id] = action
                if action not in (IN_SYNC, SKIPPED):
                    summary["corrected"] += 1
            except Exception as exc:
                summary["errors"] += 1
                summary["actions"][bot.id] = "error"
                self.logger.error(f"❌ Reconcile failed for bot {bot.id} ({bot.name}): {exc}")
            finally:
                self.guard.release(bot.id, start_cooldown=False)

        if summary["corrected"] or summary["errors"]:
            self.logger.info(
                f"🔍 Reconcile pass: {summary['checked']} checked, {summary['corrected']} corrected, "
                f"{summary['skipped']} skipped, {summary['errors']} errors"
            )
        return summary

    @staticmethod
    def _pick_position(bot: Bot, positions: List[PositionSnapshot]) -> Optional[PositionSnapshot]:
        live = [p for p in positions if p.quantity > 0]
        if not live:
            return None
        for position in live:
            if position.side.position == bot.position:
                return position
        return live[0]

    async def reconcile_bot(self, bot: Bot) -> str:
        gateway = self.gateways.get(bot.exchange)
        if gateway is None or not gateway.connected:
            self.logger.debug(f"Reconcile: exchange {bot.exchange} unavailable for bot {bot.id}")
            return SKIPPED
        symbol = to_exchange_symbol(bot.pair)
        if not symbol:
            return SKIPPED

        positions = await gateway.get_positions_async(symbol)
        position = self._pick_position(bot, positions)
        # Re-read: a signal may have completed since the active list was loaded
        bot = self.db.get_bot(bot.id) or bot
        pending_flip = self.db.get_pending_flip(bot.id)

        if position is None:
            action = await self._reconcile_flat(bot, gateway, symbol)
        elif not bot.has_position:
            self.db.update_bot(bot.id, Bot.holding(position.side, position.entry_price))
            self.profit_tracker.update_bot_profit(bot.id, position.mark_price, keep_position=True)
            self.actions_logger.info(
                f"🔄 Bot {bot.name}: adopted exchange {position.side.value} {position.quantity} {symbol} @ {position.entry_price}"
            )
            action = ADOPTED
        elif bot.position != position.side.position:
            self.db.update_bot(bot.id, Bot.holding(position.side, position.entry_price))
            self.profit_tracker.update_bot_profit(bot.id, position.mark_price, keep_position=True)
            self.actions_logger.info(
                f"🔄 Bot {bot.name}: local {bot.position} overwritten by exchange {position.side.value} on {symbol}"
            )
            action = OVERWRITTEN
        else:
            if position.entry_price and abs(position.entry_price - bot.entry_price) > 1e-12:
                self.db.update_bot(bot.id, {"entry_price": position.entry_price})
            action = IN_SYNC

        if pending_flip:
            self.logger.error(
                f"❌ Bot {bot.id}: stale flip {pending_flip['from_side']}->{pending_flip['to_side']} "
                f"left at stage '{pending_flip['stage']}' since {pending_flip['created_at']}; exchange state adopted"
            )
            self.db.clear_pending_flip(bot.id)
        return action

    async def _reconcile_flat(self, bot: Bot, gateway: Any, symbol: str) -> str:
        counts = self.db.count_trades_by_kind(bot.id)
        open_count = counts.get(TradeKind.OPEN.value, 0)
        close_count = counts.get(TradeKind.CLOSE.value, 0)

        if open_count > close_count:
            price = await self._closing_price(bot, gateway, symbol)
            lots = unmatched_open_lots(self.db.get_trades_for_bot(bot.id))
            missing = open_count - close_count
            stamp = self.now_ms()
            for index, lot in enumerate(lots[:missing]):
                order_id = f"{EXTERNAL_CLOSE_PREFIX}{stamp}" if index == 0 else f"{EXTERNAL_CLOSE_PREFIX}{stamp}_{index}"
                self.db.log_trade(
                    TradeRecord(
                        bot_id=bot.id,
                        order_id=order_id,
                        kind=TradeKind.CLOSE,
                        side=lot.side,
                        price=price,
                        quantity=lot.quantity,
                        symbol=symbol,
                    )
                )
            self.db.update_bot(bot.id, Bot.flat())
            self.profit_tracker.update_bot_profit(bot.id, price)
            self.actions_logger.info(
                f"🧾 Bot {bot.name}: exchange flat, recorded {min(missing, len(lots))} external close(s) @ {price}"
            )
            return SYNTHETIC_CLOSE

        if bot.has_position or bot.open_positions or bot.entry_price:
            self.db.update_bot(bot.id, Bot.flat())
            self.actions_logger.info(f"🧹 Bot {bot.name}: exchange flat, cleared local {bot.position} position")
            return CLEARED
        return IN_SYNC

    async def _closing_price(self, bot: Bot, gateway: Any, symbol: str) -> float:
        try:
            return await gateway.get_mark_price_async(symbol)
        except Exception as exc:
            last = self.db.get_last_trade(bot.id)
            fallback = last.price if last else bot.entry_price
            self.logger.warning(f"⚠️ Bot {bot.id}: mark price unavailable ({exc}); using last known {fallback}")
            return float(fallback or 0.0)

    async def run_forever(self) -> None:
        """Reconcile every `interval_seconds` until stop() is called."""
        self.logger.info(f"🔁 Reconciliation loop started (every {self.interval_seconds}s)")
        while not self._stop_event.is_set():
            try:
                await self.reconcile_once()
            except Exception as exc:
                self.logger.error(f"❌ Reconciliation pass failed: {exc}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        self.logger.info("Reconciliation loop stopped")

    def stop(self) -> None:
        self._stop_event.set()
