import logging
from typing import Any, Optional

from signal_trader.accounting import compute_profit
from signal_trader.config import LEDGER_STRICT
from signal_trader.models import Bot, OrderRejected, ProfitResult


class ProfitTracker:
    """Runs the FIFO calculator for a bot and persists the outcome onto its record."""

    def __init__(self, db: Any, logger: Optional[logging.Logger] = None, strict: bool = LEDGER_STRICT):
        self.db = db
        self.logger = logger or logging.getLogger(__name__)
        self.strict = strict

    def _load(self, bot_id: int, mark_price: Optional[float], strict: Optional[bool] = None):
        bot = self.db.get_bot(bot_id)
        if not bot:
            raise OrderRejected("Bot not found", status_code=404, bot_id=bot_id)
        result = compute_profit(
            self.db.get_trades_for_bot(bot_id),
            bot.start_balance,
            mark_price,
            bot_id=bot_id,
            strict=self.strict if strict is None else strict,
        )
        return bot, result

    def compute(self, bot_id: int, mark_price: Optional[float] = None) -> ProfitResult:
        return self._load(bot_id, mark_price)[1]

    def ensure_ledger_integrity(self, bot_id: int) -> None:
        """In strict mode, raise LedgerIntegrityError for a ledger that is already inconsistent."""
        if self.strict:
            self._load(bot_id, None, strict=True)

    def update_bot_profit(
        self,
        bot_id: int,
        mark_price: Optional[float] = None,
        keep_position: bool = False,
    ) -> ProfitResult:
        """
        Persist profit %, current balance and open-position count.

        A bot with no open lot left is forced flat, unless `keep_position` is set
        because the exchange reports it open. A flat bot keeps a zero open count even
        if the ledger disagrees; reconciliation repairs that ledger.

        Runs after orders have filled, so integrity issues are returned on the result
        rather than raised, even in strict mode.
        """
        bot, result = self._load(bot_id, mark_price, strict=False)

        updates = {
            "profit": round(result.percentage, 4),
            "current_balance": round(bot.start_balance + result.total_pnl, 8),
        }
        if keep_position and bot.has_position:
            updates["open_positions"] = max(result.open_lot_count, 1)
        elif result.open_lot_count == 0:
            updates.update(Bot.flat())
        elif bot.has_position:
            updates["open_positions"] = result.open_lot_count
        else:
            updates["open_positions"] = 0
            self.logger.warning(
                f"⚠️ Bot {bot_id}: ledger has {result.open_lot_count} open lot(s) but bot is flat"
            )

        self.db.update_bot(bot_id, updates)
        self.logger.debug(
            f"Bot {bot_id} P&L: realized={result.realized_pnl:.4f} unrealized={result.unrealized_pnl:.4f} "
            f"pct={result.percentage:.2f}% open_lots={result.open_lot_count}"
        )
        return result
