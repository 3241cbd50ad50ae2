"""
Ledger maintenance commands.

    python -m signal_trader.maintenance audit
    python -m signal_trader.maintenance repair
    python -m signal_trader.maintenance reset BOT_ID|all
"""

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from signal_trader.accounting import order_ledger
from signal_trader.config import TRADING_DB_PATH
from signal_trader.database import TradingDatabase
from signal_trader.models import Bot, TradeKind, TradeSide

logger = logging.getLogger(__name__)


def _is_valid_side(side: Any) -> bool:
    return isinstance(side, TradeSide)


def audit_ledger(db: TradingDatabase) -> Dict[str, Any]:
    """Counts by kind and side, CLOSE rows without a usable side, and bots closing more than they opened."""
    trades = db.get_all_trades()
    by_kind = {TradeKind.OPEN.value: 0, TradeKind.CLOSE.value: 0}
    by_side = {TradeSide.LONG.value: 0, TradeSide.SHORT.value: 0, "other": 0}
    bad_close_sides: List[int] = []
    per_bot: Dict[Any, Dict[str, int]] = {}

    for trade in trades:
        by_kind[trade.kind.value] += 1
        if _is_valid_side(trade.side):
            by_side[trade.side.value] += 1
        else:
            by_side["other"] += 1
            if trade.kind is TradeKind.CLOSE:
                bad_close_sides.append(trade.seq)
        counts = per_bot.setdefault(trade.bot_id, {TradeKind.OPEN.value: 0, TradeKind.CLOSE.value: 0})
        counts[trade.kind.value] += 1

    over_closed = sorted(
        bot_id for bot_id, counts in per_bot.items()
        if counts[TradeKind.CLOSE.value] > counts[TradeKind.OPEN.value]
    )
    return {
        "total": len(trades),
        "by_kind": by_kind,
        "by_side": by_side,
        "bad_close_sides": bad_close_sides,
        "over_closed_bots": over_closed,
    }


def repair_close_sides(db: TradingDatabase) -> Dict[str, int]:
    """
    Rewrite CLOSE rows whose side is not LONG/SHORT.

    The side comes from the most recent OPEN before the CLOSE, provided more OPENs
    than CLOSEs precede it; otherwise the row is left for manual review.
    """
    fixed = 0
    failed = 0
    trades_by_bot: Dict[Any, list] = {}
    for trade in db.get_all_trades():
        trades_by_bot.setdefault(trade.bot_id, []).append(trade)

    for bot_id, trades in trades_by_bot.items():
        open_count = 0
        close_count = 0
        latest_open: Optional[Any] = None
        for trade in order_ledger(trades):
            if trade.kind is TradeKind.OPEN:
                open_count += 1
                latest_open = trade
                continue
            if not _is_valid_side(trade.side):
                if latest_open is not None and open_count > close_count and _is_valid_side(latest_open.side):
                    db.update_trade_side(trade.seq, latest_open.side)
                    logger.info(f"✅ Trade {trade.seq}: CLOSE side {trade.side!r} -> {latest_open.side.value} (from OPEN {latest_open.seq})")
                    fixed += 1
                else:
                    logger.warning(f"⚠️ Trade {trade.seq} (bot {bot_id}): no unmatched OPEN to take a side from")
                    failed += 1
            close_count += 1

    return {"fixed": fixed, "failed": failed}


def reset_bot(db: TradingDatabase, bot_id: int) -> Bot:
    """Delete a bot's ledger and reset its counters, balance and position."""
    bot = db.get_bot(bot_id)
    if not bot:
        raise ValueError(f"Bot {bot_id} not found")
    removed = db.delete_trades_for_bot(bot_id)
    db.clear_pending_flip(bot_id)
    updates = {
        "profit": 0.0,
        "trades": 0,
        "current_balance": bot.start_balance,
        "last_signal": "-",
        "last_signal_time": "-",
        **Bot.flat(),
    }
    logger.info(f"🔄 Reset bot {bot.name} ({bot.id}): removed {removed} trade(s)")
    return db.update_bot(bot_id, updates)


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Inspect and repair the trade ledger")
    parser.add_argument("--db", default=TRADING_DB_PATH, help="Path to the sqlite database")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("audit", help="Summarize ledger counts and integrity problems")
    sub.add_parser("repair", help="Fix CLOSE rows recorded without a LONG/SHORT side")
    reset = sub.add_parser("reset", help="Wipe trades and counters for a bot")
    reset.add_argument("bot_id", help="Bot id, or 'all'")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = _parse_args(argv)
    db = TradingDatabase(args.db)
    try:
        if args.command == "audit":
            report = audit_ledger(db)
            print(f"📊 Trades: {report['total']}")
            print(f"   OPEN: {report['by_kind']['OPEN']}  CLOSE: {report['by_kind']['CLOSE']}")
            print(f"   LONG: {report['by_side']['LONG']}  SHORT: {report['by_side']['SHORT']}  other: {report['by_side']['other']}")
            print(f"⚠️ CLOSE rows without side: {len(report['bad_close_sides'])}")
            if report["over_closed_bots"]:
                print(f"❌ Bots with more CLOSE than OPEN: {', '.join(str(b) for b in report['over_closed_bots'])}")
            return 1 if report["bad_close_sides"] or report["over_closed_bots"] else 0

        if args.command == "repair":
            result = repair_close_sides(db)
            print(f"✅ Fixed: {result['fixed']}  ❌ Failed: {result['failed']}")
            return 1 if result["failed"] else 0

        if args.bot_id.lower() == "all":
            bots = db.get_bots()
            for bot in bots:
                reset_bot(db, bot.id)
            print(f"✅ Reset {len(bots)} bot(s)")
            return 0

        try:
            bot = reset_bot(db, int(args.bot_id))
        except ValueError as exc:
            print(f"❌ {exc}")
            return 1
        print(f"✅ Reset bot {bot.name}: balance {bot.current_balance}, position {bot.position}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
