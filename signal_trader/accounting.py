from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Iterable, List, Optional

from signal_trader.models import LedgerIntegrityError, ProfitResult, TradeKind, TradeRecord, TradeSide

logger = logging.getLogger(__name__)


@dataclass
class OpenLot:
    """An OPEN record not yet matched by a CLOSE. Lives only for one computation."""

    side: Any
    price: float
    quantity: float
    seq: Optional[int] = None

    @property
    def priced(self) -> bool:
        return isinstance(self.side, TradeSide)


def _lot_side(raw_side: Any) -> Any:
    """LONG/SHORT, or the raw value unchanged when the row carries no usable side."""
    if isinstance(raw_side, TradeSide):
        return raw_side
    try:
        return TradeSide(str(raw_side).upper())
    except ValueError:
        return raw_side


def directional_pnl(side: TradeSide, entry_price: float, exit_price: float, quantity: float) -> float:
    if side is TradeSide.SHORT:
        return (entry_price - exit_price) * quantity
    return (exit_price - entry_price) * quantity


def order_ledger(trades: Iterable[TradeRecord]) -> List[TradeRecord]:
    """
    Replay order for a bot's ledger.

    Records carry the store's sequence number; when any record lacks one (records
    built outside the store) fall back to timestamp with input position as tiebreak.
    """
    records = list(trades)
    if all(record.seq is not None for record in records):
        return sorted(records, key=lambda record: record.seq)
    indexed = list(enumerate(records))
    indexed.sort(key=lambda item: (item[1].timestamp or "", item[0]))
    return [record for _, record in indexed]


def compute_profit(
    trades: Iterable[TradeRecord],
    start_balance: float,
    mark_price: Optional[float] = None,
    *,
    bot_id: Any = None,
    strict: bool = False,
) -> ProfitResult:
    """
    FIFO realized/unrealized P&L over a bot's trade ledger.

    Pure: performs no writes, and replaying the same ledger yields the same result.
    Each CLOSE consumes exactly the oldest unmatched OPEN lot. A CLOSE with nothing
    to match adds no realized P&L and is reported in `integrity_issues`, as is an
    OPEN without a LONG/SHORT side, which stays a lot but never moves P&L. With
    `strict` any such issue raises LedgerIntegrityError instead.
    """
    lots: Deque[OpenLot] = deque()
    realized = 0.0
    issues: List[str] = []

    for record in order_ledger(trades):
        kind = TradeKind(record.kind)
        if kind is TradeKind.OPEN:
            lot = OpenLot(_lot_side(record.side), float(record.price), float(record.quantity), record.seq)
            if not lot.priced:
                issues.append(f"OPEN seq={record.seq} has no LONG/SHORT side ({record.side!r}); counted at zero P&L")
            lots.append(lot)
            continue

        if not lots:
            issues.append(
                f"CLOSE seq={record.seq} order={record.order_id or '-'} has no unmatched OPEN lot"
            )
            continue

        lot = lots.popleft()
        if not lot.priced:
            continue
        closed_qty = record.quantity if record.quantity and record.quantity > 0 else lot.quantity
        realized += directional_pnl(lot.side, lot.price, float(record.price), float(closed_qty))

    if issues:
        logger.error(f"❌ Ledger integrity issue for bot {bot_id}: {'; '.join(issues)}")
        if strict:
            raise LedgerIntegrityError(bot_id, issues)

    unrealized = 0.0
    if mark_price is not None and mark_price > 0:
        for lot in lots:
            if not lot.priced:
                continue
            unrealized += directional_pnl(lot.side, lot.price, float(mark_price), lot.quantity)

    total = realized + unrealized
    percentage = (total / start_balance * 100) if start_balance else 0.0
    return ProfitResult(
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        percentage=percentage,
        open_lot_count=len(lots),
        integrity_issues=issues,
    )


def unmatched_open_lots(trades: Iterable[TradeRecord]) -> List[OpenLot]:
    """Lots still open after FIFO replay, oldest first."""
    lots: Deque[OpenLot] = deque()
    for record in order_ledger(trades):
        if TradeKind(record.kind) is TradeKind.OPEN:
            lots.append(OpenLot(_lot_side(record.side), float(record.price), float(record.quantity), record.seq))
        elif lots:
            lots.popleft()
    return list(lots)
