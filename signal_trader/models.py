from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class TradeKind(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "TradeSide":
        return TradeSide.SHORT if self is TradeSide.LONG else TradeSide.LONG

    @property
    def entry_order_side(self) -> str:
        """Exchange order side that opens this position."""
        return "buy" if self is TradeSide.LONG else "sell"

    @property
    def exit_order_side(self) -> str:
        """Exchange order side that reduces this position."""
        return "sell" if self is TradeSide.LONG else "buy"

    @property
    def position(self) -> str:
        """Lowercase form stored on the bot record."""
        return self.value.lower()


class PositionMode(str, Enum):
    ONE_WAY = "ONE_WAY"
    HEDGE = "HEDGE"


class SignalAction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"

    @classmethod
    def parse(cls, raw: Any) -> "SignalAction":
        value = str(raw or "").strip().upper()
        aliases = {"BUY": cls.LONG, "LONG": cls.LONG, "SELL": cls.SHORT, "SHORT": cls.SHORT, "CLOSE": cls.CLOSE}
        if value not in aliases:
            raise ValueError(f"Unknown signal action '{raw}'")
        return aliases[value]

    @property
    def side(self) -> Optional[TradeSide]:
        if self is SignalAction.LONG:
            return TradeSide.LONG
        if self is SignalAction.SHORT:
            return TradeSide.SHORT
        return None


POSITION_NONE = "none"


# --- Errors ---

class SignalTraderError(Exception):
    """Base class for engine errors."""


class OrderRejected(SignalTraderError):
    """
    A signal that must not reach the exchange.

    Raised before any order is sent; carries an HTTP-ish status code so the
    calling layer can map it without string matching.
    """

    def __init__(self, reason: str, status_code: int = 400, **detail: Any):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
        self.detail = detail


class ExchangeError(SignalTraderError):
    """Exchange call failed or timed out; the outcome is treated as not executed."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message


class LedgerIntegrityError(SignalTraderError):
    """The trade ledger cannot be replayed cleanly (unmatched CLOSE or unusable OPEN side)."""

    def __init__(self, bot_id: Any, issues: List[str]):
        super().__init__(f"Ledger integrity violation for bot {bot_id}: {'; '.join(issues)}")
        self.bot_id = bot_id
        self.issues = issues


# --- Records ---

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Bot:
    """Configured trading policy bound to one exchange account and pair."""

    id: int
    name: str
    pair: str
    exchange: str
    token: str
    status: str = "paused"
    leverage_type: str = "cross"
    leverage_value: int = 1
    order_size_type: str = "usdt"
    order_size_value: float = 10.0
    start_balance: float = 10.0
    current_balance: float = 10.0
    profit: float = 0.0
    trades: int = 0
    stop_loss_enabled: bool = False
    stop_loss: float = 0.0
    last_signal: str = "-"
    last_signal_time: str = "-"
    position: str = POSITION_NONE
    entry_price: float = 0.0
    open_positions: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "Bot":
        data = dict(row)
        return cls(
            id=data["id"],
            name=data.get("name") or f"bot-{data['id']}",
            pair=data.get("pair") or "",
            exchange=data.get("exchange") or "",
            token=data.get("token") or "",
            status=data.get("status") or "paused",
            leverage_type=data.get("leverage_type") or "cross",
            leverage_value=int(data.get("leverage_value") or 1),
            order_size_type=data.get("order_size_type") or "usdt",
            order_size_value=float(data.get("order_size_value") or 0.0),
            start_balance=float(data.get("start_balance") or 0.0),
            current_balance=float(data.get("current_balance") or 0.0),
            profit=float(data.get("profit") or 0.0),
            trades=int(data.get("trades") or 0),
            stop_loss_enabled=bool(data.get("stop_loss_enabled")),
            stop_loss=float(data.get("stop_loss") or 0.0),
            last_signal=data.get("last_signal") or "-",
            last_signal_time=data.get("last_signal_time") or "-",
            position=data.get("position") or POSITION_NONE,
            entry_price=float(data.get("entry_price") or 0.0),
            open_positions=int(data.get("open_positions") or 0),
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def has_position(self) -> bool:
        return self.position != POSITION_NONE

    @staticmethod
    def flat() -> Dict[str, Any]:
        """Canonical update for a bot with no position."""
        return {"position": POSITION_NONE, "entry_price": 0.0, "open_positions": 0}

    @staticmethod
    def holding(side: TradeSide, entry_price: float) -> Dict[str, Any]:
        return {"position": side.position, "entry_price": float(entry_price), "open_positions": 1}


@dataclass(frozen=True)
class TradeRecord:
    """Immutable ledger fact. `seq` is assigned by the store on append."""

    bot_id: int
    order_id: str
    kind: TradeKind
    side: TradeSide
    price: float
    quantity: float
    symbol: str
    timestamp: str = field(default_factory=utc_now_iso)
    seq: Optional[int] = None

    @classmethod
    def from_row(cls, row: Any) -> "TradeRecord":
        data = dict(row)
        side_raw = str(data.get("side") or "").upper()
        side = TradeSide(side_raw) if side_raw in TradeSide.__members__ else side_raw
        return cls(
            bot_id=data["bot_id"],
            order_id=str(data.get("order_id") or ""),
            kind=TradeKind(str(data["kind"]).upper()),
            side=side,
            price=float(data.get("price") or 0.0),
            quantity=float(data.get("quantity") or 0.0),
            symbol=data.get("symbol") or "",
            timestamp=data.get("timestamp") or "",
            seq=data.get("id"),
        )


# --- Results ---

@dataclass
class SignalResult:
    accepted: bool
    order_id: Optional[str] = None
    filled_quantity: Optional[float] = None
    filled_price: Optional[float] = None
    reason: Optional[str] = None
    status_code: int = 200
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def rejected(cls, reason: str, status_code: int = 400, **detail: Any) -> "SignalResult":
        return cls(accepted=False, reason=reason, status_code=status_code, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.accepted}
        if self.accepted:
            payload.update({"orderId": self.order_id, "qty": self.filled_quantity, "price": self.filled_price})
        else:
            payload["message"] = self.reason
        payload.update(self.detail)
        return payload


@dataclass
class ProfitResult:
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    percentage: float = 0.0
    open_lot_count: int = 0
    integrity_issues: List[str] = field(default_factory=list)

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_record(self) -> Dict[str, Any]:
        return {
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "total_pnl": self.total_pnl,
            "percentage": self.percentage,
            "open_lot_count": self.open_lot_count,
            "integrity_issues": list(self.integrity_issues),
        }
