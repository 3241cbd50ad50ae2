import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional

import ccxt.async_support as ccxt

from signal_trader.config import (
    DEFAULT_LOT_STEP,
    DEFAULT_MIN_NOTIONAL,
    DEFAULT_TICK_SIZE,
    EXCHANGE_ACCOUNTS,
    EXCHANGE_TIMEOUT_SECONDS,
)
from signal_trader.models import ExchangeError, PositionMode, TradeSide
from signal_trader.symbols import to_unified_symbol
from signal_trader.utils import get_order_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolRules:
    """Exchange precision filters for one futures symbol."""

    symbol: str
    lot_step: float = DEFAULT_LOT_STEP
    min_notional: float = DEFAULT_MIN_NOTIONAL
    tick_size: float = DEFAULT_TICK_SIZE
    min_quantity: float = 0.0


@dataclass(frozen=True)
class PositionSnapshot:
    """Non-zero position as reported by the exchange."""

    symbol: str
    side: TradeSide
    quantity: float
    entry_price: float
    position_side: str = "BOTH"  # BOTH in one-way mode, LONG/SHORT in hedge mode
    mark_price: Optional[float] = None


class BaseExchangeGateway(ABC):
    """
    Contract the engine needs from a derivatives exchange.

    Implementations bound every network call by `timeout_seconds` and raise
    ExchangeError on failure or timeout; a timed-out call is never assumed to
    have gone through.
    """

    timeout_seconds: float = EXCHANGE_TIMEOUT_SECONDS

    async def _guarded(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ExchangeError(operation, f"timed out after {self.timeout_seconds}s") from exc
        except ExchangeError:
            raise
        except Exception as exc:
            raise ExchangeError(operation, str(exc)) from exc

    @abstractmethod
    async def connect_async(self):
        """Establish connection to the venue."""
        raise NotImplementedError

    @abstractmethod
    async def close(self):
        """Close connection and clean up resources."""
        raise NotImplementedError

    @property
    @abstractmethod
    def connected(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_position_mode_async(self, symbol: str) -> PositionMode:
        raise NotImplementedError

    @abstractmethod
    async def get_positions_async(self, symbol: str) -> List[PositionSnapshot]:
        """Open (non-zero) positions for a symbol."""
        raise NotImplementedError

    @abstractmethod
    async def get_mark_price_async(self, symbol: str) -> float:
        raise NotImplementedError

    @abstractmethod
    async def get_symbol_rules_async(self, symbol: str) -> SymbolRules:
        raise NotImplementedError

    @abstractmethod
    async def set_margin_type_async(self, symbol: str, margin_type: str):
        raise NotImplementedError

    @abstractmethod
    async def set_leverage_async(self, symbol: str, leverage: int):
        raise NotImplementedError

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        *,
        reduce_only: bool = False,
        position_side: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Submit a market order. Returns {'order_id', 'filled', 'avg_price', 'raw'}."""
        raise NotImplementedError

    @abstractmethod
    async def place_stop_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        *,
        position_side: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Submit a position-closing stop-market order."""
        raise NotImplementedError


def _filter_value(filters: List[dict], filter_type: str, key: str) -> Optional[float]:
    for entry in filters or []:
        if entry.get("filterType") == filter_type and entry.get(key) not in (None, ""):
            try:
                return float(entry[key])
            except (TypeError, ValueError):
                return None
    return None


class BinanceFuturesGateway(BaseExchangeGateway):
    """Binance USD-M futures through ccxt's async binanceusdm client."""

    def __init__(self, name: str, api_key: str = "", secret: str = "", testnet: bool = False, exchange: Any = None):
        self.name = name
        self.api_key = api_key
        self.secret = secret
        self.testnet = testnet
        # Tests inject a ccxt-like double here
        self.exchange = exchange
        self._connected = exchange is not None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect_async(self):
        """Connects to Binance futures and loads market filters."""
        if self._connected:
            return

        try:
            logger.info(f"Connecting exchange account '{self.name}' (Binance USD-M{' testnet' if self.testnet else ''})...")
            self.exchange = ccxt.binanceusdm({
                'apiKey': self.api_key,
                'secret': self.secret,
                'enableRateLimit': True,
                'options': {'adjustForTimeDifference': True},
            })
            if self.testnet:
                self.exchange.set_sandbox_mode(True)
            await self._guarded("load_markets", self.exchange.load_markets())
            self._connected = True
            logger.info(f"✅ {self.name}: Connected")
        except Exception as e:
            logger.error(f"❌ {self.name}: connection failed: {e}")
            self._connected = False

    async def close(self):
        if self.exchange:
            try:
                await self.exchange.close()
            finally:
                self._connected = False

    def _unified(self, symbol: str) -> str:
        """Resolve an exchange id ('BTCUSDT') to the ccxt market symbol."""
        if "/" in symbol:
            return symbol
        markets_by_id = getattr(self.exchange, "markets_by_id", None) or {}
        matches = markets_by_id.get(symbol)
        if isinstance(matches, list) and matches:
            return matches[0]["symbol"]
        if isinstance(matches, dict):
            return matches["symbol"]
        return to_unified_symbol(symbol)

    def _require_connection(self, operation: str):
        if not self._connected or self.exchange is None:
            raise ExchangeError(operation, f"exchange '{self.name}' not connected")

    async def get_position_mode_async(self, symbol: str) -> PositionMode:
        self._require_connection("fetch_position_mode")
        result = await self._guarded("fetch_position_mode", self.exchange.fetch_position_mode(self._unified(symbol)))
        hedged = result.get("hedged")
        if hedged is None:
            hedged = (result.get("info") or {}).get("dualSidePosition")
        return PositionMode.HEDGE if str(hedged).lower() == "true" else PositionMode.ONE_WAY

    async def get_positions_async(self, symbol: str) -> List[PositionSnapshot]:
        self._require_connection("fetch_positions")
        unified = self._unified(symbol)
        raw_positions = await self._guarded("fetch_positions", self.exchange.fetch_positions([unified]))
        positions = []
        for raw in raw_positions or []:
            snapshot = self._parse_position(symbol, raw)
            if snapshot:
                positions.append(snapshot)
        return positions

    @staticmethod
    def _parse_position(symbol: str, raw: dict) -> Optional[PositionSnapshot]:
        info = raw.get("info") or {}
        amount = None
        if info.get("positionAmt") not in (None, ""):
            amount = float(info["positionAmt"])
        elif raw.get("contracts"):
            contracts = float(raw["contracts"])
            amount = -contracts if raw.get("side") == "short" else contracts
        if not amount:
            return None
        position_side = str(info.get("positionSide") or "BOTH").upper()
        if position_side in ("LONG", "SHORT"):
            side = TradeSide(position_side)
        else:
            side = TradeSide.LONG if amount > 0 else TradeSide.SHORT
        entry = info.get("entryPrice") or raw.get("entryPrice") or 0.0
        mark = info.get("markPrice") or raw.get("markPrice")
        return PositionSnapshot(
            symbol=symbol,
            side=side,
            quantity=abs(amount),
            entry_price=float(entry),
            position_side=position_side,
            mark_price=float(mark) if mark else None,
        )

    async def get_mark_price_async(self, symbol: str) -> float:
        self._require_connection("fetch_mark_price")
        unified = self._unified(symbol)
        funding = await self._guarded("fetch_mark_price", self.exchange.fetch_funding_rate(unified))
        mark = funding.get("markPrice") or (funding.get("info") or {}).get("markPrice")
        if not mark:
            ticker = await self._guarded("fetch_ticker", self.exchange.fetch_ticker(unified))
            mark = ticker.get("last") or ticker.get("close")
        if not mark:
            raise ExchangeError("fetch_mark_price", f"no mark price for {symbol}")
        return float(mark)

    async def get_symbol_rules_async(self, symbol: str) -> SymbolRules:
        self._require_connection("symbol_rules")
        if not getattr(self.exchange, "markets", None):
            await self._guarded("load_markets", self.exchange.load_markets())
        try:
            market = self.exchange.market(self._unified(symbol))
        except Exception as exc:
            raise ExchangeError("symbol_rules", f"symbol {symbol} not available on exchange") from exc

        filters = (market.get("info") or {}).get("filters") or []
        precision = market.get("precision") or {}
        limits = market.get("limits") or {}
        lot_step = _filter_value(filters, "LOT_SIZE", "stepSize") or precision.get("amount") or DEFAULT_LOT_STEP
        min_notional = (
            _filter_value(filters, "MIN_NOTIONAL", "notional")
            or (limits.get("cost") or {}).get("min")
            or DEFAULT_MIN_NOTIONAL
        )
        tick_size = _filter_value(filters, "PRICE_FILTER", "tickSize") or precision.get("price") or DEFAULT_TICK_SIZE
        min_qty = _filter_value(filters, "LOT_SIZE", "minQty") or (limits.get("amount") or {}).get("min") or 0.0
        return SymbolRules(
            symbol=symbol,
            lot_step=float(lot_step),
            min_notional=float(min_notional),
            tick_size=float(tick_size),
            min_quantity=float(min_qty),
        )

    async def set_margin_type_async(self, symbol: str, margin_type: str):
        self._require_connection("set_margin_mode")
        mode = "isolated" if str(margin_type).lower() == "isolated" else "cross"
        return await self._guarded("set_margin_mode", self.exchange.set_margin_mode(mode, self._unified(symbol)))

    async def set_leverage_async(self, symbol: str, leverage: int):
        self._require_connection("set_leverage")
        return await self._guarded("set_leverage", self.exchange.set_leverage(int(leverage), self._unified(symbol)))

    @staticmethod
    def _normalize_order(order: dict) -> Dict[str, Any]:
        average = order.get("average") or (order.get("info") or {}).get("avgPrice")
        try:
            average = float(average) if average else None
        except (TypeError, ValueError):
            average = None
        return {
            "order_id": get_order_id(order),
            "status": order.get("status"),
            "filled": order.get("filled"),
            "avg_price": average or None,
            "raw": order,
        }

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        *,
        reduce_only: bool = False,
        position_side: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_connection("create_order")
        params: Dict[str, Any] = {}
        if position_side:
            # Binance rejects reduceOnly in hedge mode; an opposite-side order on a tagged leg only reduces
            params["positionSide"] = position_side
        elif reduce_only:
            params["reduceOnly"] = True
        logger.info(f"📤 Sending order: {side} {quantity} {symbol} {params or ''}")
        order = await self._guarded(
            "create_order",
            self.exchange.create_order(self._unified(symbol), "market", side, quantity, None, params),
        )
        return self._normalize_order(order)

    async def place_stop_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        stop_price: float,
        *,
        position_side: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_connection("create_stop_order")
        params: Dict[str, Any] = {"stopPrice": stop_price, "closePosition": True}
        if position_side:
            params["positionSide"] = position_side
        logger.info(f"📤 Sending stop loss: {side} {symbol} trigger={stop_price} {params}")
        order = await self._guarded(
            "create_stop_order",
            self.exchange.create_order(self._unified(symbol), "STOP_MARKET", side, quantity, None, params),
        )
        return self._normalize_order(order)


def load_gateways(accounts: Optional[Dict[str, dict]] = None) -> Dict[str, BaseExchangeGateway]:
    """Build one gateway per configured exchange account; accounts without credentials are skipped."""
    accounts = EXCHANGE_ACCOUNTS if accounts is None else accounts
    gateways: Dict[str, BaseExchangeGateway] = {}
    logger.info(f"🔗 Loading {len(accounts)} exchange account(s)...")
    for name, account in accounts.items():
        if not account.get("api_key") or not account.get("secret"):
            logger.warning(f"⚠️ {name}: Missing API credentials")
            continue
        gateways[name] = BinanceFuturesGateway(
            name,
            api_key=account["api_key"],
            secret=account["secret"],
            testnet=bool(account.get("testnet")),
        )
    return gateways
