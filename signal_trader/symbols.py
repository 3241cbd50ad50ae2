"""Pair normalization helpers shared by the signal handler, executor and reconciler."""

import re

DEFAULT_SETTLE_CURRENCY = "USDT"
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def strip_symbol(raw: str | None) -> str:
    """
    Drop charting-venue decorations from a pair.

    'BINANCE:BTCUSDT.P' -> 'BTCUSDT'
    """
    value = (raw or "").strip().upper()
    if ":" in value:
        value = value.split(":", 1)[1]
    if value.endswith(".P"):
        value = value[:-2]
    return value


def to_exchange_symbol(pair: str | None, settle: str = DEFAULT_SETTLE_CURRENCY) -> str | None:
    """
    Map a bot/signal pair to the exchange's futures symbol id.

    Handles 'BTC/USDT', 'BTCUSDT/USDT', 'BINANCE:BTCUSDT.P' and suffixed
    tickers like 'ZEC.Shift'. Returns None when nothing usable remains.
    """
    if not pair:
        return None
    base = strip_symbol(pair).split("/", 1)[0]
    if "." in base:
        base = base.split(".", 1)[0]
    base = _NON_ALNUM.sub("", base)
    if not base:
        return None
    settle = settle.upper()
    if not base.endswith(settle):
        base = f"{base}{settle}"
    return base


def to_unified_symbol(exchange_symbol: str, settle: str = DEFAULT_SETTLE_CURRENCY) -> str:
    """
    Convert an exchange id like 'BTCUSDT' to the ccxt linear-swap form 'BTC/USDT:USDT'.

    Symbols already in unified form pass through untouched.
    """
    if "/" in exchange_symbol:
        return exchange_symbol
    settle = settle.upper()
    symbol = exchange_symbol.upper()
    if symbol.endswith(settle) and len(symbol) > len(settle):
        base = symbol[: -len(settle)]
        return f"{base}/{settle}:{settle}"
    return symbol
