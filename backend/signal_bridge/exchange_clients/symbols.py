"""
Canonical symbol helpers.

Alerts arrive in TradingView form ("BINANCE:BTCUSDT.P", "btcusdt", "EUR/USD").
The core works on one canonical spelling and every adapter maps it to its own
native token right before each call.

Canonical form: uppercase, no exchange prefix, no ".P" perp suffix and no
"/", "_" or "-" separators. Venue listings ("BTC/USD:USD", "EUR_USD") reduce
to the same key as the alert that opened the position.
"""

from typing import Optional, Tuple

# Longest first so "USDT" wins over "USD"
KNOWN_QUOTES = ("USDT", "USDC", "BUSD", "USD", "EUR", "GBP", "JPY", "CHF", "CAD", "AUD", "NZD", "BTC", "ETH")


def canonical_symbol(raw: str) -> str:
    """Normalize an alert symbol to canonical form.

    Examples:
        BINANCE:BTCUSDT.P -> BTCUSDT
        eth/usdt          -> ETHUSDT
        EUR_USD           -> EURUSD
        COINBASE:BTC-USD  -> BTCUSD
    """
    if not raw:
        return ""
    symbol = raw.strip().upper()
    if ":" in symbol:
        symbol = symbol.split(":", 1)[1]
    if symbol.endswith(".P"):
        symbol = symbol[:-2]
    return symbol.replace("/", "").replace("_", "").replace("-", "")


def split_symbol(symbol: str) -> Optional[Tuple[str, str]]:
    """Split a canonical symbol into (base, quote), or None for equities.

    BTCUSDT -> ("BTC", "USDT"), BTC-USD -> ("BTC", "USD"), AAPL -> None
    """
    if "-" in symbol:
        base, quote = symbol.split("-", 1)
        return base, quote
    for quote in KNOWN_QUOTES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[:-len(quote)], quote
    return None
