"""
GammaDesk: Input Validators

Validation helpers for tickers, OCC option symbols and result limits.
Raise ValueError on invalid input so callers can map to 400 responses.
"""

from __future__ import annotations

import re
from datetime import date
from typing import NamedTuple, Optional

from gammadesk.models import OptionType

# Matches standard US ticker symbols: 1-5 uppercase letters, optional .class
_TICKER_RE = re.compile(r"^[A-Z]{1,5}(\.[A-Z]{1,2})?$")

# OCC option symbol: root, YYMMDD, C/P, strike × 1000 (8 digits). Polygon-style
# feeds prefix "O:"; adjusted roots carry a trailing digit (e.g. SPY1).
_OCC_RE = re.compile(r"^(?:O:)?([A-Z]{1,6}\d?)(\d{6})([CP])(\d{8})$")


class OccSymbol(NamedTuple):
    root: str
    expiration: date
    option_type: OptionType
    strike: float


def validate_ticker(raw: str) -> str:
    """Clean and validate a stock ticker symbol.

    Returns the normalized ticker or raises ValueError.

    >>> validate_ticker('spy')
    'SPY'
    >>> validate_ticker('BRK.B')
    'BRK.B'
    """
    ticker = raw.strip().upper()
    if not ticker:
        raise ValueError("Ticker cannot be empty")
    if not _TICKER_RE.match(ticker):
        raise ValueError(
            f"Invalid ticker '{ticker}'. Expected 1-5 uppercase letters, "
            f"optionally followed by a class suffix (e.g. BRK.B)"
        )
    return ticker


def parse_occ_symbol(symbol: str) -> OccSymbol:
    """Split an OCC option symbol into root, expiry, type and strike.

    >>> parse_occ_symbol('SPY240621C00450000').strike
    450.0
    >>> parse_occ_symbol('O:SPY240621P00445500').option_type.value
    'put'
    """
    m = _OCC_RE.match(symbol.strip().upper())
    if not m:
        raise ValueError(f"Invalid OCC option symbol '{symbol}'")

    root, ymd, right, strike = m.groups()
    try:
        expiration = date(2000 + int(ymd[:2]), int(ymd[2:4]), int(ymd[4:6]))
    except ValueError:
        raise ValueError(f"Invalid expiration in option symbol '{symbol}'")

    return OccSymbol(
        root=root,
        expiration=expiration,
        option_type=OptionType.CALL if right == "C" else OptionType.PUT,
        strike=int(strike) / 1000,
    )


def validate_limit(
    limit: Optional[int] = None,
    max_limit: int = 500,
    default_limit: int = 50,
) -> int:
    """Clamp a result limit to a safe range.

    >>> validate_limit(1000)
    500
    """
    return min(max(1, limit or default_limit), max_limit)
