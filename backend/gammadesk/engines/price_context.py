"""
GammaDesk: Price Context

Session VWAP from intraday bars and classification of spot against it.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

from gammadesk.models import MarketContext, PriceBar, PriceVsVwap

DEFAULT_AT_BAND_PCT = 0.0005   # ±0.05%


def compute_vwap(bars: Iterable[PriceBar]) -> Optional[float]:
    """Volume-weighted average price: Σ(p × v) / Σv.

    p is the bar's own VWAP when the vendor supplies one, otherwise the
    typical price (high + low + close) / 3. Returns None without volume.
    """
    pv = 0.0
    volume = 0.0
    for bar in bars:
        if bar.volume <= 0:
            continue
        price = bar.vwap if bar.vwap else (bar.high + bar.low + bar.close) / 3
        if price <= 0:
            continue
        pv += price * bar.volume
        volume += bar.volume
    if volume <= 0:
        return None
    return pv / volume


def classify_price(
    price: Optional[float],
    vwap: Optional[float],
    band_pct: float = DEFAULT_AT_BAND_PCT,
) -> MarketContext:
    """Above / Below / At VWAP, Unknown when either side is missing."""
    if (
        price is None or vwap is None
        or not math.isfinite(price) or not math.isfinite(vwap)
        or price <= 0 or vwap <= 0
    ):
        return MarketContext(price=price, vwap=vwap)

    distance_pct = (price - vwap) / vwap * 100
    if price > vwap * (1 + band_pct):
        position = PriceVsVwap.ABOVE
    elif price < vwap * (1 - band_pct):
        position = PriceVsVwap.BELOW
    else:
        position = PriceVsVwap.AT

    return MarketContext(
        price=price,
        vwap=vwap,
        price_vs_vwap=position,
        vwap_distance_pct=round(distance_pct, 4),
    )
