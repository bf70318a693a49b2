"""
Price Context Tests

Session VWAP and price-vs-VWAP classification.
"""

from __future__ import annotations

import pytest

from gammadesk.engines.price_context import classify_price, compute_vwap
from gammadesk.models import PriceBar, PriceVsVwap


class TestVwap:
    def test_typical_price_weighting(self):
        bars = [
            PriceBar(high=101, low=99, close=100, volume=100),   # typical 100
            PriceBar(high=104, low=102, close=103, volume=300),  # typical 103
        ]
        assert compute_vwap(bars) == pytest.approx((100 * 100 + 103 * 300) / 400)

    def test_bar_vwap_preferred(self):
        bars = [PriceBar(high=110, low=90, close=95, volume=10, vwap=101.5)]
        assert compute_vwap(bars) == pytest.approx(101.5)

    def test_zero_volume_bars_skipped(self):
        bars = [
            PriceBar(high=50, low=50, close=50, volume=0),
            PriceBar(high=100, low=100, close=100, volume=5),
        ]
        assert compute_vwap(bars) == pytest.approx(100)

    def test_no_volume_is_none(self):
        assert compute_vwap([]) is None
        assert compute_vwap([PriceBar(high=1, low=1, close=1, volume=0)]) is None


class TestClassifyPrice:
    def test_above(self):
        ctx = classify_price(101.0, 100.0)
        assert ctx.price_vs_vwap == PriceVsVwap.ABOVE
        assert ctx.vwap_distance_pct == pytest.approx(1.0)

    def test_below(self):
        ctx = classify_price(99.0, 100.0)
        assert ctx.price_vs_vwap == PriceVsVwap.BELOW
        assert ctx.vwap_distance_pct == pytest.approx(-1.0)

    @pytest.mark.parametrize("price", [100.0, 100.04, 99.96])
    def test_at_within_band(self, price):
        assert classify_price(price, 100.0).price_vs_vwap == PriceVsVwap.AT

    @pytest.mark.parametrize("price,vwap", [(None, 100.0), (100.0, None), (100.0, 0.0)])
    def test_unknown_without_inputs(self, price, vwap):
        ctx = classify_price(price, vwap)
        assert ctx.price_vs_vwap == PriceVsVwap.UNKNOWN
        assert ctx.vwap_distance_pct == 0.0
