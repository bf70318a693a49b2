"""
GammaDesk: Bias Engine

Fuses gamma regime, flow imbalance, bursts, price-vs-VWAP and gamma walls
into a single Bullish / Bearish / NoTrade verdict.

Scoring:
  bull and bear accumulate weighted contributions (weights live in Settings);
  net = bull - bear. Inside the ±no_trade_threshold dead zone the verdict is
  NoTrade. Confidence is |net| as a share of the largest achievable one-sided
  total.

Stateless: every call is a pure function of its inputs and ``now``. A regime
or price context older than bias_stale_after_seconds forces NoTrade; a flow
window whose newest print is that old contributes no flow signals.

Long gamma with price near VWAP is reported as pinned and, when
bias_pin_dampening is set, removes that many points from each side.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from gammadesk.config import Settings, get_settings
from gammadesk.engines.price_context import classify_price
from gammadesk.models import (
    AggressorSide,
    Bias,
    BiasScore,
    BiasVerdict,
    FlowAggregates,
    FlowImbalance,
    GammaRegime,
    GammaWalls,
    MarketContext,
    OptionType,
    PriceContext,
    PriceVsVwap,
    RegimeType,
    as_utc,
    utcnow,
)

_log = structlog.get_logger(__name__)


class BiasEngine:
    """Composite directional verdict."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    @property
    def max_possible(self) -> float:
        """Largest one-sided total the weights allow."""
        s = self._settings
        shared = (
            s.bias_atm_imbalance_weight
            + s.bias_overall_imbalance_weight
            + s.bias_burst_weight
            + s.bias_vwap_max_weight
            + s.bias_wall_weight
        )
        return max(shared + s.bias_long_gamma_weight, shared + s.bias_short_gamma_weight)

    def compute_bias(
        self,
        regime: GammaRegime,
        flow: FlowAggregates,
        price_context: Optional[PriceContext] = None,
        walls: Optional[GammaWalls] = None,
        now: Optional[datetime] = None,
        ticker: Optional[str] = None,
    ) -> BiasVerdict:
        s = self._settings
        now = as_utc(now) or utcnow()
        ticker = ticker or flow.ticker

        context = (
            classify_price(price_context.price, price_context.vwap, s.vwap_at_band_pct)
            if price_context is not None
            else MarketContext()
        )

        stale = self._stale_inputs(regime, price_context, now)
        if stale:
            _log.info("bias.stale_inputs", ticker=ticker, inputs=stale)
            return BiasVerdict(
                ticker=ticker,
                bias=Bias.NO_TRADE,
                confidence=0.0,
                reasons=[f"Stale data: {', '.join(stale)} older than {s.bias_stale_after_seconds:.0f}s"],
                regime=regime,
                flow=flow,
                context=context,
                walls=walls,
                stale=True,
                as_of=now,
            )

        bull = 0.0
        bear = 0.0
        signals: list[tuple[float, str]] = []

        # ── Gamma regime ──
        if regime.regime == RegimeType.LONG_GAMMA:
            bull += s.bias_long_gamma_weight
            signals.append((s.bias_long_gamma_weight, "Long gamma regime: dealer hedging dampens moves"))
        elif regime.regime == RegimeType.SHORT_GAMMA:
            bear += s.bias_short_gamma_weight
            signals.append((s.bias_short_gamma_weight, "Short gamma regime: dealer hedging amplifies moves"))

        if regime.gamma_flip:
            # Non-directional: ranked but never scored
            signals.append((s.bias_gamma_flip_weight, "Gamma flip near spot: elevated volatility risk"))

        # ── Flow freshness ──
        flow_age = self._flow_age(flow, now)
        flow_stale = flow_age is not None and flow_age > s.bias_stale_after_seconds
        if flow_stale:
            _log.info("bias.stale_flow", ticker=ticker, age_seconds=round(flow_age, 1))
        imbalance = FlowImbalance() if flow_stale else flow.normalized_imbalance
        bursts = [] if flow_stale else flow.bursts

        # ── Flow imbalance ──
        atm = imbalance.atm
        if abs(atm) > s.bias_atm_imbalance_threshold:
            pts = s.bias_atm_imbalance_weight * abs(atm)
            if atm > 0:
                bull += pts
                signals.append((pts, f"ATM flow bullish (imbalance {atm:+.2f})"))
            else:
                bear += pts
                signals.append((pts, f"ATM flow bearish (imbalance {atm:+.2f})"))

        overall = imbalance.overall
        if abs(overall) > s.bias_overall_imbalance_threshold:
            pts = s.bias_overall_imbalance_weight * abs(overall)
            if overall > 0:
                bull += pts
                signals.append((pts, f"Overall flow bullish (imbalance {overall:+.2f})"))
            else:
                bear += pts
                signals.append((pts, f"Overall flow bearish (imbalance {overall:+.2f})"))

        # ── Bursts ──
        call_bursts = sum(
            b.notional for b in bursts
            if b.side == AggressorSide.ASK and b.option_type == OptionType.CALL
        )
        put_bursts = sum(
            b.notional for b in bursts
            if b.side == AggressorSide.ASK and b.option_type == OptionType.PUT
        )
        if call_bursts + put_bursts > 0:
            tilt = (call_bursts - put_bursts) / (call_bursts + put_bursts)
            pts = s.bias_burst_weight * abs(tilt)
            if tilt > 0:
                bull += pts
                signals.append((pts, f"Call buying bursts (${call_bursts / 1e6:.1f}M at ask)"))
            elif tilt < 0:
                bear += pts
                signals.append((pts, f"Put buying bursts (${put_bursts / 1e6:.1f}M at ask)"))

        # ── Price vs VWAP ──
        if context.price_vs_vwap in (PriceVsVwap.ABOVE, PriceVsVwap.BELOW):
            dist = abs(context.vwap_distance_pct)
            pts = min(s.bias_vwap_base_weight + s.bias_vwap_distance_weight * dist, s.bias_vwap_max_weight)
            if context.price_vs_vwap == PriceVsVwap.ABOVE:
                bull += pts
                signals.append((pts, f"Price above VWAP ({context.vwap_distance_pct:+.2f}%)"))
            else:
                bear += pts
                signals.append((pts, f"Price below VWAP ({context.vwap_distance_pct:+.2f}%)"))

        # ── Gamma walls ──
        price = context.price
        if walls is not None and price:
            if walls.call_wall is not None:
                dist = (walls.call_wall - price) / price * 100
                if 0 <= dist <= s.bias_wall_proximity_pct:
                    bear += s.bias_wall_weight
                    signals.append((s.bias_wall_weight, f"Call wall {walls.call_wall:g} overhead ({dist:.2f}% away)"))
            if walls.put_wall is not None:
                dist = (price - walls.put_wall) / price * 100
                if 0 <= dist <= s.bias_wall_proximity_pct:
                    bull += s.bias_wall_weight
                    signals.append((s.bias_wall_weight, f"Put wall {walls.put_wall:g} support ({dist:.2f}% away)"))

        # ── Pinning ──
        if (
            regime.regime == RegimeType.LONG_GAMMA
            and context.price_vs_vwap != PriceVsVwap.UNKNOWN
            and abs(context.vwap_distance_pct) < s.bias_pin_vwap_pct
        ):
            signals.append((s.bias_pin_weight, f"Pinned: long gamma near VWAP ({context.vwap_distance_pct:+.2f}%)"))
            if s.bias_pin_dampening > 0:
                bull = max(bull - s.bias_pin_dampening, 0.0)
                bear = max(bear - s.bias_pin_dampening, 0.0)

        # ── Verdict ──
        net = bull - bear
        if net > s.bias_no_trade_threshold:
            bias = Bias.BULLISH
        elif net < -s.bias_no_trade_threshold:
            bias = Bias.BEARISH
        else:
            bias = Bias.NO_TRADE

        confidence = 0.0
        if bias != Bias.NO_TRADE and self.max_possible > 0:
            confidence = round(max(0.0, min(100.0, abs(net) / self.max_possible * 100)), 1)

        signals.sort(key=lambda x: x[0], reverse=True)
        reasons = [text for _, text in signals]
        if bias == Bias.NO_TRADE:
            reasons.insert(
                0,
                f"Net score {net:+.1f} inside ±{s.bias_no_trade_threshold:g} dead zone"
                if signals else "No directional signal",
            )
        if flow_stale:
            reasons.insert(
                1 if bias == Bias.NO_TRADE else 0,
                f"Stale data: last print {flow_age:.0f}s ago, flow signals ignored",
            )
        reasons = reasons[: s.bias_max_reasons]

        _log.debug(
            "bias.computed",
            ticker=ticker,
            bias=bias.value,
            bull=round(bull, 2),
            bear=round(bear, 2),
            confidence=confidence,
        )

        return BiasVerdict(
            ticker=ticker,
            bias=bias,
            confidence=confidence,
            reasons=reasons,
            regime=regime,
            flow=flow,
            context=context,
            score=BiasScore(bull=round(bull, 2), bear=round(bear, 2), net=round(net, 2)),
            walls=walls,
            as_of=now,
        )

    def _stale_inputs(
        self,
        regime: GammaRegime,
        price_context: Optional[PriceContext],
        now: datetime,
    ) -> list[str]:
        limit = self._settings.bias_stale_after_seconds
        stale = []
        if regime.as_of is not None and (now - regime.as_of).total_seconds() > limit:
            stale.append("gamma regime")
        if (
            price_context is not None
            and price_context.as_of is not None
            and (now - price_context.as_of).total_seconds() > limit
        ):
            stale.append("price context")
        return stale

    @staticmethod
    def _flow_age(flow: FlowAggregates, now: datetime) -> Optional[float]:
        """Seconds since the newest print, None before any print arrives."""
        if flow.last_trade_at is None:
            return None
        return (now - as_utc(flow.last_trade_at)).total_seconds()
