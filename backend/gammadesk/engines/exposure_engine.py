"""
GammaDesk: Exposure Engine

Aggregates an options chain into dealer gamma exposure, a volatility-implied
expected-move envelope and a max-pain strike.

Sign convention (held constant everywhere):
  Dealers are LONG customer call gamma and SHORT customer put gamma.

    call_gamma(K) = +Σ gamma × OI × 100 × spot   over calls at K
    put_gamma(K)  = -Σ gamma × OI × 100 × spot   over puts at K
    net_gamma(K)  = call_gamma(K) + put_gamma(K)

  Positive net gamma: dealer hedging sells rallies and buys dips (dampening).
  Negative net gamma: dealer hedging chases the move (amplifying).

Regime uses only strikes inside a band around spot; far strikes carry
negligible tradeable gamma and add noise.

Empty or all-zero chains yield an Unknown regime and a zero ExpectedMove.
Callers must read those as "no signal", never as a zero-volatility reading.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional

import numpy as np
import structlog

from gammadesk.config import Settings, get_settings
from gammadesk.models import (
    ExpectedMove,
    GammaExposurePoint,
    GammaExposureProfile,
    GammaRegime,
    GammaWalls,
    OptionContract,
    RegimeType,
    VolumeHeatmapRow,
)

_log = structlog.get_logger(__name__)

CONTRACT_SIZE = 100   # standard US equity options contract multiplier


def _valid_spot(spot: Optional[float]) -> bool:
    return spot is not None and math.isfinite(spot) and spot > 0


class ExposureEngine:
    """Stateless per call. Holds only configuration."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    # ──────────────────────────────────────────────
    # GEX Profile
    # ──────────────────────────────────────────────

    def compute_exposure_profile(
        self,
        chain: Iterable[OptionContract],
        spot: float,
        ticker: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> GammaExposureProfile:
        """Per-strike dealer gamma exposure plus regime, walls and flip level."""
        contracts = list(chain)
        if ticker is None:
            ticker = contracts[0].underlying if contracts else ""

        if not _valid_spot(spot):
            _log.warning("exposure.invalid_spot", ticker=ticker, spot=spot)
            return GammaExposureProfile(
                ticker=ticker, spot=0.0, regime=GammaRegime(as_of=as_of), as_of=as_of,
            )

        calls: dict[float, float] = defaultdict(float)
        puts: dict[float, float] = defaultdict(float)
        deltas: dict[float, float] = defaultdict(float)
        carrying: set[float] = set()

        for c in contracts:
            if c.open_interest > 0:
                carrying.add(c.strike)
            gamma = c.greeks.gamma or 0.0
            exposure = gamma * c.open_interest * CONTRACT_SIZE * spot
            if c.is_call:
                calls[c.strike] += exposure
            else:
                puts[c.strike] -= exposure
            deltas[c.strike] += (c.greeks.delta or 0.0) * c.open_interest * CONTRACT_SIZE

        points = []
        for strike in sorted(set(calls) | set(puts)):
            call_g = calls.get(strike, 0.0)
            put_g = puts.get(strike, 0.0)
            points.append(GammaExposurePoint(
                strike=strike,
                call_gamma=call_g,
                put_gamma=put_g,
                net_gamma=call_g + put_g,
                total_gamma=abs(call_g) + abs(put_g),
                net_delta=deltas.get(strike, 0.0),
            ))

        regime = self.classify_regime(points, carrying, spot, as_of=as_of)

        return GammaExposureProfile(
            ticker=ticker,
            spot=spot,
            points=points,
            regime=regime,
            walls=self.find_walls(points, spot),
            flip_level=self.flip_level(points),
            total_net_gamma=sum(p.net_gamma for p in points),
            as_of=as_of,
        )

    def classify_regime(
        self,
        points: list[GammaExposurePoint],
        carrying: set[float],
        spot: float,
        as_of: Optional[datetime] = None,
    ) -> GammaRegime:
        """Regime from in-band net gamma; Unknown when the band is too thin to judge."""
        s = self._settings
        lo = spot * (1 - s.gamma_band_pct)
        hi = spot * (1 + s.gamma_band_pct)

        in_band = [p for p in points if lo <= p.strike <= hi]
        with_oi = [p for p in in_band if p.strike in carrying]

        if len(with_oi) < s.min_strikes_for_regime:
            return GammaRegime(
                regime=RegimeType.UNKNOWN,
                net_gamma_usd=None,
                gamma_flip=False,
                strikes_in_band=len(with_oi),
                as_of=as_of,
            )

        net = sum(p.net_gamma for p in in_band)
        net_delta = sum(p.net_delta for p in in_band)
        if net > s.long_gamma_threshold_usd:
            regime = RegimeType.LONG_GAMMA
        elif net < s.short_gamma_threshold_usd:
            regime = RegimeType.SHORT_GAMMA
        else:
            regime = RegimeType.NEUTRAL

        below = [p for p in with_oi if p.strike <= spot]
        above = [p for p in with_oi if p.strike > spot]
        gamma_flip = False
        if below and above:
            # A structural flip point straddles the current price
            gamma_flip = below[-1].net_gamma * above[0].net_gamma < 0

        return GammaRegime(
            regime=regime,
            net_gamma_usd=net,
            net_delta=net_delta,
            gamma_flip=gamma_flip,
            strikes_in_band=len(with_oi),
            as_of=as_of,
        )

    @staticmethod
    def find_walls(points: list[GammaExposurePoint], spot: float) -> GammaWalls:
        """Call wall = most positive net gamma strike, put wall = most negative."""
        positive = [p for p in points if p.net_gamma > 0]
        negative = [p for p in points if p.net_gamma < 0]
        call_wall = max(positive, key=lambda p: p.net_gamma).strike if positive else None
        put_wall = min(negative, key=lambda p: p.net_gamma).strike if negative else None

        def _dist(level: Optional[float]) -> Optional[float]:
            if level is None or spot <= 0:
                return None
            return round((level - spot) / spot * 100, 4)

        return GammaWalls(
            call_wall=call_wall,
            put_wall=put_wall,
            dist_to_call_wall_pct=_dist(call_wall),
            dist_to_put_wall_pct=_dist(put_wall),
        )

    @staticmethod
    def flip_level(points: list[GammaExposurePoint]) -> Optional[float]:
        """Price where cumulative net gamma (sorted by strike) crosses zero."""
        cumulative = 0.0
        prev_strike: Optional[float] = None
        prev_cum = 0.0
        for p in points:
            cumulative += p.net_gamma
            if prev_strike is not None and prev_cum * cumulative < 0:
                # Linear interpolation between the two strikes
                frac = abs(prev_cum) / (abs(prev_cum) + abs(cumulative))
                return round(prev_strike + (p.strike - prev_strike) * frac, 2)
            prev_strike = p.strike
            prev_cum = cumulative
        return None

    # ──────────────────────────────────────────────
    # Expected Move
    # ──────────────────────────────────────────────

    def compute_expected_move(
        self,
        spot: float,
        implied_vol_pct: float,
        time_to_expiry_years: Optional[float] = None,
        iv_source: str = "input",
    ) -> ExpectedMove:
        """One/two sigma move: spot × (iv / 100) × √T. Defaults to one session."""
        if time_to_expiry_years is None:
            time_to_expiry_years = 1 / self._settings.trading_days_per_year

        if (
            not _valid_spot(spot)
            or not math.isfinite(implied_vol_pct)
            or implied_vol_pct <= 0
            or not math.isfinite(time_to_expiry_years)
            or time_to_expiry_years <= 0
        ):
            return ExpectedMove(spot=spot if _valid_spot(spot) else 0.0)

        one_sigma = spot * (implied_vol_pct / 100) * math.sqrt(time_to_expiry_years)
        return ExpectedMove(
            spot=spot,
            one_sigma=one_sigma,
            two_sigma=2 * one_sigma,
            implied_vol_pct=implied_vol_pct,
            iv_source=iv_source,
            time_to_expiry_years=time_to_expiry_years,
            upper_one_sigma=spot + one_sigma,
            lower_one_sigma=spot - one_sigma,
        )

    def chain_implied_vol(
        self, chain: Iterable[OptionContract], spot: float,
    ) -> tuple[float, str]:
        """Open-interest-weighted IV (percent) over near-the-money contracts.

        Falls back to the configured default when no contract carries usable IV.
        """
        s = self._settings
        lo = spot * (1 - s.gamma_band_pct)
        hi = spot * (1 + s.gamma_band_pct)

        weight = 0.0
        weighted_iv = 0.0
        for c in chain:
            iv = c.implied_volatility
            if iv is None or iv <= 0 or c.open_interest <= 0:
                continue
            if not lo <= c.strike <= hi:
                continue
            weighted_iv += iv * c.open_interest
            weight += c.open_interest

        if weight <= 0:
            return s.default_implied_vol_pct, "default"
        return weighted_iv / weight * 100, "chain"

    def time_to_expiry_years(
        self, chain: Iterable[OptionContract], as_of: Optional[date] = None,
    ) -> float:
        """Sessions until the nearest live expiry, over trading days per year.

        A same-day expiry counts as one full session.
        """
        today = as_of or datetime.now(timezone.utc).date()
        expiries = [c.expiration for c in chain if c.expiration >= today]
        if not expiries:
            return 1 / self._settings.trading_days_per_year

        nearest = min(expiries)
        sessions = int(np.busday_count(
            np.datetime64(today.isoformat()),
            np.datetime64((nearest + timedelta(days=1)).isoformat()),
        ))
        return max(sessions, 1) / self._settings.trading_days_per_year

    def expected_move_for_chain(
        self,
        chain: Iterable[OptionContract],
        spot: float,
        as_of: Optional[date] = None,
    ) -> ExpectedMove:
        """Expected move to the nearest expiry, with max pain, from a chain snapshot."""
        contracts = list(chain)
        if not _valid_spot(spot) or not any(c.open_interest > 0 for c in contracts):
            return ExpectedMove(spot=spot if _valid_spot(spot) else 0.0)

        iv_pct, source = self.chain_implied_vol(contracts, spot)
        move = self.compute_expected_move(
            spot,
            iv_pct,
            self.time_to_expiry_years(contracts, as_of=as_of),
            iv_source=source,
        )
        return move.model_copy(update={"max_pain": self.compute_max_pain(contracts)})

    # ──────────────────────────────────────────────
    # Max Pain
    # ──────────────────────────────────────────────

    @staticmethod
    def compute_max_pain(chain: Iterable[OptionContract]) -> Optional[float]:
        """Strike minimising aggregate intrinsic value owed to option holders.

        Evaluated at every listed strike with prefix sums over sorted strikes,
        O(n log n) instead of the naive O(strikes²). Ties go to the lowest strike.
        """
        contracts = list(chain)
        if not any(c.open_interest > 0 for c in contracts):
            return None

        candidates = np.array(sorted({c.strike for c in contracts}), dtype=float)

        call_k = np.array([c.strike for c in contracts if c.is_call and c.open_interest > 0], dtype=float)
        call_oi = np.array([c.open_interest for c in contracts if c.is_call and c.open_interest > 0], dtype=float)
        put_k = np.array([c.strike for c in contracts if not c.is_call and c.open_interest > 0], dtype=float)
        put_oi = np.array([c.open_interest for c in contracts if not c.is_call and c.open_interest > 0], dtype=float)

        pain = np.zeros_like(candidates)

        if call_k.size:
            order = np.argsort(call_k)
            call_k, call_oi = call_k[order], call_oi[order]
            oi_cum = np.concatenate(([0.0], np.cumsum(call_oi)))
            koi_cum = np.concatenate(([0.0], np.cumsum(call_k * call_oi)))
            # calls with K <= S are in the money by S - K
            idx = np.searchsorted(call_k, candidates, side="right")
            pain += candidates * oi_cum[idx] - koi_cum[idx]

        if put_k.size:
            order = np.argsort(put_k)
            put_k, put_oi = put_k[order], put_oi[order]
            oi_cum = np.concatenate(([0.0], np.cumsum(put_oi)))
            koi_cum = np.concatenate(([0.0], np.cumsum(put_k * put_oi)))
            # puts with K > S are in the money by K - S
            idx = np.searchsorted(put_k, candidates, side="right")
            oi_above = oi_cum[-1] - oi_cum[idx]
            koi_above = koi_cum[-1] - koi_cum[idx]
            pain += koi_above - candidates * oi_above

        pain *= CONTRACT_SIZE
        return float(candidates[int(np.argmin(pain))])

    # ──────────────────────────────────────────────
    # Volume Heatmap
    # ──────────────────────────────────────────────

    @staticmethod
    def compute_volume_heatmap(chain: Iterable[OptionContract]) -> list[VolumeHeatmapRow]:
        """Call vs put volume per strike."""
        rows: dict[float, list[int]] = defaultdict(lambda: [0, 0])
        for c in chain:
            rows[c.strike][0 if c.is_call else 1] += c.volume
        return [
            VolumeHeatmapRow(
                strike=strike,
                call_volume=call_vol,
                put_volume=put_vol,
                total_volume=call_vol + put_vol,
            )
            for strike, (call_vol, put_vol) in sorted(rows.items())
        ]
