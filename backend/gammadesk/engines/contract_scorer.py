"""
GammaDesk: Contract Scorer

Scores a single option contract's activity for "unusualness" (0-100).

Two stages:
  1. Weighted sum of six sub-scores (vol/OI, raw volume, spread quality,
     gamma, delta, days to expiry).
  2. Anomaly override: volume that dwarfs open interest always surfaces at
     the top, whatever the weighted sub-scores say. A purely additive model
     would rank a ratio-50 contract with a poor spread below a ratio-2
     contract with perfect context.

Pure function of (contract, as_of). The only state is a short-lived result
cache keyed by the immutable contract snapshot.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from datetime import date, datetime, timezone
from typing import Iterable, Optional

import structlog

from gammadesk.config import Settings, get_settings
from gammadesk.models import OptionContract, ScoreBreakdown, UnusualScore

_log = structlog.get_logger(__name__)

# ── Override floors ──
ANOMALY_RATIO = 5.0
ANOMALY_VOLUME = 1_000
ANOMALY_FLOOR = 95.0
EXTREME_RATIO = 10.0
EXTREME_VOLUME = 5_000

# ── Flags ──
NEAR_TERM_DTE = 14
HIGH_VOL_OI_RATIO = 5.0
WIDE_SPREAD_PCT = 0.10


def _vol_oi_score(ratio: float) -> float:
    if ratio > 10:
        return 60.0
    if ratio > 5:
        return 50.0
    if ratio > 3:
        return 40.0
    if ratio > 1.5:
        return 20.0
    return 5.0


def _rel_vol_score(volume: int) -> float:
    # Absolute conviction, independent of OI
    if volume > 50_000:
        return 30.0
    if volume > 10_000:
        return 20.0
    if volume > 5_000:
        return 15.0
    if volume > 1_000:
        return 10.0
    return 0.0


def _spread_score(spread_pct: float) -> float:
    if spread_pct < 0.02:
        return 10.0
    if spread_pct < 0.05:
        return 5.0
    return 0.0


def days_to_expiry(expiration: date, as_of: Optional[date] = None) -> int:
    """Calendar days until expiration, floored at 0 (expired series count as 0DTE)."""
    today = as_of or datetime.now(timezone.utc).date()
    return max(0, (expiration - today).days)


class ContractScorer:
    """Unusual-activity scorer with a bounded TTL cache."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._cache: OrderedDict[tuple, tuple[float, UnusualScore]] = OrderedDict()
        self._lock = threading.Lock()

    # ──────────────────────────────────────────────
    # Scoring
    # ──────────────────────────────────────────────

    def score(self, contract: OptionContract, as_of: Optional[date] = None) -> UnusualScore:
        """Score one contract. Never raises on sparse input; clamps instead."""
        as_of = as_of or datetime.now(timezone.utc).date()
        key = (contract, as_of)

        cached = self._cache_get(key)
        if cached is not None:
            return cached

        result = self._compute(contract, as_of)
        self._cache_put(key, result)
        return result

    def score_contracts(
        self,
        contracts: Iterable[OptionContract],
        min_volume: int = 0,
        limit: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> list[UnusualScore]:
        """Score a chain and return results sorted by score, highest first."""
        scored = [
            self.score(c, as_of=as_of)
            for c in contracts
            if c.volume >= min_volume
        ]
        # Ties break on raw ratio so the larger anomaly wins
        scored.sort(key=lambda s: (s.total_score, s.vol_oi_ratio), reverse=True)
        if limit is not None:
            scored = scored[:limit]
        return scored

    @staticmethod
    def _compute(contract: OptionContract, as_of: date) -> UnusualScore:
        volume = contract.volume
        ratio = volume / max(contract.open_interest, 1)

        # No quote or a crossed quote earns no liquidity credit
        quoted = contract.ask > 0 and contract.ask >= contract.bid
        spread = max(contract.ask - contract.bid, 0.0)
        spread_pct = spread / max(contract.last_price, 0.01)

        gamma = contract.greeks.gamma or 0.0
        delta = abs(contract.greeks.delta or 0.0)
        dte = days_to_expiry(contract.expiration, as_of)

        breakdown = ScoreBreakdown(
            vol_oi_score=_vol_oi_score(ratio),
            rel_vol_score=_rel_vol_score(volume),
            spread_score=_spread_score(spread_pct) if quoted else 0.0,
            gamma_score=10.0 if gamma > 0.05 else 0.0,
            delta_score=5.0 if 0.30 <= delta <= 0.60 else 0.0,
            dte_score=5.0 if dte <= 1 else 0.0,
        )

        total = (
            breakdown.vol_oi_score
            + breakdown.rel_vol_score
            + breakdown.spread_score
            + breakdown.gamma_score
            + breakdown.delta_score
            + breakdown.dte_score
        )
        total = max(0.0, min(100.0, total))

        if ratio > ANOMALY_RATIO and volume > ANOMALY_VOLUME:
            total = max(total, ANOMALY_FLOOR)
        if ratio > EXTREME_RATIO and volume > EXTREME_VOLUME:
            total = 100.0

        flags: list[str] = []
        if dte == 0:
            flags.append("0DTE")
        elif dte <= NEAR_TERM_DTE:
            flags.append("NEAR_TERM")
        if ratio > HIGH_VOL_OI_RATIO:
            flags.append("HIGH_VOL_OI")
        if spread_pct > WIDE_SPREAD_PCT:
            flags.append("WIDE_SPREAD")

        return UnusualScore(
            contract_symbol=contract.contract_symbol,
            underlying=contract.underlying,
            strike=contract.strike,
            option_type=contract.option_type,
            expiration=contract.expiration,
            volume=volume,
            open_interest=contract.open_interest,
            total_score=total,
            breakdown=breakdown,
            vol_oi_ratio=round(ratio, 4),
            spread_pct=round(spread_pct, 4),
            days_to_expiry=dte,
            flags=flags,
        )

    # ──────────────────────────────────────────────
    # Cache
    # ──────────────────────────────────────────────

    def _cache_get(self, key: tuple) -> Optional[UnusualScore]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, result = entry
            if expires_at < time.monotonic():
                del self._cache[key]
                return None
            return result

    def _cache_put(self, key: tuple, result: UnusualScore) -> None:
        ttl = self._settings.score_cache_ttl_seconds
        if ttl <= 0:
            return
        with self._lock:
            self._cache[key] = (time.monotonic() + ttl, result)
            self._cache.move_to_end(key)
            while len(self._cache) > self._settings.score_cache_max_entries:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        _log.debug("scorer.cache_cleared")

    @property
    def cache_size(self) -> int:
        return len(self._cache)
