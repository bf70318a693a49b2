"""
GammaDesk: Flow Aggregator

Rolling-window aggregation of option trade prints for one underlying.

Each print is classified by the side of the quote it hit:
  price >= ask - ε  → Ask   (buyer initiated)
  price <= bid + ε  → Bid   (seller initiated)
  otherwise         → Mid
  no usable quote   → Unknown

Side inference is an approximation: the feed does not carry true aggressor
flags. Mid and Unknown prints count toward volume but never toward
directional notional, so a missing quote can never tilt the imbalance.

Directional pressure:
  bullish = call@ask + put@bid
  bearish = put@ask + call@bid
  imbalance = (bullish - bearish) / (bullish + bearish)   in [-1, 1]

With no bid-side flow this reduces to (call@ask - put@ask) / total ask notional.

The window is event-time based. Prints are held in a heap keyed by
timestamp, so a late print inside the window is evicted on its own deadline
rather than behind newer prints. Running totals are maintained incrementally
on insert and eviction; ingest, sweep and snapshot share one lock.
"""

from __future__ import annotations

import bisect
import heapq
import itertools
import math
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from gammadesk.config import Settings, get_settings
from gammadesk.models import (
    AggressorSide,
    FlowAggregates,
    FlowBurst,
    FlowImbalance,
    OptionContract,
    OptionType,
    TradePrint,
)
from gammadesk.utils.validators import parse_occ_symbol

_log = structlog.get_logger(__name__)

CONTRACT_SIZE = 100


def classify_side(
    price: float,
    bid: Optional[float],
    ask: Optional[float],
    epsilon: float = 0.005,
) -> AggressorSide:
    """Aggressor side of a print against the prevailing quote."""
    if bid is None or ask is None or ask <= 0 or bid < 0 or ask < bid:
        return AggressorSide.UNKNOWN
    if price >= ask - epsilon:
        return AggressorSide.ASK
    if price <= bid + epsilon:
        return AggressorSide.BID
    return AggressorSide.MID


def directional_imbalance(
    call_ask: float, put_ask: float, call_bid: float, put_bid: float,
) -> float:
    """(bull - bear) / (bull + bear), 0 when there is no directional flow."""
    bull = call_ask + put_bid
    bear = put_ask + call_bid
    total = bull + bear
    if total <= 0:
        return 0.0
    return max(-1.0, min(1.0, (bull - bear) / total))


def _symbol_key(symbol: str) -> str:
    s = symbol.strip().upper()
    return s[2:] if s.startswith("O:") else s


@dataclass(frozen=True)
class _Entry:
    timestamp: datetime
    strike: float
    option_type: OptionType
    side: AggressorSide
    size: int
    notional: float
    atm: bool


class _Totals:
    """Running sums over the entries currently held in the window."""

    __slots__ = (
        "call_ask", "put_ask", "call_bid", "put_bid",
        "atm_call_ask", "atm_put_ask", "atm_call_bid", "atm_put_bid",
        "call_volume", "put_volume", "mid_volume", "trade_count",
    )

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        for name in self.__slots__:
            setattr(self, name, 0)

    def apply(self, e: _Entry, sign: int) -> None:
        self.trade_count += sign
        if e.option_type == OptionType.CALL:
            self.call_volume += sign * e.size
        else:
            self.put_volume += sign * e.size

        if e.side in (AggressorSide.MID, AggressorSide.UNKNOWN):
            self.mid_volume += sign * e.size
            return

        name = f"{e.option_type.value}_{e.side.value.lower()}"
        setattr(self, name, getattr(self, name) + sign * e.notional)
        if e.atm:
            atm_name = f"atm_{name}"
            setattr(self, atm_name, getattr(self, atm_name) + sign * e.notional)


class FlowAggregator:
    """Owned rolling flow state for a single underlying."""

    def __init__(self, ticker: str, settings: Optional[Settings] = None):
        self.ticker = ticker
        self._settings = settings or get_settings()
        self._window = timedelta(seconds=self._settings.flow_window_seconds)
        self._burst_window = timedelta(seconds=self._settings.burst_window_seconds)
        self._lock = threading.Lock()

        self._quotes: dict[str, tuple[float, float]] = {}
        self._spot: Optional[float] = None
        self._init_state()

    def _init_state(self) -> None:
        self._entries: list[tuple[datetime, int, _Entry]] = []   # min-heap on timestamp
        self._seq = itertools.count()
        self._totals = _Totals()
        # strike -> [notional sum, trade count] over the window, for burst baselines
        self._strike_stats: dict[float, list[float]] = defaultdict(lambda: [0.0, 0])
        self._sub_windows: dict[tuple, list[tuple[datetime, float]]] = {}   # sorted by timestamp
        self._sub_sums: dict[tuple, float] = defaultdict(float)
        self._bursts: deque[FlowBurst] = deque(maxlen=self._settings.max_bursts)
        self._newest: Optional[datetime] = None
        self._last_trade_at: Optional[datetime] = None

    # ──────────────────────────────────────────────
    # Market context
    # ──────────────────────────────────────────────

    def update_quotes(self, chain: Iterable[OptionContract]) -> None:
        """Refresh the quote book used when a print arrives without bid/ask."""
        quotes = {
            _symbol_key(c.contract_symbol): (c.bid, c.ask)
            for c in chain
            if c.ask > 0
        }
        with self._lock:
            self._quotes = quotes

    def set_spot(self, price: Optional[float]) -> None:
        if price is not None and (not math.isfinite(price) or price <= 0):
            raise ValueError(f"Spot must be a positive finite number, got {price}")
        with self._lock:
            self._spot = price

    @property
    def spot(self) -> Optional[float]:
        return self._spot

    # ──────────────────────────────────────────────
    # Ingest
    # ──────────────────────────────────────────────

    def ingest(self, trade: TradePrint) -> list[FlowBurst]:
        """Fold one print into the window. Returns bursts it completed.

        Raises ValueError for prints that cannot be attributed to a strike,
        belong to another underlying, or are older than the window.
        """
        if trade.underlying and trade.underlying.upper() != self.ticker:
            raise ValueError(
                f"Print for {trade.underlying} sent to {self.ticker} aggregator"
            )

        strike, option_type = trade.strike, trade.option_type
        if strike is None or option_type is None:
            occ = parse_occ_symbol(trade.contract_symbol)
            strike = strike if strike is not None else occ.strike
            option_type = option_type or occ.option_type

        with self._lock:
            ts = trade.timestamp
            if self._newest is not None and ts < self._newest - self._window:
                raise ValueError(
                    f"Print at {ts.isoformat()} is older than the "
                    f"{self._settings.flow_window_seconds:.0f}s window"
                )

            bid, ask = trade.bid, trade.ask
            if bid is None or ask is None:
                bid, ask = self._quotes.get(_symbol_key(trade.contract_symbol), (None, None))
            side = classify_side(trade.price, bid, ask, self._settings.quote_epsilon)

            spot = self._spot
            atm = spot is not None and abs(strike - spot) <= spot * self._settings.atm_band_pct

            entry = _Entry(
                timestamp=ts,
                strike=strike,
                option_type=option_type,
                side=side,
                size=trade.size,
                notional=trade.price * trade.size * CONTRACT_SIZE,
                atm=atm,
            )

            # Baseline is the strike's average print before this one
            stat = self._strike_stats[strike]
            baseline = stat[0] / stat[1] if stat[1] else 0.0

            heapq.heappush(self._entries, (ts, next(self._seq), entry))
            self._totals.apply(entry, +1)
            stat[0] += entry.notional
            stat[1] += 1

            if self._newest is None or ts > self._newest:
                self._newest = ts
            if self._last_trade_at is None or ts > self._last_trade_at:
                self._last_trade_at = ts

            bursts = self._check_burst(entry, baseline)
            self._evict(self._newest - self._window)

        for b in bursts:
            _log.info(
                "flow.burst",
                ticker=self.ticker,
                strike=b.strike,
                option_type=b.option_type.value,
                side=b.side.value,
                notional=round(b.notional, 2),
                trades=b.trade_count,
            )
        return bursts

    def _check_burst(self, entry: _Entry, baseline: float) -> list[FlowBurst]:
        if entry.side not in (AggressorSide.ASK, AggressorSide.BID):
            return []

        s = self._settings
        key = (entry.strike, entry.option_type, entry.side)
        sub = self._sub_windows.setdefault(key, [])
        bisect.insort(sub, (entry.timestamp, entry.notional))
        self._sub_sums[key] += entry.notional

        # Sub-window spans back from its newest print, which a late print may not be
        cutoff = sub[-1][0] - self._burst_window
        expired = bisect.bisect_left(sub, (cutoff,))
        if expired:
            self._sub_sums[key] -= sum(n for _, n in sub[:expired])
            del sub[:expired]
        if entry.timestamp < cutoff:
            return []

        threshold = max(s.burst_floor_notional, s.burst_size_multiple * baseline)
        if len(sub) < s.burst_min_trades or self._sub_sums[key] <= threshold:
            return []

        burst = FlowBurst(
            strike=entry.strike,
            option_type=entry.option_type,
            side=entry.side,
            notional=self._sub_sums[key],
            trade_count=len(sub),
            timestamp=sub[-1][0],
        )
        self._bursts.append(burst)
        # Reset so one sustained sweep does not re-fire on every print
        del self._sub_windows[key]
        del self._sub_sums[key]
        return [burst]

    # ──────────────────────────────────────────────
    # Eviction
    # ──────────────────────────────────────────────

    def sweep(self, now: datetime) -> int:
        """Evict everything older than the window relative to ``now``."""
        with self._lock:
            if self._newest is None or now > self._newest:
                self._newest = now
            evicted = self._evict(now - self._window)
        if evicted:
            _log.debug("flow.swept", ticker=self.ticker, evicted=evicted)
        return evicted

    def _evict(self, cutoff: datetime) -> int:
        evicted = 0
        while self._entries and self._entries[0][0] < cutoff:
            _, _, e = heapq.heappop(self._entries)
            self._totals.apply(e, -1)
            stat = self._strike_stats[e.strike]
            stat[0] -= e.notional
            stat[1] -= 1
            if stat[1] <= 0:
                del self._strike_stats[e.strike]
            evicted += 1

        if not self._entries:
            # Drop float residue from repeated add/subtract
            self._totals.reset()
            self._strike_stats.clear()

        if any(b.timestamp < cutoff for b in self._bursts):
            self._bursts = deque(
                (b for b in self._bursts if b.timestamp >= cutoff),
                maxlen=self._settings.max_bursts,
            )

        burst_cutoff = cutoff + self._window - self._burst_window
        for key in [k for k, sub in self._sub_windows.items() if sub[-1][0] < burst_cutoff]:
            del self._sub_windows[key]
            self._sub_sums.pop(key, None)

        return evicted

    # ──────────────────────────────────────────────
    # Snapshot
    # ──────────────────────────────────────────────

    def snapshot(self) -> FlowAggregates:
        """Consistent point-in-time view of the window."""
        with self._lock:
            t = self._totals
            overall = directional_imbalance(
                max(t.call_ask, 0.0), max(t.put_ask, 0.0),
                max(t.call_bid, 0.0), max(t.put_bid, 0.0),
            )
            atm = directional_imbalance(
                max(t.atm_call_ask, 0.0), max(t.atm_put_ask, 0.0),
                max(t.atm_call_bid, 0.0), max(t.atm_put_bid, 0.0),
            )
            return FlowAggregates(
                ticker=self.ticker,
                call_ask_notional=t.call_ask,
                put_ask_notional=t.put_ask,
                call_bid_notional=t.call_bid,
                put_bid_notional=t.put_bid,
                atm_call_ask_notional=t.atm_call_ask,
                atm_put_ask_notional=t.atm_put_ask,
                atm_call_bid_notional=t.atm_call_bid,
                atm_put_bid_notional=t.atm_put_bid,
                call_volume=t.call_volume,
                put_volume=t.put_volume,
                mid_volume=t.mid_volume,
                trade_count=t.trade_count,
                normalized_imbalance=FlowImbalance(overall=overall, atm=atm),
                bursts=list(self._bursts),
                window_seconds=self._settings.flow_window_seconds,
                last_trade_at=self._last_trade_at,
                warming_up=t.trade_count < self._settings.flow_warmup_trades,
            )

    def reset(self) -> None:
        with self._lock:
            self._init_state()
        _log.info("flow.reset", ticker=self.ticker)

    def __len__(self) -> int:
        return len(self._entries)
