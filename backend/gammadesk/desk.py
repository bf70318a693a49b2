"""
GammaDesk: Analytics Desk

The serving layer's handle on the analytics core. Owns one state bundle per
underlying (latest chain, flow aggregator, price context) and routes calls to
the engines. Underlyings never share mutable state; the registry itself is
guarded by a lock.

Records are validated at this boundary. A malformed contract or print is
logged and dropped, never folded into an aggregate.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable, Optional, Union

import structlog
from pydantic import ValidationError

from gammadesk import metrics
from gammadesk.config import Settings, get_settings
from gammadesk.engines.bias_engine import BiasEngine
from gammadesk.engines.contract_scorer import ContractScorer
from gammadesk.engines.exposure_engine import ExposureEngine
from gammadesk.engines.flow_aggregator import FlowAggregator
from gammadesk.engines.price_context import classify_price, compute_vwap
from gammadesk.models import (
    BiasVerdict,
    ChainSnapshotIn,
    ExpectedMove,
    FlowAggregates,
    GammaExposureProfile,
    IngestResult,
    MarketContext,
    OptionContract,
    OptionsChain,
    PriceBar,
    PriceContext,
    TradePrint,
    UnusualScore,
    VolumeHeatmapRow,
    as_utc,
    utcnow,
)

_log = structlog.get_logger(__name__)


@dataclass
class _Underlying:
    ticker: str
    flow: FlowAggregator
    chain: Optional[OptionsChain] = None
    price: Optional[PriceContext] = None

    @property
    def spot(self) -> Optional[float]:
        if self.price is not None:
            return self.price.price
        if self.chain is not None:
            return self.chain.underlying_price
        return None


class AnalyticsDesk:
    """Per-underlying analytics state and the operations over it."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self.scorer = ContractScorer(self._settings)
        self.exposure = ExposureEngine(self._settings)
        self.bias = BiasEngine(self._settings)
        self._underlyings: dict[str, _Underlying] = {}
        self._lock = threading.Lock()

    # ──────────────────────────────────────────────
    # Registry
    # ──────────────────────────────────────────────

    def _state(self, ticker: str) -> _Underlying:
        with self._lock:
            state = self._underlyings.get(ticker)
            if state is None:
                state = _Underlying(ticker=ticker, flow=FlowAggregator(ticker, self._settings))
                self._underlyings[ticker] = state
                _log.info("desk.underlying_added", ticker=ticker)
            return state

    def _existing(self, ticker: str) -> Optional[_Underlying]:
        with self._lock:
            return self._underlyings.get(ticker)

    @property
    def tickers(self) -> list[str]:
        with self._lock:
            return sorted(self._underlyings)

    def drop(self, ticker: str) -> bool:
        """Tear down all state for an underlying."""
        with self._lock:
            state = self._underlyings.pop(ticker, None)
        if state is None:
            return False
        _log.info("desk.underlying_dropped", ticker=ticker)
        return True

    # ──────────────────────────────────────────────
    # Ingestion
    # ──────────────────────────────────────────────

    def update_chain(
        self,
        ticker: str,
        chain: Union[OptionsChain, ChainSnapshotIn, dict],
    ) -> IngestResult:
        """Replace the latest chain snapshot. Invalid contracts are dropped."""
        if isinstance(chain, OptionsChain):
            snapshot = chain
            rejected = 0
        else:
            payload = chain if isinstance(chain, ChainSnapshotIn) else ChainSnapshotIn.model_validate(chain)
            contracts: list[OptionContract] = []
            rejected = 0
            for raw in payload.contracts:
                try:
                    contracts.append(OptionContract.model_validate({"underlying": ticker, **raw}))
                except ValidationError as exc:
                    rejected += 1
                    _log.warning(
                        "desk.contract_rejected",
                        ticker=ticker,
                        symbol=raw.get("contract_symbol"),
                        errors=exc.error_count(),
                    )
            snapshot = OptionsChain(
                ticker=ticker,
                underlying_price=payload.underlying_price,
                contracts=contracts,
                timestamp=payload.timestamp or utcnow(),
            )

        state = self._state(ticker)
        state.chain = snapshot
        state.flow.update_quotes(snapshot.contracts)
        if state.spot is not None:
            state.flow.set_spot(state.spot)

        metrics.record_event("chain_ingested", ticker)
        metrics.record_event("contract_rejected", ticker, rejected)
        _log.info(
            "desk.chain_updated",
            ticker=ticker,
            contracts=len(snapshot.contracts),
            rejected=rejected,
            spot=snapshot.underlying_price,
        )
        return IngestResult(accepted=len(snapshot.contracts), rejected=rejected)

    def ingest_trade(self, ticker: str, trade: Union[TradePrint, dict]) -> IngestResult:
        """Fold one print into the underlying's flow window."""
        state = self._state(ticker)
        try:
            if not isinstance(trade, TradePrint):
                trade = TradePrint.model_validate(trade)
            bursts = state.flow.ingest(trade)
        except ValueError as exc:
            # pydantic ValidationError is a ValueError subclass
            metrics.record_event("trade_rejected", ticker)
            _log.warning("flow.trade_rejected", ticker=ticker, reason=str(exc).splitlines()[0])
            return IngestResult(rejected=1)

        metrics.record_event("trade_accepted", ticker)
        metrics.record_event("burst_emitted", ticker, len(bursts))
        return IngestResult(accepted=1, bursts=bursts)

    def ingest_trades(
        self, ticker: str, trades: Iterable[Union[TradePrint, dict]],
    ) -> IngestResult:
        result = IngestResult()
        for trade in trades:
            r = self.ingest_trade(ticker, trade)
            result.accepted += r.accepted
            result.rejected += r.rejected
            result.bursts.extend(r.bursts)
        return result

    def update_price_context(
        self,
        ticker: str,
        price: float,
        vwap: Optional[float] = None,
        bars: Optional[Iterable[Union[PriceBar, dict]]] = None,
        as_of: Optional[datetime] = None,
    ) -> MarketContext:
        """Set spot and session VWAP. VWAP is derived from bars when not supplied."""
        if vwap is None and bars:
            vwap = compute_vwap(
                b if isinstance(b, PriceBar) else PriceBar.model_validate(b) for b in bars
            )
        context = PriceContext(price=price, vwap=vwap, as_of=as_of or utcnow())

        state = self._state(ticker)
        state.price = context
        state.flow.set_spot(context.price)
        _log.debug("desk.price_updated", ticker=ticker, price=context.price, vwap=context.vwap)
        return classify_price(context.price, context.vwap, self._settings.vwap_at_band_pct)

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    def score_contracts(
        self,
        ticker: str,
        min_volume: int = 0,
        limit: Optional[int] = None,
    ) -> list[UnusualScore]:
        state = self._existing(ticker)
        if state is None or state.chain is None:
            return []
        return self.scorer.score_contracts(
            state.chain.contracts,
            min_volume=min_volume,
            limit=limit,
            as_of=state.chain.timestamp.date(),
        )

    def get_exposure_profile(
        self, ticker: str, spot: Optional[float] = None,
    ) -> GammaExposureProfile:
        state = self._existing(ticker)
        if state is None or state.chain is None:
            return GammaExposureProfile(ticker=ticker, spot=spot or 0.0)
        spot = spot if spot is not None else state.spot
        return self.exposure.compute_exposure_profile(
            state.chain.contracts,
            spot or 0.0,
            ticker=ticker,
            as_of=state.chain.timestamp,
        )

    def get_expected_move(self, ticker: str) -> ExpectedMove:
        state = self._existing(ticker)
        if state is None or state.chain is None or state.spot is None:
            return ExpectedMove()
        return self.exposure.expected_move_for_chain(
            state.chain.contracts,
            state.spot,
            as_of=state.chain.timestamp.date(),
        )

    def get_heatmap(self, ticker: str) -> list[VolumeHeatmapRow]:
        state = self._existing(ticker)
        if state is None or state.chain is None:
            return []
        return self.exposure.compute_volume_heatmap(state.chain.contracts)

    def get_flow(self, ticker: str, now: Optional[datetime] = None) -> FlowAggregates:
        """Flow snapshot; evicts against ``now`` first when given."""
        state = self._existing(ticker)
        if state is None:
            return FlowAggregates(ticker=ticker, window_seconds=self._settings.flow_window_seconds)
        if now is not None:
            state.flow.sweep(as_utc(now))
        return state.flow.snapshot()

    def get_bias(self, ticker: str, now: Optional[datetime] = None) -> BiasVerdict:
        """Composite verdict from the latest snapshots. Never blocks on fresh data."""
        now = as_utc(now) or utcnow()
        state = self._existing(ticker)
        if state is None:
            return BiasVerdict(
                ticker=ticker,
                flow=FlowAggregates(ticker=ticker, window_seconds=self._settings.flow_window_seconds),
                reasons=[f"No data received for {ticker}"],
                as_of=now,
            )

        profile = self.get_exposure_profile(ticker)
        return self.bias.compute_bias(
            profile.regime,
            self.get_flow(ticker, now=now),
            state.price,
            walls=profile.walls if state.chain is not None else None,
            now=now,
            ticker=ticker,
        )

    def summary(self) -> dict[str, Any]:
        with self._lock:
            states = list(self._underlyings.values())
        return {
            s.ticker: {
                "has_chain": s.chain is not None,
                "has_price": s.price is not None,
                "trades_in_window": len(s.flow),
            }
            for s in states
        }


@lru_cache
def get_desk() -> AnalyticsDesk:
    """Process-wide desk, created once and reused by routes and websockets."""
    return AnalyticsDesk()
