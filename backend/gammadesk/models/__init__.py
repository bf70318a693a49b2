"""
GammaDesk: Pydantic Models

All I/O schemas for the analytics core. Data providers push these in,
engines return these, API routes serialize these.

Input snapshots (contracts, trade prints, price context) are frozen and
reject NaN/inf so a malformed vendor payload fails at the boundary instead
of poisoning an aggregate.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from feeds are taken to be UTC."""
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


_SNAPSHOT = ConfigDict(frozen=True, allow_inf_nan=False)


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class OptionType(str, Enum):
    """Contract right."""
    CALL = "call"
    PUT = "put"


class AggressorSide(str, Enum):
    """Which side of the quote a print executed against."""
    ASK = "Ask"
    BID = "Bid"
    MID = "Mid"
    UNKNOWN = "Unknown"   # no usable quote at print time


class RegimeType(str, Enum):
    """Dealer gamma regime."""
    LONG_GAMMA = "LongGamma"
    SHORT_GAMMA = "ShortGamma"
    NEUTRAL = "Neutral"
    UNKNOWN = "Unknown"


class Bias(str, Enum):
    """Composite directional verdict."""
    BULLISH = "Bullish"
    BEARISH = "Bearish"
    NO_TRADE = "NoTrade"


class PriceVsVwap(str, Enum):
    ABOVE = "Above"
    BELOW = "Below"
    AT = "At"
    UNKNOWN = "Unknown"


# ──────────────────────────────────────────────
# Options Chain Models
# ──────────────────────────────────────────────

class OptionGreeks(BaseModel):
    """Option Greeks for a single contract. Vendors omit them on illiquid series."""
    model_config = _SNAPSHOT

    delta: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    gamma: Optional[float] = Field(default=None, ge=0.0)
    theta: Optional[float] = None
    vega: Optional[float] = Field(default=None, ge=0.0)


class OptionContract(BaseModel):
    """Single option series at one strike/expiry/type, as of one poll."""
    model_config = _SNAPSHOT

    underlying: str
    contract_symbol: str
    strike: float = Field(gt=0)
    option_type: OptionType
    expiration: date
    last_price: float = Field(default=0.0, ge=0)
    bid: float = Field(default=0.0, ge=0)
    ask: float = Field(default=0.0, ge=0)
    volume: int = Field(default=0, ge=0)
    open_interest: int = Field(default=0, ge=0)
    implied_volatility: Optional[float] = Field(default=None, ge=0)  # decimal, 0.25 == 25%
    greeks: OptionGreeks = Field(default_factory=OptionGreeks)

    @property
    def is_call(self) -> bool:
        return self.option_type == OptionType.CALL

    @property
    def mid(self) -> float:
        """Quote midpoint, falling back to last price."""
        if self.bid > 0 and self.ask > 0:
            return (self.bid + self.ask) / 2
        return self.last_price


class OptionsChain(BaseModel):
    """Full options chain snapshot for one underlying."""
    model_config = ConfigDict(allow_inf_nan=False)

    ticker: str
    underlying_price: Optional[float] = Field(default=None, gt=0)
    contracts: list[OptionContract] = []
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def calls(self) -> list[OptionContract]:
        return [c for c in self.contracts if c.option_type == OptionType.CALL]

    @property
    def puts(self) -> list[OptionContract]:
        return [c for c in self.contracts if c.option_type == OptionType.PUT]

    @property
    def strikes(self) -> list[float]:
        return sorted({c.strike for c in self.contracts})


# ──────────────────────────────────────────────
# Contract Scoring
# ──────────────────────────────────────────────

class ScoreBreakdown(BaseModel):
    """Additive components of an unusualness score."""
    vol_oi_score: float = 0.0
    rel_vol_score: float = 0.0
    spread_score: float = 0.0
    gamma_score: float = 0.0
    delta_score: float = 0.0
    dte_score: float = 0.0


class UnusualScore(BaseModel):
    """Unusual-activity score for one contract (0 = ordinary, 100 = textbook anomaly)."""
    contract_symbol: str
    underlying: str
    strike: float
    option_type: OptionType
    expiration: date
    volume: int
    open_interest: int
    total_score: float = Field(ge=0, le=100)
    breakdown: ScoreBreakdown
    vol_oi_ratio: float
    spread_pct: float
    days_to_expiry: int
    flags: list[str] = []


# ──────────────────────────────────────────────
# Gamma Exposure
# ──────────────────────────────────────────────

class GammaExposurePoint(BaseModel):
    """Dealer gamma exposure (USD) at one strike."""
    strike: float
    call_gamma: float = 0.0
    put_gamma: float = 0.0
    net_gamma: float = 0.0
    total_gamma: float = 0.0
    net_delta: float = 0.0      # Σ delta·OI·100, share equivalent


class GammaRegime(BaseModel):
    """Dealer gamma regime near spot. net_gamma_usd and net_delta are None when Unknown."""
    regime: RegimeType = RegimeType.UNKNOWN
    net_gamma_usd: Optional[float] = None
    net_delta: Optional[float] = None
    gamma_flip: bool = False
    strikes_in_band: int = 0
    as_of: Optional[datetime] = None

    @field_validator("as_of")
    @classmethod
    def _ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class GammaWalls(BaseModel):
    """Largest positive (call wall) and negative (put wall) net gamma strikes."""
    call_wall: Optional[float] = None
    put_wall: Optional[float] = None
    dist_to_call_wall_pct: Optional[float] = None
    dist_to_put_wall_pct: Optional[float] = None


class GammaExposureProfile(BaseModel):
    """Per-strike dealer gamma profile for one underlying at one point in time."""
    ticker: str
    spot: float
    points: list[GammaExposurePoint] = []
    regime: GammaRegime = Field(default_factory=GammaRegime)
    walls: GammaWalls = Field(default_factory=GammaWalls)
    flip_level: Optional[float] = None
    total_net_gamma: float = 0.0
    as_of: Optional[datetime] = None


class ExpectedMove(BaseModel):
    """Volatility-implied move envelope. All zero means no signal, not zero vol."""
    spot: float = 0.0
    one_sigma: float = 0.0
    two_sigma: float = 0.0
    max_pain: Optional[float] = None
    implied_vol_pct: float = 0.0
    iv_source: str = "none"          # "input" | "chain" | "default" | "none"
    time_to_expiry_years: float = 0.0
    upper_one_sigma: Optional[float] = None
    lower_one_sigma: Optional[float] = None


class VolumeHeatmapRow(BaseModel):
    strike: float
    call_volume: int = 0
    put_volume: int = 0
    total_volume: int = 0


# ──────────────────────────────────────────────
# Trade Flow
# ──────────────────────────────────────────────

class TradePrint(BaseModel):
    """One option trade print from the live feed.

    bid/ask are the quote at print time when the feed supplies them;
    strike/option_type are recovered from the OCC symbol when omitted.
    """
    model_config = _SNAPSHOT

    contract_symbol: str
    price: float = Field(gt=0)
    size: int = Field(gt=0)
    timestamp: datetime
    bid: Optional[float] = Field(default=None, ge=0)
    ask: Optional[float] = Field(default=None, ge=0)
    strike: Optional[float] = Field(default=None, gt=0)
    option_type: Optional[OptionType] = None
    underlying: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class FlowBurst(BaseModel):
    """Abnormal notional concentrated at one strike/side in a short window."""
    strike: float
    option_type: OptionType
    side: AggressorSide
    notional: float
    trade_count: int
    timestamp: datetime


class FlowImbalance(BaseModel):
    """Directional notional imbalance, +1 all bullish, -1 all bearish."""
    overall: float = Field(default=0.0, ge=-1.0, le=1.0)
    atm: float = Field(default=0.0, ge=-1.0, le=1.0)


class FlowAggregates(BaseModel):
    """Rolling-window flow totals for one underlying."""
    ticker: str
    call_ask_notional: float = 0.0
    put_ask_notional: float = 0.0
    call_bid_notional: float = 0.0
    put_bid_notional: float = 0.0
    atm_call_ask_notional: float = 0.0
    atm_put_ask_notional: float = 0.0
    atm_call_bid_notional: float = 0.0
    atm_put_bid_notional: float = 0.0
    call_volume: int = 0
    put_volume: int = 0
    mid_volume: int = 0
    trade_count: int = 0
    normalized_imbalance: FlowImbalance = Field(default_factory=FlowImbalance)
    bursts: list[FlowBurst] = []
    window_seconds: float = 0.0
    last_trade_at: Optional[datetime] = None   # None: no data yet
    warming_up: bool = True


# ──────────────────────────────────────────────
# Price Context & Bias
# ──────────────────────────────────────────────

class PriceBar(BaseModel):
    """Intraday bar used to build session VWAP."""
    model_config = _SNAPSHOT

    high: float = Field(ge=0)
    low: float = Field(ge=0)
    close: float = Field(ge=0)
    volume: float = Field(ge=0)
    vwap: Optional[float] = Field(default=None, ge=0)
    timestamp: Optional[datetime] = None


class PriceContext(BaseModel):
    """Current spot and session VWAP from the price-context provider."""
    model_config = _SNAPSHOT

    price: float = Field(gt=0)
    vwap: Optional[float] = Field(default=None, gt=0)
    as_of: Optional[datetime] = None

    @field_validator("as_of")
    @classmethod
    def _ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class MarketContext(BaseModel):
    """Price relative to VWAP."""
    price: Optional[float] = None
    vwap: Optional[float] = None
    price_vs_vwap: PriceVsVwap = PriceVsVwap.UNKNOWN
    vwap_distance_pct: float = 0.0


class BiasScore(BaseModel):
    bull: float = 0.0
    bear: float = 0.0
    net: float = 0.0


class BiasVerdict(BaseModel):
    """Terminal composite signal for one underlying."""
    ticker: str
    bias: Bias = Bias.NO_TRADE
    confidence: float = Field(default=0.0, ge=0, le=100)
    reasons: list[str] = []
    regime: GammaRegime = Field(default_factory=GammaRegime)
    flow: FlowAggregates
    context: MarketContext = Field(default_factory=MarketContext)
    score: BiasScore = Field(default_factory=BiasScore)
    walls: Optional[GammaWalls] = None
    stale: bool = False
    as_of: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────
# API Payloads
# ──────────────────────────────────────────────

class ChainSnapshotIn(BaseModel):
    """Raw chain push from the chain provider; contracts are validated one by one."""
    underlying_price: Optional[float] = None
    contracts: list[dict] = []
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class PriceContextIn(BaseModel):
    price: float
    vwap: Optional[float] = None
    bars: list[dict] = []
    as_of: Optional[datetime] = None

    @field_validator("as_of")
    @classmethod
    def _ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class IngestResult(BaseModel):
    accepted: int = 0
    rejected: int = 0
    bursts: list[FlowBurst] = []


class HealthCheck(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str = "1.0.0"
    underlyings: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
