"""
GammaDesk: Configuration Management

Pydantic Settings: loads from .env, validates all configuration at startup.
Every analytics threshold, window and weight lives here so that tuning never
requires touching engine code.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Core ──
    app_env: str = "development"
    app_debug: bool = True
    log_level: str = "INFO"
    slow_request_ms: float = 500.0             # completion logged as a warning above this

    # ── CORS ──
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ── Contract Scorer ──
    score_cache_ttl_seconds: float = 30.0
    score_cache_max_entries: int = 4096

    # ── Exposure Engine ──
    gamma_band_pct: float = 0.10               # ±10% of spot counts toward regime
    long_gamma_threshold_usd: float = 300_000_000.0
    short_gamma_threshold_usd: float = -100_000_000.0
    min_strikes_for_regime: int = 3
    default_implied_vol_pct: float = 18.5      # calm-VIX baseline
    trading_days_per_year: int = 252

    # ── Flow Aggregator ──
    flow_window_seconds: float = 900.0         # 15 minute rolling window
    burst_window_seconds: float = 90.0
    burst_floor_notional: float = 500_000.0
    burst_size_multiple: float = 5.0
    burst_min_trades: int = 3
    atm_band_pct: float = 0.003                # 0.3% of spot
    quote_epsilon: float = 0.005
    flow_warmup_trades: int = 20
    max_bursts: int = 200

    # ── Price Context ──
    vwap_at_band_pct: float = 0.0005           # ±0.05% counts as "At"

    # ── Bias Engine ──
    bias_long_gamma_weight: float = 5.0
    bias_short_gamma_weight: float = 10.0
    bias_gamma_flip_weight: float = 8.0        # ranking only, never directional
    bias_atm_imbalance_threshold: float = 0.10
    bias_atm_imbalance_weight: float = 40.0
    bias_overall_imbalance_threshold: float = 0.15
    bias_overall_imbalance_weight: float = 10.0
    bias_burst_weight: float = 15.0
    bias_vwap_base_weight: float = 5.0
    bias_vwap_distance_weight: float = 10.0    # per 1% away from VWAP
    bias_vwap_max_weight: float = 15.0
    bias_wall_proximity_pct: float = 0.3
    bias_wall_weight: float = 10.0
    bias_pin_vwap_pct: float = 0.25            # long gamma within this % of VWAP is pinned
    bias_pin_weight: float = 8.0               # ranking only
    bias_pin_dampening: float = 0.0            # points removed from each side when pinned
    bias_no_trade_threshold: float = 15.0
    bias_max_reasons: int = 5
    bias_stale_after_seconds: float = 120.0

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance, created once and reused everywhere."""
    return Settings()
