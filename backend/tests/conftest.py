"""Shared fixtures: isolated settings and snapshot factories."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

import pytest

from gammadesk.config import Settings
from gammadesk.models import OptionContract, OptionGreeks, OptionType, TradePrint

AS_OF = date(2024, 6, 21)                                  # a Friday
T0 = datetime(2024, 6, 21, 14, 30, tzinfo=timezone.utc)


def occ_symbol(underlying: str, expiration: date, option_type: str, strike: float) -> str:
    right = "C" if option_type == "call" else "P"
    return f"{underlying}{expiration:%y%m%d}{right}{int(round(strike * 1000)):08d}"


def _contract(
    strike: float = 450.0,
    option_type: str = "call",
    expiration: date = AS_OF,
    volume: int = 0,
    open_interest: int = 0,
    bid: float = 1.00,
    ask: float = 1.05,
    last_price: Optional[float] = None,
    delta: Optional[float] = None,
    gamma: Optional[float] = None,
    iv: Optional[float] = None,
    underlying: str = "SPY",
) -> OptionContract:
    return OptionContract(
        underlying=underlying,
        contract_symbol=occ_symbol(underlying, expiration, option_type, strike),
        strike=strike,
        option_type=OptionType(option_type),
        expiration=expiration,
        last_price=ask if last_price is None else last_price,
        bid=bid,
        ask=ask,
        volume=volume,
        open_interest=open_interest,
        implied_volatility=iv,
        greeks=OptionGreeks(delta=delta, gamma=gamma),
    )


def _trade(
    price: float = 2.10,
    size: int = 10,
    timestamp: datetime = T0,
    strike: float = 450.0,
    option_type: str = "call",
    bid: Optional[float] = 2.00,
    ask: Optional[float] = 2.10,
    underlying: str = "SPY",
    expiration: date = AS_OF,
) -> TradePrint:
    return TradePrint(
        contract_symbol=occ_symbol(underlying, expiration, option_type, strike),
        price=price,
        size=size,
        timestamp=timestamp,
        bid=bid,
        ask=ask,
        strike=strike,
        option_type=OptionType(option_type),
    )


@pytest.fixture
def settings() -> Settings:
    """Defaults only; ignores any local .env."""
    return Settings(_env_file=None)


@pytest.fixture
def make_contract():
    return _contract


@pytest.fixture
def make_trade():
    return _trade
