"""
Exposure Engine Tests

GEX sign convention, regime classification, walls, flip level, expected
move, max pain and the volume heatmap.
"""

from __future__ import annotations

import math
import random
from datetime import date, timedelta

import pytest

from gammadesk.engines.exposure_engine import ExposureEngine
from gammadesk.models import OptionType, RegimeType

AS_OF = date(2024, 6, 21)   # Friday
SPOT = 450.0


def _long_gamma_chain(make_contract):
    """Call gamma above spot, put gamma below spot, heavily net positive."""
    calls = [
        make_contract(strike=k, option_type="call", gamma=0.02, open_interest=200_000)
        for k in (455, 460, 465)
    ]
    puts = [
        make_contract(strike=k, option_type="put", gamma=0.005, open_interest=50_000)
        for k in (435, 440, 445)
    ]
    return calls + puts


# ──────────────────────────────────────────────
# GEX Profile
# ──────────────────────────────────────────────

class TestGammaExposure:
    def test_sign_convention(self, settings, make_contract):
        chain = [
            make_contract(strike=100, option_type="call", gamma=0.05, open_interest=1_000),
            make_contract(strike=100, option_type="put", gamma=0.05, open_interest=400),
        ]
        profile = ExposureEngine(settings).compute_exposure_profile(chain, 100.0)
        point = profile.points[0]
        assert point.call_gamma == pytest.approx(500_000)
        assert point.put_gamma == pytest.approx(-200_000)
        assert point.net_gamma == pytest.approx(300_000)
        assert point.total_gamma == pytest.approx(700_000)

    def test_swapping_calls_and_puts_negates_net_gamma(self, settings, make_contract):
        chain = [
            make_contract(strike=440, option_type="put", gamma=0.01, open_interest=3_000),
            make_contract(strike=450, option_type="call", gamma=0.03, open_interest=1_000),
            make_contract(strike=450, option_type="put", gamma=0.02, open_interest=2_500),
            make_contract(strike=460, option_type="call", gamma=0.015, open_interest=4_000),
        ]
        swap = {OptionType.CALL: OptionType.PUT, OptionType.PUT: OptionType.CALL}
        swapped = [c.model_copy(update={"option_type": swap[c.option_type]}) for c in chain]

        engine = ExposureEngine(settings)
        original = engine.compute_exposure_profile(chain, SPOT).points
        mirrored = engine.compute_exposure_profile(swapped, SPOT).points

        assert [p.strike for p in mirrored] == [p.strike for p in original]
        for a, b in zip(original, mirrored):
            assert a.net_gamma != 0
            assert b.net_gamma == pytest.approx(-a.net_gamma)
            assert b.total_gamma == pytest.approx(a.total_gamma)

    def test_net_delta_per_strike(self, settings, make_contract):
        chain = [
            make_contract(strike=450, option_type="call", delta=0.5, gamma=0.02, open_interest=1_000),
            make_contract(strike=450, option_type="put", delta=-0.3, gamma=0.02, open_interest=2_000),
        ]
        point = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).points[0]
        assert point.net_delta == pytest.approx(0.5 * 1_000 * 100 - 0.3 * 2_000 * 100)

    def test_points_sorted_by_strike(self, settings, make_contract):
        profile = ExposureEngine(settings).compute_exposure_profile(
            _long_gamma_chain(make_contract), SPOT,
        )
        strikes = [p.strike for p in profile.points]
        assert strikes == sorted(strikes)
        assert profile.ticker == "SPY"

    def test_missing_gamma_contributes_zero(self, settings, make_contract):
        chain = [make_contract(strike=450, gamma=None, open_interest=10_000)]
        profile = ExposureEngine(settings).compute_exposure_profile(chain, SPOT)
        assert profile.points[0].net_gamma == 0


class TestRegime:
    def test_long_gamma_scenario(self, settings, make_contract):
        profile = ExposureEngine(settings).compute_exposure_profile(
            _long_gamma_chain(make_contract), SPOT,
        )
        assert profile.regime.regime == RegimeType.LONG_GAMMA
        assert profile.regime.net_gamma_usd > settings.long_gamma_threshold_usd
        # 445 (put-heavy, negative) and 455 (call-heavy, positive) straddle spot
        assert profile.regime.gamma_flip is True

    def test_no_flip_when_straddling_strikes_agree(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="call", gamma=0.02, open_interest=200_000)
            for k in (440, 445, 455, 460)
        ]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.LONG_GAMMA
        assert regime.gamma_flip is False

    def test_short_gamma(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="put", gamma=0.02, open_interest=100_000)
            for k in (445, 450, 455)
        ]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.SHORT_GAMMA
        assert regime.net_gamma_usd < settings.short_gamma_threshold_usd

    def test_neutral_between_thresholds(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="call", gamma=0.01, open_interest=1_000)
            for k in (445, 450, 455)
        ]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.NEUTRAL
        assert regime.net_gamma_usd is not None

    def test_far_strikes_excluded_from_band(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="call", gamma=0.01, open_interest=1_000)
            for k in (445, 450, 455)
        ] + [make_contract(strike=600, option_type="call", gamma=0.05, open_interest=1_000_000)]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.NEUTRAL
        assert regime.strikes_in_band == 3

    def test_net_delta_summed_over_band(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="call", delta=0.5, gamma=0.01, open_interest=1_000)
            for k in (445, 450, 455)
        ] + [make_contract(strike=600, option_type="call", delta=0.5, gamma=0.01, open_interest=1_000_000)]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.net_delta == pytest.approx(3 * 0.5 * 1_000 * 100)

    def test_net_delta_none_when_unknown(self, settings, make_contract):
        chain = [make_contract(strike=450, option_type="call", delta=0.5, open_interest=1_000)]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.UNKNOWN
        assert regime.net_delta is None

    def test_empty_chain_is_unknown(self, settings):
        profile = ExposureEngine(settings).compute_exposure_profile([], SPOT, ticker="SPY")
        assert profile.regime.regime == RegimeType.UNKNOWN
        assert profile.regime.net_gamma_usd is None
        assert profile.points == []

    def test_too_few_strikes_is_unknown(self, settings, make_contract):
        chain = [
            make_contract(strike=k, option_type="call", gamma=0.05, open_interest=1_000_000)
            for k in (450, 455)
        ]
        regime = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).regime
        assert regime.regime == RegimeType.UNKNOWN
        assert regime.gamma_flip is False

    @pytest.mark.parametrize("spot", [0.0, -1.0, float("nan")])
    def test_invalid_spot_is_unknown(self, settings, make_contract, spot):
        profile = ExposureEngine(settings).compute_exposure_profile(
            _long_gamma_chain(make_contract), spot,
        )
        assert profile.regime.regime == RegimeType.UNKNOWN
        assert profile.spot == 0.0


class TestWallsAndFlip:
    def test_walls(self, settings, make_contract):
        chain = [
            make_contract(strike=455, option_type="call", gamma=0.02, open_interest=100_000),
            make_contract(strike=460, option_type="call", gamma=0.02, open_interest=300_000),
            make_contract(strike=440, option_type="put", gamma=0.02, open_interest=250_000),
            make_contract(strike=445, option_type="put", gamma=0.02, open_interest=50_000),
        ]
        walls = ExposureEngine(settings).compute_exposure_profile(chain, SPOT).walls
        assert walls.call_wall == 460
        assert walls.put_wall == 440
        assert walls.dist_to_call_wall_pct == pytest.approx(2.2222, abs=1e-3)
        assert walls.dist_to_put_wall_pct == pytest.approx(-2.2222, abs=1e-3)

    def test_flip_level_between_crossing_strikes(self, settings, make_contract):
        profile = ExposureEngine(settings).compute_exposure_profile(
            _long_gamma_chain(make_contract), SPOT,
        )
        assert 445 < profile.flip_level < 455

    def test_no_flip_level_without_crossing(self, settings, make_contract):
        chain = [make_contract(strike=k, gamma=0.01, open_interest=100) for k in (445, 450)]
        assert ExposureEngine(settings).compute_exposure_profile(chain, SPOT).flip_level is None


# ──────────────────────────────────────────────
# Expected Move
# ──────────────────────────────────────────────

class TestExpectedMove:
    def test_one_session_move(self, settings):
        move = ExposureEngine(settings).compute_expected_move(100.0, 20.0, 1 / 252)
        assert move.one_sigma == pytest.approx(100 * 0.20 * math.sqrt(1 / 252))
        assert move.two_sigma == pytest.approx(2 * move.one_sigma)
        assert move.upper_one_sigma == pytest.approx(100 + move.one_sigma)
        assert move.lower_one_sigma == pytest.approx(100 - move.one_sigma)

    def test_default_horizon_is_one_session(self, settings):
        engine = ExposureEngine(settings)
        assert engine.compute_expected_move(100.0, 20.0).one_sigma == pytest.approx(
            engine.compute_expected_move(100.0, 20.0, 1 / 252).one_sigma
        )

    @pytest.mark.parametrize("spot,iv,t", [(0.0, 20.0, 0.1), (100.0, 0.0, 0.1), (100.0, 20.0, 0.0)])
    def test_degenerate_inputs_yield_zero(self, settings, spot, iv, t):
        move = ExposureEngine(settings).compute_expected_move(spot, iv, t)
        assert move.one_sigma == 0
        assert move.two_sigma == 0

    def test_chain_iv_is_oi_weighted_near_the_money(self, settings, make_contract):
        chain = [
            make_contract(strike=450, iv=0.20, open_interest=100),
            make_contract(strike=455, iv=0.30, open_interest=300),
            make_contract(strike=600, iv=0.90, open_interest=10_000),   # out of band
            make_contract(strike=445, iv=0.50, open_interest=0),        # no OI
        ]
        iv, source = ExposureEngine(settings).chain_implied_vol(chain, SPOT)
        assert iv == pytest.approx(27.5)
        assert source == "chain"

    def test_chain_iv_falls_back_to_default(self, settings, make_contract):
        iv, source = ExposureEngine(settings).chain_implied_vol(
            [make_contract(strike=450, open_interest=100)], SPOT,
        )
        assert iv == 18.5
        assert source == "default"

    def test_time_to_expiry_counts_sessions(self, settings, make_contract):
        engine = ExposureEngine(settings)
        same_day = [make_contract(expiration=AS_OF)]
        monday = [make_contract(expiration=AS_OF + timedelta(days=3))]
        assert engine.time_to_expiry_years(same_day, as_of=AS_OF) == pytest.approx(1 / 252)
        assert engine.time_to_expiry_years(monday, as_of=AS_OF) == pytest.approx(2 / 252)

    def test_expected_move_for_chain(self, settings, make_contract):
        chain = [
            make_contract(strike=445, option_type="put", iv=0.20, open_interest=1_000),
            make_contract(strike=455, option_type="call", iv=0.20, open_interest=1_000),
        ]
        move = ExposureEngine(settings).expected_move_for_chain(chain, SPOT, as_of=AS_OF)
        assert move.implied_vol_pct == pytest.approx(20.0)
        assert move.iv_source == "chain"
        assert move.one_sigma == pytest.approx(SPOT * 0.20 * math.sqrt(1 / 252))
        assert move.max_pain is not None

    def test_empty_chain_yields_zero_move(self, settings, make_contract):
        engine = ExposureEngine(settings)
        for chain in ([], [make_contract(open_interest=0)]):
            move = engine.expected_move_for_chain(chain, SPOT, as_of=AS_OF)
            assert move.one_sigma == 0
            assert move.max_pain is None


# ──────────────────────────────────────────────
# Max Pain
# ──────────────────────────────────────────────

def _brute_force_max_pain(chain):
    strikes = sorted({c.strike for c in chain})
    best, best_pain = None, None
    for s in strikes:
        pain = 0.0
        for c in chain:
            intrinsic = max(s - c.strike, 0) if c.is_call else max(c.strike - s, 0)
            pain += intrinsic * c.open_interest * 100
        if best_pain is None or pain < best_pain - 1e-6:
            best, best_pain = s, pain
    return best


class TestMaxPain:
    @pytest.mark.parametrize("seed", [1, 7, 42, 99, 2024])
    def test_matches_brute_force(self, make_contract, seed):
        rng = random.Random(seed)
        chain = [
            make_contract(
                strike=k,
                option_type=rng.choice(["call", "put"]),
                open_interest=rng.randint(0, 5_000),
            )
            for k in range(400, 500, 5)
            for _ in range(2)
        ]
        assert ExposureEngine.compute_max_pain(chain) == _brute_force_max_pain(chain)

    def test_tie_resolves_to_lowest_strike(self, make_contract):
        chain = [
            make_contract(strike=100, option_type="call", open_interest=10),
            make_contract(strike=110, option_type="put", open_interest=10),
        ]
        assert ExposureEngine.compute_max_pain(chain) == 100

    def test_pinned_at_heavy_strike(self, make_contract):
        chain = [
            make_contract(strike=445, option_type="call", open_interest=100),
            make_contract(strike=450, option_type="call", open_interest=10_000),
            make_contract(strike=450, option_type="put", open_interest=10_000),
            make_contract(strike=455, option_type="put", open_interest=100),
        ]
        assert ExposureEngine.compute_max_pain(chain) == 450

    def test_empty_or_zero_oi_is_none(self, make_contract):
        assert ExposureEngine.compute_max_pain([]) is None
        assert ExposureEngine.compute_max_pain([make_contract(open_interest=0)]) is None


class TestHeatmap:
    def test_volume_per_strike(self, make_contract):
        chain = [
            make_contract(strike=450, option_type="call", volume=100),
            make_contract(strike=450, option_type="put", volume=40),
            make_contract(strike=455, option_type="call", volume=7),
        ]
        rows = ExposureEngine.compute_volume_heatmap(chain)
        assert [r.strike for r in rows] == [450, 455]
        assert rows[0].call_volume == 100
        assert rows[0].put_volume == 40
        assert rows[0].total_volume == 140
        assert rows[1].put_volume == 0
