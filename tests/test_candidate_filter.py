import math

import pytest

from crypto_sentinel.core.candidate_filter import evaluate_candidate
from crypto_sentinel.utils.indicators import TechnicalIndicators

from conftest import make_candles, alternating_closes, rising_closes, falling_closes


def test_rsi_extremes():
    assert TechnicalIndicators.latest_rsi(rising_closes(30)) == pytest.approx(100.0)
    assert TechnicalIndicators.latest_rsi(falling_closes(30)) == pytest.approx(0.0)


def test_rsi_wilder_zigzag_settles_near_fifty():
    value = TechnicalIndicators.latest_rsi(alternating_closes(50))
    assert 48 < value < 54


def test_rsi_needs_period_plus_one_values():
    values = TechnicalIndicators.rsi(list(range(14)), 14)
    assert all(math.isnan(v) for v in values)
    assert TechnicalIndicators.latest_rsi(list(range(14))) is None
    assert TechnicalIndicators.latest_rsi(list(range(15))) is not None


def test_volatility_ratio():
    assert TechnicalIndicators.volatility_ratio([105, 103], [100, 101]) == pytest.approx(0.05)
    assert TechnicalIndicators.volatility_ratio([], []) is None


def test_momentum_candidate(config):
    result = evaluate_candidate(
        make_candles(alternating_closes(50)), make_candles(alternating_closes(30)), config.technicals
    )
    assert result.is_candidate
    assert result.momentum
    assert not result.oversold


def test_oversold_candidate(config):
    result = evaluate_candidate(
        make_candles(falling_closes(50)), make_candles(alternating_closes(30)), config.technicals
    )
    assert result.is_candidate
    assert result.oversold
    assert result.reason == "oversold"


def test_long_frame_overbought_vetoes(config):
    result = evaluate_candidate(
        make_candles(alternating_closes(50)), make_candles(rising_closes(30)), config.technicals
    )
    assert not result.is_candidate
    assert result.reason == "long-frame trend overbought"


def test_high_volatility_vetoes_even_when_oversold(config):
    short = make_candles(falling_closes(50))
    short[-1].high = short[-1].close * 1.10

    result = evaluate_candidate(short, make_candles(alternating_closes(30)), config.technicals)
    assert not result.is_candidate
    assert result.reason == "volatility too high"
    assert result.volatility > 0.05


def test_short_rsi_outside_band_is_not_candidate(config):
    result = evaluate_candidate(
        make_candles(rising_closes(50)), make_candles(alternating_closes(30)), config.technicals
    )
    assert not result.is_candidate
    assert result.reason == "no setup"


def test_insufficient_history(config):
    result = evaluate_candidate(
        make_candles(alternating_closes(10)), make_candles(alternating_closes(30)), config.technicals
    )
    assert not result.is_candidate
    assert result.reason == "insufficient history"


def test_oversold_threshold_follows_config(config):
    config.technicals.rsi_oversold = 0
    result = evaluate_candidate(
        make_candles(falling_closes(50)), make_candles(alternating_closes(30)), config.technicals
    )
    assert not result.is_candidate


def test_overbought_setting_does_not_move_trend_veto(config_manager, config):
    short = make_candles(alternating_closes(50))
    long = make_candles(alternating_closes(30))
    before = evaluate_candidate(short, long, config.technicals)

    config_manager.update_setting("technicals.rsiOverbought", 40)
    after = evaluate_candidate(short, long, config.technicals)

    assert after == before
    assert after.is_candidate
