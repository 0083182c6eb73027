from __future__ import annotations

import pytest

from txn_categorizer.calibration import calibrate_confidence, calibrate_llm_confidence
from txn_categorizer.config import CalibrationConstants

_GRID = [i / 100 for i in range(0, 101)]


def test_zero_score_without_signals_is_exactly_zero():
    assert calibrate_confidence(0.0, 0) == 0.0


def test_zero_score_with_signals_is_floor():
    assert calibrate_confidence(0.0, 2) == pytest.approx(CalibrationConstants().floor)


@pytest.mark.parametrize("n", [1, 2, 5, 10])
def test_calibration_is_monotonic_and_bounded(n):
    c = CalibrationConstants()
    values = [calibrate_confidence(x, n) for x in _GRID]
    for a, b in zip(values, values[1:], strict=False):
        assert b >= a - 1e-12
    assert all(c.floor <= v <= c.ceiling for v in values)


def test_high_zone_keeps_score_and_adds_small_bonus():
    out = calibrate_confidence(0.95, 1)
    assert 0.95 < out <= 0.95 + CalibrationConstants().high_zone_bonus_cap


def test_scores_at_or_above_ceiling_clamp():
    assert calibrate_confidence(1.0, 3) == pytest.approx(0.98)
    assert calibrate_confidence(0.99, 0) == pytest.approx(0.98)


@pytest.mark.parametrize("strong", [False, True])
def test_llm_calibration_stays_within_bounds(strong):
    c = CalibrationConstants()
    for raw in _GRID:
        out = calibrate_llm_confidence(raw, strong)
        assert c.llm_floor <= out <= c.llm_ceiling


def test_strong_pass1_signal_never_lowers_llm_confidence():
    for raw in _GRID:
        assert calibrate_llm_confidence(raw, True) >= calibrate_llm_confidence(raw, False)


def test_llm_overconfidence_is_pulled_down():
    assert calibrate_llm_confidence(0.99, False) < 0.9
    assert calibrate_llm_confidence(0.5, False) == pytest.approx(0.575)


def test_llm_zero_confidence_maps_to_floor_plus_bonus():
    c = CalibrationConstants()
    assert calibrate_llm_confidence(0.0, False) == pytest.approx(c.llm_floor)
    assert calibrate_llm_confidence(0.0, True) == pytest.approx(
        c.llm_floor + c.llm_strong_pass1_bonus
    )


def test_llm_nan_is_treated_as_neutral():
    assert calibrate_llm_confidence(float("nan"), False) == pytest.approx(0.575)
