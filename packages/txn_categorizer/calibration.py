"""Confidence calibration.

Two independent transforms:

- :func:`calibrate_confidence` maps the scorer's internal confidence to an
  output confidence. Scores below the high zone go through a sigmoid so weak
  and medium results spread apart; scores already in the high zone only get a
  small signal-count bonus.
- :func:`calibrate_llm_confidence` corrects the LLM's self-reported
  confidence, which runs well above its observed accuracy, with temperature
  scaling on the logit plus a Beta(2,2)-shaped pull toward the middle.
"""

from __future__ import annotations

import math

from .config import CalibrationConstants

_DEFAULT = CalibrationConstants()


def _sigmoid(z: float) -> float:
    # Split to avoid overflow in exp() for large |z|.
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    e = math.exp(z)
    return e / (1.0 + e)


def calibrate_confidence(
    x: float, signal_count: int, constants: CalibrationConstants | None = None
) -> float:
    """Calibrated Pass-1 confidence in ``[floor, ceiling]`` (or exactly 0).

    ``0`` is returned only for ``x <= 0`` with no signals at all.
    """

    c = constants or _DEFAULT
    n = max(0, int(signal_count))
    if x <= 0:
        return 0.0 if n == 0 else c.floor
    if x >= c.ceiling:
        return c.ceiling
    if x >= c.high_zone:
        bonus = min(c.high_zone_bonus_cap, math.log(n + 1) * c.high_zone_bonus_rate)
        return min(c.ceiling, x + bonus)

    s = _sigmoid((x - c.sigmoid_center) * c.sigmoid_slope)
    mapped = c.sigmoid_floor + s * c.sigmoid_span
    bonus = min(c.count_bonus_cap, math.log(n + 1) * c.count_bonus_rate)
    return min(c.ceiling, max(c.floor, mapped + bonus))


def calibrate_llm_confidence(
    raw: float,
    has_strong_pass1_signal: bool,
    constants: CalibrationConstants | None = None,
) -> float:
    """Corrected LLM confidence in ``[llm_floor, llm_ceiling]``.

    Parameters
    ----------
    raw:
        Confidence the model reported, expected in ``[0, 1]``.
    has_strong_pass1_signal:
        Whether Pass-1 independently produced a strong corroborating result;
        adds a fixed bonus before clamping.
    """

    c = constants or _DEFAULT
    if raw != raw:  # NaN
        raw = 0.5
    bonus = c.llm_strong_pass1_bonus if has_strong_pass1_signal else 0.0
    if raw <= 0:
        return min(c.llm_ceiling, c.llm_floor + bonus)
    if raw >= 1:
        return c.llm_ceiling

    eps = c.llm_epsilon
    logit = math.log((raw + eps) / (1.0 - raw + eps))
    base = _sigmoid(logit / c.llm_temperature)
    # Beta(2,2) density is 6·p·(1−p); weighting by base again pulls extremes in.
    beta_adjusted = c.llm_beta_scale * base * base * (1.0 - base)
    blended = (1.0 - c.llm_beta_blend) * base + c.llm_beta_blend * beta_adjusted + bonus
    return min(c.llm_ceiling, max(c.llm_floor, blended))


__all__ = ["calibrate_confidence", "calibrate_llm_confidence"]
