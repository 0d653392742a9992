"""
Confidence Calibration

The raw model confidence is not comparable across ripeness classes: the
model is over- or under-confident depending on the label. Each label is
therefore assigned a fixed target band, the raw confidence is linearly
rescaled into that band, perturbed by a small bounded jitter and clamped
back into the band.

    rotten  -> [0.01, 0.19]
    unripe  -> [0.20, 0.69]
    ripe    -> [0.70, 1.00]
    other   -> passed through uncalibrated

The jitter source is injectable so tests can pin it.
"""

import math
import random
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Mapping, Optional, Tuple

CALIBRATION_BANDS: Dict[str, Tuple[float, float]] = {
    "rotten": (0.01, 0.19),
    "unripe": (0.20, 0.69),
    "ripe": (0.70, 1.00),
}

# -0.10, -0.09, ..., 0.09, 0.10
JITTER_STEPS: Tuple[float, ...] = tuple(step / 100 for step in range(-10, 11))

JitterSource = Callable[[], float]


def random_jitter(rng: Optional[random.Random] = None) -> JitterSource:
    """Build a jitter source drawing uniformly from JITTER_STEPS."""
    rng = rng or random.Random()

    def draw() -> float:
        return rng.choice(JITTER_STEPS)

    return draw


def fixed_jitter(value: float) -> JitterSource:
    """Jitter source that always returns ``value``."""
    return lambda: value


def round_confidence(value: float) -> float:
    """Round to 2 decimals, half away from zero."""
    return float(Decimal(repr(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def select_base_confidence(
    ripeness: str,
    confidence: Optional[float],
    ripeness_probabilities: Optional[Mapping[str, Optional[float]]] = None
) -> float:
    """Pick the per-class probability when available, else the raw confidence, in [0, 1]."""
    base = confidence if confidence is not None else 0.0
    if ripeness_probabilities and ripeness_probabilities.get(ripeness) is not None:
        base = ripeness_probabilities[ripeness]

    base = float(base)
    if math.isnan(base):
        return 0.0
    return clamp(base, 0.0, 1.0)


def band_for(ripeness: str) -> Optional[Tuple[float, float]]:
    return CALIBRATION_BANDS.get(ripeness)


class ConfidenceCalibrator:
    """Maps raw model confidence into the calibrated band of its ripeness label."""

    def __init__(self, jitter_source: Optional[JitterSource] = None):
        self.jitter_source = jitter_source or random_jitter()

    def calibrate(
        self,
        ripeness: str,
        confidence: Optional[float],
        ripeness_probabilities: Optional[Mapping[str, Optional[float]]] = None,
        jitter: Optional[float] = None
    ) -> float:
        """
        Calibrate a raw confidence.

        Args:
            ripeness: Ripeness label returned by the model
            confidence: Raw model confidence
            ripeness_probabilities: Optional per-label probabilities
            jitter: Use this jitter instead of drawing one

        Returns:
            Calibrated confidence rounded to 2 decimals. Unrecognized labels
            get their base confidence back without remapping.
        """
        base = select_base_confidence(ripeness, confidence, ripeness_probabilities)

        band = band_for(ripeness)
        if band is None:
            return round_confidence(base)

        if jitter is None:
            jitter = self.jitter_source()

        lower, upper = band
        adjusted = lower + base * (upper - lower)
        perturbed = adjusted + adjusted * jitter
        return round_confidence(clamp(perturbed, lower, upper))
