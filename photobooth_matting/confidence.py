"""
Heuristic quality score for an alpha matte.

Three components, each in [0, 1]:
  - edge quality: how sharp the soft transition band is
  - coverage: whether the subject fills a plausible share of the frame
  - consistency: how smooth the matte is locally (noise penalty)
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from .config import (
    CONSISTENCY_WEIGHT,
    COVERAGE_THRESHOLD,
    COVERAGE_WEIGHT,
    EDGE_WEIGHT,
    EXPECTED_GRADIENT,
    IDEAL_COVERAGE,
    MAX_COVERAGE,
    MIN_COVERAGE,
    TRANSITION_HIGH,
    TRANSITION_LOW,
    VARIANCE_SCALE,
)
from .raster import AlphaMatte

log = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5


@dataclass(frozen=True)
class ConfidenceBreakdown:
    edge: float
    coverage: float
    consistency: float
    foreground_fraction: float
    total: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def edge_quality(m: np.ndarray) -> float:
    h, w = m.shape
    if h < 3 or w < 3:
        return NEUTRAL_SCORE

    v = m.astype(np.float32)
    gx = cv2.Sobel(v, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(v, cv2.CV_32F, 0, 1, ksize=3)
    magnitude = np.sqrt(gx * gx + gy * gy)[1:-1, 1:-1] / 255.0

    inner = v[1:-1, 1:-1]
    transition = (inner > TRANSITION_LOW) & (inner < TRANSITION_HIGH)
    if not transition.any():
        return NEUTRAL_SCORE
    return float(min(1.0, magnitude[transition].mean() / EXPECTED_GRADIENT))


def foreground_fraction(m: np.ndarray) -> float:
    return float((m > COVERAGE_THRESHOLD).mean())


def coverage_score(fraction: float) -> float:
    if fraction < MIN_COVERAGE:
        return fraction * 2.0
    if fraction > MAX_COVERAGE:
        # Slope 2.5 keeps a fully opaque matte at zero coverage credit.
        return max(0.0, 1.0 - (fraction - MAX_COVERAGE) * 2.5)
    return min(1.0, fraction / IDEAL_COVERAGE)


def consistency_score(m: np.ndarray) -> float:
    h, w = m.shape
    if h < 3 or w < 3:
        return NEUTRAL_SCORE

    v = m.astype(np.float64)
    mean = cv2.blur(v, (3, 3))
    mean_sq = cv2.blur(v * v, (3, 3))
    # Windows centred on odd coordinates, stride 2.
    var = (mean_sq - mean * mean)[1 : h - 1 : 2, 1 : w - 1 : 2]
    if var.size == 0:
        return NEUTRAL_SCORE
    avg = float(np.clip(var, 0.0, None).mean())
    return 1.0 - float(np.clip(avg / VARIANCE_SCALE, 0.0, 1.0))


class ConfidenceScorer:
    """Deterministic, pure scorer; safe to share across threads."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or log

    def breakdown(self, matte: AlphaMatte) -> ConfidenceBreakdown:
        if matte.is_empty:
            return ConfidenceBreakdown(0.0, 0.0, 0.0, 0.0, 0.0)

        m = matte.values
        e = edge_quality(m)
        f = foreground_fraction(m)
        c = coverage_score(f)
        s = consistency_score(m)

        total = float(np.clip(EDGE_WEIGHT * e + COVERAGE_WEIGHT * c + CONSISTENCY_WEIGHT * s, 0.0, 1.0))
        if f < MIN_COVERAGE:
            # Subject missing: an empty but smooth matte must not look trustworthy.
            total *= f / MIN_COVERAGE
        return ConfidenceBreakdown(edge=e, coverage=c, consistency=s, foreground_fraction=f, total=total)

    def score(self, matte: AlphaMatte) -> float:
        b = self.breakdown(matte)
        self.log.debug(
            "confidence total=%.3f edge=%.3f coverage=%.3f consistency=%.3f",
            b.total,
            b.edge,
            b.coverage,
            b.consistency,
        )
        return b.total
