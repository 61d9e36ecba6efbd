from __future__ import annotations

import cv2
import numpy as np
import pytest

from photobooth_matting.confidence import ConfidenceScorer, coverage_score
from photobooth_matting.raster import AlphaMatte


def _soft_disc(size: int = 100, radius: int = 31) -> AlphaMatte:
    m = np.zeros((size, size), dtype=np.uint8)
    cv2.circle(m, (size // 2, size // 2), radius, 255, thickness=-1)
    soft = cv2.GaussianBlur(m.astype(np.float32), (0, 0), sigmaX=2.0)
    return AlphaMatte.from_float(soft)


def test_all_zero_matte_scores_low():
    b = ConfidenceScorer().breakdown(AlphaMatte(np.zeros((64, 64), dtype=np.uint8)))
    assert b.coverage == 0.0
    assert b.total <= 0.3


def test_all_opaque_matte_is_penalized():
    scorer = ConfidenceScorer()
    b = scorer.breakdown(AlphaMatte(np.full((64, 64), 255, dtype=np.uint8)))
    assert b.coverage == 0.0
    assert b.total <= 0.6


def test_plausible_subject_scores_high():
    scorer = ConfidenceScorer()
    disc = scorer.score(_soft_disc())
    full = scorer.score(AlphaMatte(np.full((100, 100), 255, dtype=np.uint8)))
    assert disc > 0.7
    assert disc > full


def test_noise_lowers_consistency():
    rng = np.random.default_rng(1)
    noisy = AlphaMatte(rng.integers(0, 256, size=(64, 64), dtype=np.uint8))
    scorer = ConfidenceScorer()
    assert scorer.breakdown(noisy).consistency < scorer.breakdown(_soft_disc(64, 20)).consistency


def test_score_is_deterministic_and_bounded():
    m = _soft_disc()
    scorer = ConfidenceScorer()
    first = scorer.score(m)
    assert first == scorer.score(m)
    assert 0.0 <= first <= 1.0


def test_empty_matte_scores_zero():
    assert ConfidenceScorer().score(AlphaMatte.transparent(0, 0)) == 0.0


@pytest.mark.parametrize(
    "fraction, expected",
    [(0.02, 0.04), (0.15, 0.5), (0.30, 1.0), (0.60, 1.0), (0.70, 0.75), (1.0, 0.0)],
)
def test_coverage_curve(fraction, expected):
    assert coverage_score(fraction) == pytest.approx(expected)
