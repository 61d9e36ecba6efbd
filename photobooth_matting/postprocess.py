from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from .config import FINAL_PROFILE, ProcessingProfile
from .errors import Err, Ok, PostprocessFailure, Result
from .raster import AlphaMatte

log = logging.getLogger(__name__)


def _as_float(matte: np.ndarray) -> np.ndarray:
    if matte.ndim != 2:
        raise PostprocessFailure(f"Expected 2D matte, got shape={matte.shape}")
    return matte.astype(np.float32, copy=False)


def clamp_core(matte: np.ndarray, low: int, high: int) -> np.ndarray:
    """
    Snap confident pixels: `>= high` becomes opaque, `<= low` transparent,
    everything in between is left alone.
    """
    m = _as_float(matte)
    out = m.copy()
    out[m >= high] = 255.0
    out[m <= low] = 0.0
    return out


def gaussian_blur(matte: np.ndarray, sigma: float) -> np.ndarray:
    m = _as_float(matte)
    if sigma <= 0:
        return m.copy()
    return cv2.GaussianBlur(m, (0, 0), sigmaX=float(sigma), sigmaY=float(sigma), borderType=cv2.BORDER_REPLICATE)


def selective_blur(matte: np.ndarray, sigma: float, low: int, high: int) -> np.ndarray:
    """
    Blur only the uncertain band: pixels strictly inside (low, high) take the
    blurred value, confident core and background stay crisp.
    """
    m = _as_float(matte)
    blurred = gaussian_blur(m, sigma)
    band = (m > low) & (m < high)
    return np.where(band, blurred, m)


def erode(matte: np.ndarray, radius: int) -> np.ndarray:
    """Per-pixel minimum over a (2r+1)^2 window; out-of-bounds neighbours are ignored."""
    m = _as_float(matte)
    r = int(radius)
    if r <= 0:
        return m.copy()
    kernel = np.ones((2 * r + 1, 2 * r + 1), np.uint8)
    return cv2.erode(m, kernel, iterations=1)


def despill_hook(matte: np.ndarray) -> np.ndarray:
    # Colour correction needs the foreground pixels; it runs in the compositor.
    return matte


class MattePostProcessor:
    """Turns a raw segmentation matte into a display/print-ready one."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.log = logger or log

    def refine(self, matte: AlphaMatte, profile: ProcessingProfile = FINAL_PROFILE) -> AlphaMatte:
        if not isinstance(matte, AlphaMatte):
            raise PostprocessFailure(f"Expected AlphaMatte, got {type(matte)}")
        if matte.is_empty:
            return matte.copy()

        m = clamp_core(matte.values, profile.clamp_low, profile.clamp_high)
        if profile.selective_blur:
            m = selective_blur(m, profile.blur_radius, profile.clamp_low, profile.clamp_high)
        else:
            m = gaussian_blur(m, profile.blur_radius)
        if profile.erosion_radius > 0:
            m = erode(m, profile.erosion_radius)
        m = despill_hook(m)

        if m.shape != matte.values.shape:
            raise PostprocessFailure(f"Refined matte shape {m.shape} != input {matte.values.shape}")
        return AlphaMatte.from_float(m)

    def try_refine(self, matte: AlphaMatte, profile: ProcessingProfile = FINAL_PROFILE) -> Result[AlphaMatte]:
        try:
            return Ok(self.refine(matte, profile))
        except PostprocessFailure as e:
            self.log.warning("refine failed (%s): %s", profile.name, e)
            return Err(e)
        except cv2.error as e:
            self.log.warning("refine failed (%s): %s", profile.name, e)
            return Err(PostprocessFailure(str(e)))
