from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import DESPILL_HIGH, DESPILL_LOW, DESPILL_MAX, DESPILL_PEAK, FAINT_EDGE_ALPHA
from .raster import AlphaMatte, ImageLike, PixelFormat, RasterBuffer, as_raster, unpremultiply

__all__ = ["Compositor", "despill_alpha", "reconcile_dimensions", "unpremultiply"]

log = logging.getLogger(__name__)


def reconcile_dimensions(
    foreground: RasterBuffer, background: RasterBuffer, matte: AlphaMatte
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Bring all three inputs to the smallest common (w, h); nothing is upscaled.

    Returns straight RGB foreground, foreground alpha, RGB background and matte (uint8).
    """
    w = min(foreground.width, background.width, matte.width)
    h = min(foreground.height, background.height, matte.height)
    if w <= 0 or h <= 0:
        raise ValueError(f"Cannot composite empty inputs: {w}x{h}")

    fg = foreground.to_rgba().resized(w, h).pixels
    bg = background.resized(w, h).to_rgb()
    m = matte.values
    if (matte.width, matte.height) != (w, h):
        m = cv2.resize(m, (w, h), interpolation=cv2.INTER_LINEAR)
    return fg[..., :3], fg[..., 3], bg, m


def despill_alpha(a: np.ndarray, strength: float = DESPILL_MAX) -> np.ndarray:
    """
    Pull alpha slightly down inside the (0.2, 0.5) fringe band, strongest at 0.35,
    so background-tinted edge pixels lean towards the new background.
    """
    band = (a > DESPILL_LOW) & (a < DESPILL_HIGH)
    factor = 1.0 - strength * (1.0 - np.abs(a - DESPILL_PEAK) * 3.33)
    return np.where(band, a * factor, a)


class Compositor:
    def __init__(self, despill_strength: float = DESPILL_MAX, logger: Optional[logging.Logger] = None):
        self.despill_strength = float(despill_strength)
        self.log = logger or log

    def compose(
        self,
        foreground: ImageLike,
        background: ImageLike,
        matte: AlphaMatte,
        *,
        despill_strength: Optional[float] = None,
    ) -> RasterBuffer:
        """
        Blend foreground over background through the matte.

        Output is RGBA with alpha fixed at 255 and the size of the smallest input.
        `despill_strength` overrides the compositor default; 0 disables despill.
        """
        fg_rgb, fg_a, bg_rgb, m = reconcile_dimensions(as_raster(foreground), as_raster(background), matte)

        a = m.astype(np.float32) / 255.0
        strength = self.despill_strength if despill_strength is None else float(despill_strength)
        if strength > 0:
            a = despill_alpha(a, strength)
        fg_alpha = fg_a.astype(np.float32)
        faint = (a < FAINT_EDGE_ALPHA) & (fg_alpha < 255.0)
        a = np.where(faint, a * fg_alpha / 255.0, a)[..., np.newaxis]

        out = fg_rgb.astype(np.float32) * a + bg_rgb.astype(np.float32) * (1.0 - a)
        rgb = np.clip(np.rint(out), 0.0, 255.0).astype(np.uint8)
        opaque = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return RasterBuffer(np.concatenate([rgb, opaque], axis=2), PixelFormat.RGBA)

    def cutout(self, foreground: ImageLike, matte: AlphaMatte) -> RasterBuffer:
        """
        Straight-alpha RGBA: foreground colour, matte as the alpha channel.

        Mismatched inputs are reduced to the smaller common size; nothing is upscaled.
        """
        fg = as_raster(foreground)
        m = matte
        if fg.size != matte.size:
            w, h = min(fg.width, matte.width), min(fg.height, matte.height)
            self.log.debug("cutout reconciling foreground %s and matte %s to %s", fg.size, matte.size, (w, h))
            fg = fg.resized(w, h)
            m = matte.resized(w, h)
        rgba = np.dstack([fg.to_rgb(), m.values])
        return RasterBuffer(np.ascontiguousarray(rgba), PixelFormat.RGBA)
