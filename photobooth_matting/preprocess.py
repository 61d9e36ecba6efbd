from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .config import IMAGENET_MEAN, IMAGENET_STD, MODEL_INPUT_SIZE
from .raster import RasterBuffer


@dataclass(frozen=True)
class PreprocessMeta:
    """Scale applied to a frame before segmentation."""

    orig_h: int
    orig_w: int
    resized_h: int
    resized_w: int
    scale: float


def downscale_to_max_side(image: RasterBuffer, max_side: int) -> tuple[RasterBuffer, PreprocessMeta]:
    """
    Aspect-safe downscale so that max(w, h) <= max_side. Never upscales.

    Returns a new buffer in every case (callers own the result).
    """
    if max_side <= 0:
        raise ValueError(f"max_side must be positive, got {max_side}")
    orig_w, orig_h = image.size
    if orig_w <= 0 or orig_h <= 0:
        raise ValueError(f"Invalid image size: {(orig_h, orig_w)}")

    if orig_w <= max_side and orig_h <= max_side:
        return image.copy(), PreprocessMeta(orig_h, orig_w, orig_h, orig_w, 1.0)

    scale = min(float(max_side) / float(orig_w), float(max_side) / float(orig_h))
    resized_w = max(1, int(orig_w * scale))
    resized_h = max(1, int(orig_h * scale))
    resized = image.resized(resized_w, resized_h)
    return resized, PreprocessMeta(orig_h, orig_w, resized_h, resized_w, scale)


def resize_to_square(rgb: np.ndarray, size: int = MODEL_INPUT_SIZE) -> np.ndarray:
    """
    Stretch an RGB uint8 image to (size, size, 3), the fixed model input.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={rgb.shape}")
    h, w = rgb.shape[:2]
    if h <= 0 or w <= 0:
        raise ValueError(f"Invalid image size: {(h, w)}")
    shrinking = size < w or size < h
    return cv2.resize(rgb, (size, size), interpolation=cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC)


def normalize(img: np.ndarray) -> np.ndarray:
    """
    Normalize uint8 RGB (S,S,3) to a float32 NCHW array (1,3,S,S), per-channel ImageNet stats.
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {img.shape}")
    x = img.astype(np.float32) / 255.0
    mean = np.array(IMAGENET_MEAN, dtype=np.float32).reshape(1, 1, 3)
    std = np.array(IMAGENET_STD, dtype=np.float32).reshape(1, 1, 3)
    x = (x - mean) / std
    x = np.transpose(x, (2, 0, 1))  # CHW
    return np.ascontiguousarray(x[np.newaxis, ...], dtype=np.float32)  # NCHW

