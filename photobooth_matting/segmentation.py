"""
Raw alpha matte generation.

Two interchangeable strategies produce a continuous matte from an RGB frame:

- `ModelBackedSegmenter`: fixed-size ML inference + bilinear reconstruction.
- `HeuristicSegmenter`: colour-distance classification with spatial zones,
  majority smoothing and border feathering, used when no model is available.

`SegmentationEngine` picks one strategy at construction time and never raises
past `infer()`; `segment()` returns the explicit `Ok`/`Err` form.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

import numpy as np

from .config import (
    EDGE_STRIP,
    EDGE_STRIP_MAX_FG_DISTANCE,
    FEATHER_RADIUS,
    INNER_MARGIN,
    INNER_ZONE,
    MIDDLE_MARGIN,
    MIN_IMAGE_SIDE,
    OUTER_MARGIN,
    OUTER_MAX_FG_DISTANCE,
    OUTER_ZONE,
    SUBJECT_CLASS_INDEX,
)
from .errors import Err, InferenceShapeMismatch, InferenceUnavailable, InvalidInput, MattingError, Ok, Result
from .preprocess import normalize, resize_to_square
from .raster import AlphaMatte, ImageLike, as_raster

if TYPE_CHECKING:
    from .model import InferenceBackend

log = logging.getLogger(__name__)


class SegmentationStrategy(ABC):
    name: str = "strategy"

    @abstractmethod
    def segment(self, rgb: np.ndarray) -> Result[AlphaMatte]:
        """Produce a matte with the same (H, W) as the RGB uint8 input."""

    def close(self) -> None:
        return None


def select_subject_plane(output: np.ndarray, subject_class: int = SUBJECT_CLASS_INDEX) -> np.ndarray:
    """
    Pick the subject score plane out of a raw model output.

    Accepted layouts:
      - (1, C, H, W): channel `subject_class`, or channel 0 for single-channel mattes
      - (H, W): already a single plane
    """
    shape = tuple(int(d) for d in output.shape)
    if output.ndim == 4:
        n, c, h, w = shape
        if n < 1 or c < 1 or h <= 0 or w <= 0:
            raise InferenceShapeMismatch(f"Invalid tensor dimensions: {shape}")
        if c == 1:
            return output[0, 0]
        if subject_class >= c:
            raise InferenceShapeMismatch(f"Subject class {subject_class} not in {c}-channel output")
        return output[0, subject_class]
    if output.ndim == 2:
        if shape[0] <= 0 or shape[1] <= 0:
            raise InferenceShapeMismatch(f"Invalid tensor dimensions: {shape}")
        return output
    raise InferenceShapeMismatch(f"Unexpected output tensor shape: {shape}")


def bilinear_upsample(grid: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Reconstruct a (height, width) float plane from a coarse grid.

    Source coordinate of destination pixel x is x * grid_w / width (no half-pixel
    offset); the right/bottom neighbours are clamped to the last grid sample.
    """
    mh, mw = grid.shape
    g = grid.astype(np.float32, copy=False)

    fx = np.arange(width, dtype=np.float32) * (float(mw) / float(width))
    fy = np.arange(height, dtype=np.float32) * (float(mh) / float(height))
    x0 = np.minimum(np.floor(fx).astype(np.int64), mw - 1)
    y0 = np.minimum(np.floor(fy).astype(np.int64), mh - 1)
    x1 = np.minimum(x0 + 1, mw - 1)
    y1 = np.minimum(y0 + 1, mh - 1)
    dx = (fx - x0)[np.newaxis, :]
    dy = (fy - y0)[:, np.newaxis]

    v00 = g[np.ix_(y0, x0)]
    v10 = g[np.ix_(y0, x1)]
    v01 = g[np.ix_(y1, x0)]
    v11 = g[np.ix_(y1, x1)]

    v0 = v00 + (v10 - v00) * dx
    v1 = v01 + (v11 - v01) * dx
    return v0 + (v1 - v0) * dy


class ModelBackedSegmenter(SegmentationStrategy):
    name = "model"

    def __init__(self, backend: "InferenceBackend", subject_class: int = SUBJECT_CLASS_INDEX):
        self.backend = backend
        self.subject_class = int(subject_class)

    def segment(self, rgb: np.ndarray) -> Result[AlphaMatte]:
        h, w = rgb.shape[:2]
        x = normalize(resize_to_square(rgb, self.backend.input_size))

        try:
            y = np.asarray(self.backend.run(x))
        except Exception as e:  # noqa: BLE001 - backend errors degrade, never propagate
            return Err(InferenceUnavailable(f"Inference failed: {e}"))

        try:
            plane = select_subject_plane(y, self.subject_class)
        except InferenceShapeMismatch as e:
            return Err(e)

        if not np.isfinite(plane).all():
            return Err(InferenceUnavailable("Non-finite values in model output"))

        return Ok(AlphaMatte.from_unit(bilinear_upsample(plane, w, h)))

    def close(self) -> None:
        self.backend.close()


def _mean_color(rgb: np.ndarray, region: np.ndarray) -> Optional[np.ndarray]:
    pixels = rgb[region]
    if pixels.size == 0:
        return None
    # Integer average, matching a truncating accumulator.
    return np.floor(pixels.astype(np.float64).mean(axis=0))


def majority_smooth(mask: np.ndarray) -> np.ndarray:
    """3x3 majority vote over interior pixels; the outermost ring keeps its value."""
    out = mask.copy()
    h, w = mask.shape
    if h < 3 or w < 3:
        return out
    m = mask.astype(np.uint8)
    counts = np.zeros((h - 2, w - 2), dtype=np.uint8)
    for dy in range(3):
        for dx in range(3):
            counts += m[dy : dy + h - 2, dx : dx + w - 2]
    out[1:-1, 1:-1] = counts > 4
    return out


def feather_border(mask: np.ndarray, radius: int = FEATHER_RADIUS) -> np.ndarray:
    """Convert a boolean mask to a matte, ramping opacity to 0 near the image border."""
    h, w = mask.shape
    xs = np.arange(w)
    ys = np.arange(h)
    dist_x = np.minimum(xs, w - 1 - xs)[np.newaxis, :]
    dist_y = np.minimum(ys, h - 1 - ys)[:, np.newaxis]
    dist = np.minimum(dist_x, dist_y).astype(np.float32)

    ramp = np.floor(255.0 * np.minimum(1.0, dist / float(radius)))
    return np.where(mask, ramp, 0.0).astype(np.uint8)


class HeuristicSegmenter(SegmentationStrategy):
    """
    Non-ML fallback: classify each pixel as subject/background from its colour
    distance to a centre sample and a border sample, weighted by its position.
    """

    name = "heuristic"

    def __init__(self, feather_radius: int = FEATHER_RADIUS):
        self.feather_radius = int(feather_radius)

    def classify(self, rgb: np.ndarray) -> np.ndarray:
        h, w = rgb.shape[:2]
        cx, cy = w // 2, h // 2

        sample = min(w, h) // 4
        ys = np.arange(h)[:, np.newaxis]
        xs = np.arange(w)[np.newaxis, :]
        center_region = (
            (ys >= cy - sample // 2) & (ys < cy + sample // 2) & (xs >= cx - sample // 2) & (xs < cx + sample // 2)
        )
        fg_ref = _mean_color(rgb, center_region)
        if fg_ref is None:
            raise InvalidInput(f"Image too small to sample a centre region: {w}x{h}")

        margin = max(1, min(w, h) // 10)
        border_band = (xs < margin) | (xs >= w - margin) | (ys < margin) | (ys >= h - margin)
        bg_ref = _mean_color(rgb, border_band)
        if bg_ref is None:
            bg_ref = fg_ref

        px = rgb.astype(np.float32)
        d_fg = np.sqrt(((px - fg_ref.astype(np.float32)) ** 2).sum(axis=2))
        d_bg = np.sqrt(((px - bg_ref.astype(np.float32)) ** 2).sum(axis=2))

        max_dist = float(np.hypot(cx, cy)) or 1.0
        r = np.sqrt((xs - cx) ** 2 + (ys - cy) ** 2).astype(np.float32) / max_dist

        inner = d_fg < d_bg + INNER_MARGIN
        outer = (d_bg > d_fg + OUTER_MARGIN) & (d_fg < OUTER_MAX_FG_DISTANCE)
        middle = d_fg < d_bg - MIDDLE_MARGIN
        mask = np.where(r < INNER_ZONE, inner, np.where(r > OUTER_ZONE, outer, middle))

        edge_strip = (xs < w * EDGE_STRIP) | (xs > w * (1.0 - EDGE_STRIP)) | (ys < h * EDGE_STRIP) | (ys > h * (1.0 - EDGE_STRIP))
        mask = np.where(edge_strip, mask & (d_fg < EDGE_STRIP_MAX_FG_DISTANCE), mask)
        return mask

    def segment(self, rgb: np.ndarray) -> Result[AlphaMatte]:
        try:
            mask = self.classify(rgb)
        except MattingError as e:
            return Err(e)
        smoothed = majority_smooth(mask)
        return Ok(AlphaMatte(feather_border(smoothed, self.feather_radius)))


class SegmentationEngine:
    """
    Produces raw alpha mattes. Strategy is fixed for the engine's lifetime.

    A model strategy that reports `InferenceUnavailable` degrades to the
    fallback strategy (heuristic by default); shape mismatches do not.
    """

    def __init__(
        self,
        strategy: Optional[SegmentationStrategy] = None,
        fallback: Optional[SegmentationStrategy] = None,
        *,
        min_side: int = MIN_IMAGE_SIDE,
        logger: Optional[logging.Logger] = None,
    ):
        self.strategy = strategy or HeuristicSegmenter()
        if fallback is None and not isinstance(self.strategy, HeuristicSegmenter):
            fallback = HeuristicSegmenter()
        self.fallback = fallback
        self.min_side = int(min_side)
        self.log = logger or log

    def _validate(self, image: ImageLike) -> np.ndarray:
        try:
            raster = as_raster(image)
        except (TypeError, ValueError) as e:
            raise InvalidInput(str(e)) from e
        if raster.pixels.size == 0:
            raise InvalidInput("Zero-length pixel buffer")
        if raster.width < self.min_side or raster.height < self.min_side:
            raise InvalidInput(f"Image {raster.width}x{raster.height} below minimum side {self.min_side}")
        return raster.to_rgb()

    def _run(self, strategy: SegmentationStrategy, rgb: np.ndarray) -> Result[AlphaMatte]:
        try:
            result = strategy.segment(rgb)
        except MattingError as e:
            return Err(e)
        except Exception as e:  # noqa: BLE001 - stage failures become Err values
            return Err(InferenceUnavailable(f"{strategy.name} strategy failed: {e}"))
        if isinstance(result, Ok) and result.value.values.shape != rgb.shape[:2]:
            return Err(InferenceShapeMismatch(f"Matte {result.value.size} does not match image {rgb.shape[1::-1]}"))
        return result

    def segment(self, image: ImageLike) -> Result[AlphaMatte]:
        t0 = time.perf_counter()
        try:
            rgb = self._validate(image)
        except InvalidInput as e:
            self.log.warning("segment rejected input: %s", e)
            return Err(e)

        used = self.strategy
        result = self._run(self.strategy, rgb)
        if (
            isinstance(result, Err)
            and isinstance(result.error, InferenceUnavailable)
            and self.fallback is not None
            and self.fallback is not self.strategy
        ):
            self.log.warning("%s strategy unavailable (%s); using %s", self.strategy.name, result.error, self.fallback.name)
            used = self.fallback
            result = self._run(self.fallback, rgb)

        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        outcome = "ok" if isinstance(result, Ok) else result.reason
        self.log.debug(
            "segment strategy=%s outcome=%s %.1fms",
            used.name,
            outcome,
            elapsed_ms,
            extra={"stage": "segment", "duration_ms": elapsed_ms, "outcome": outcome},
        )
        return result

    def infer(self, image: ImageLike) -> AlphaMatte:
        """Never raises: failures yield a fully transparent matte of the input size."""
        try:
            result = self.segment(image)
        except Exception as e:  # noqa: BLE001
            self.log.error("segment crashed: %s", e)
            result = Err(InferenceUnavailable(str(e)))
        if isinstance(result, Ok):
            return result.value
        h, w = _dims_or_zero(image)
        return AlphaMatte.transparent(w, h)

    def close(self) -> None:
        self.strategy.close()
        if self.fallback is not None and self.fallback is not self.strategy:
            self.fallback.close()


def _dims_or_zero(image) -> tuple[int, int]:
    shape = getattr(getattr(image, "pixels", image), "shape", None)
    if shape is None or len(shape) < 2:
        return 0, 0
    return int(shape[0]), int(shape[1])


def create_engine(
    model_path: Optional[str] = None,
    device=None,
    *,
    logger: Optional[logging.Logger] = None,
) -> SegmentationEngine:
    """
    Build the engine once: model-backed when a TorchScript file loads, heuristic otherwise.
    """
    engine_log = logger or log
    if model_path:
        try:
            from .model import TorchScriptBackend

            backend = TorchScriptBackend.from_path(model_path, device=device)
            return SegmentationEngine(ModelBackedSegmenter(backend), HeuristicSegmenter(), logger=logger)
        except Exception as e:  # noqa: BLE001 - a missing model is not fatal
            engine_log.warning("Model unavailable (%s); using heuristic segmentation", e)
    else:
        engine_log.info("No model configured; using heuristic segmentation")
    return SegmentationEngine(HeuristicSegmenter(), logger=logger)
