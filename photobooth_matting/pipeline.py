from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .composite import Compositor
from .confidence import ConfidenceScorer
from .config import PipelineOptions, ProcessingProfile
from .contracts import MattingResult, StageTimings
from .errors import Cancelled, Err, InvalidInput, MattingError
from .postprocess import MattePostProcessor
from .preprocess import downscale_to_max_side
from .raster import AlphaMatte, ImageLike, RasterBuffer, as_raster
from .remote import RemoteMattingService
from .segmentation import SegmentationEngine

log = logging.getLogger(__name__)


def _as_input(image: ImageLike) -> RasterBuffer:
    try:
        return as_raster(image)
    except (TypeError, ValueError) as e:
        raise InvalidInput(str(e)) from e


def _dims(image) -> tuple[int, int]:
    shape = getattr(getattr(image, "pixels", image), "shape", None)
    if shape is None or len(shape) < 2:
        return 0, 0
    return int(shape[1]), int(shape[0])


class PipelineOrchestrator:
    """
    Sequences preprocess, segment, postprocess, score, optional remote
    fallback and compose for one frame.

    Failures never raise out of `process_final`: they produce a degraded
    `MattingResult` with confidence 0.0. Cancellation produces `None`.
    """

    def __init__(
        self,
        engine: Optional[SegmentationEngine] = None,
        *,
        postprocessor: Optional[MattePostProcessor] = None,
        scorer: Optional[ConfidenceScorer] = None,
        compositor: Optional[Compositor] = None,
        remote: Optional[RemoteMattingService] = None,
        options: Optional[PipelineOptions] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.log = logger or log
        self.engine = engine or SegmentationEngine(logger=logger)
        self.postprocessor = postprocessor or MattePostProcessor(logger=logger)
        self.scorer = scorer or ConfidenceScorer(logger=logger)
        self.compositor = compositor or Compositor(logger=logger)
        self.remote = remote
        self.options = options or PipelineOptions()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.options.max_workers, thread_name_prefix="matting"
        )
        self._closed = False
        self._close_lock = threading.Lock()

    @contextmanager
    def _stage(self, name: str, timings: Dict[str, float], cancel: Optional[threading.Event]) -> Iterator[None]:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"cancelled before {name}")
        outcome = "ok"
        t0 = time.perf_counter()
        try:
            yield
        except BaseException as e:
            outcome = type(e).__name__
            raise
        finally:
            dt = time.perf_counter() - t0
            timings[f"{name}_s"] = dt
            self.log.debug(
                "stage=%s duration_ms=%.1f outcome=%s",
                name,
                dt * 1000.0,
                outcome,
                extra={"stage": name, "duration_ms": dt * 1000.0, "outcome": outcome},
            )

    def _remote_allowed(self, confidence: float) -> bool:
        return (
            confidence < self.options.confidence_threshold
            and self.options.enable_remote_fallback
            and self.remote is not None
            and self.remote.is_available
        )

    def _run_final(
        self,
        image: ImageLike,
        background: Optional[ImageLike],
        cancel: Optional[threading.Event],
        timings: Dict[str, float],
        scratch: Dict[str, object],
    ) -> None:
        profile: ProcessingProfile = self.options.final

        with self._stage("preprocess", timings, cancel):
            raster = _as_input(image)
            working, _meta = downscale_to_max_side(raster, profile.max_side)
            scratch["size"] = working.size

        with self._stage("segment", timings, cancel):
            seg = self.engine.segment(working)
            if isinstance(seg, Err):
                raise seg.error
            raw = seg.value

        with self._stage("postprocess", timings, cancel):
            refined = self.postprocessor.try_refine(raw, profile)
            if isinstance(refined, Err):
                raise refined.error
            matte: AlphaMatte = refined.value

        with self._stage("score", timings, cancel):
            confidence = self.scorer.score(matte)

        foreground: Optional[RasterBuffer] = None
        used_remote = False
        if self._remote_allowed(confidence):
            with self._stage("remote", timings, cancel):
                try:
                    foreground = self.remote.remove_background(working)
                    matte = AlphaMatte(foreground.alpha())
                    confidence = 1.0
                    used_remote = True
                except Exception as e:  # noqa: BLE001 - the local result stands
                    self.log.warning("remote fallback failed, keeping local result (%.3f): %s", confidence, e)
                    foreground = None

        with self._stage("compose", timings, cancel):
            source = foreground if foreground is not None else working
            cutout = self.compositor.cutout(source, matte)
            composite = None
            if background is not None:
                composite = self.compositor.compose(
                    source, _as_input(background), matte, despill_strength=profile.despill_max
                )

        scratch.update(
            foreground=cutout,
            matte=matte,
            composite=composite,
            confidence=confidence,
            used_external_fallback=used_remote,
        )

    def process_final(
        self,
        image: ImageLike,
        background: Optional[ImageLike] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[MattingResult]:
        """Full quality matting; returns None only when `cancel` was set."""
        t0 = time.perf_counter()
        timings: Dict[str, float] = {}
        scratch: Dict[str, object] = {}
        try:
            self._run_final(image, background, cancel, timings, scratch)
        except Cancelled as e:
            self.log.info("final pipeline %s", e)
            return None
        except MattingError as e:
            return self._degraded(image, scratch, timings, t0, f"{type(e).__name__}: {e}")
        except Exception as e:  # noqa: BLE001 - degrade instead of crashing the capture flow
            self.log.exception("final pipeline crashed")
            return self._degraded(image, scratch, timings, t0, f"{type(e).__name__}: {e}")

        result = MattingResult(
            timings=StageTimings(**timings, total_s=time.perf_counter() - t0),
            **_result_fields(scratch),
        )
        self.log.info(
            "final done confidence=%.3f remote=%s total_ms=%.1f",
            result.confidence,
            result.used_external_fallback,
            result.timings.total_s * 1000.0,
        )
        return result

    def _degraded(
        self,
        image: ImageLike,
        scratch: Dict[str, object],
        timings: Dict[str, float],
        t0: float,
        reason: str,
    ) -> MattingResult:
        self.log.warning("final pipeline degraded: %s", reason)
        w, h = scratch.get("size") or _dims(image)
        return MattingResult.empty(
            w, h, error=reason, timings=StageTimings(**timings, total_s=time.perf_counter() - t0)
        )

    def process_preview(
        self,
        frame: ImageLike,
        background: Optional[ImageLike] = None,
        frame_timestamp: Optional[float] = None,
    ) -> Optional[MattingResult]:
        """Fast low-resolution matting for live display. Any failure yields None."""
        profile = self.options.preview
        t0 = time.perf_counter()
        timings: Dict[str, float] = {}
        try:
            with self._stage("preprocess", timings, None):
                raster = _as_input(frame)
                small, _meta = downscale_to_max_side(raster, profile.max_side)
            with self._stage("segment", timings, None):
                seg = self.engine.segment(small)
                if isinstance(seg, Err):
                    raise seg.error
            with self._stage("postprocess", timings, None):
                matte = self.postprocessor.refine(seg.value, profile)
            with self._stage("score", timings, None):
                confidence = self.scorer.score(matte)
            with self._stage("compose", timings, None):
                full = matte.resized(raster.width, raster.height)
                cutout = self.compositor.cutout(raster, full)
                composite = None
                if background is not None:
                    composite = self.compositor.compose(
                        raster, _as_input(background), full, despill_strength=profile.despill_max
                    )
        except Exception as e:  # noqa: BLE001 - a dropped preview frame is harmless
            self.log.debug("preview frame dropped: %s", e)
            return None

        return MattingResult(
            foreground=cutout,
            matte=full,
            composite=composite,
            confidence=confidence,
            timings=StageTimings(**timings, total_s=time.perf_counter() - t0),
            frame_timestamp=frame_timestamp,
        )

    def submit_final(
        self,
        image: ImageLike,
        background: Optional[ImageLike] = None,
        cancel: Optional[threading.Event] = None,
    ) -> "Future[Optional[MattingResult]]":
        return self._executor.submit(self.process_final, image, background, cancel)

    def submit_preview(
        self,
        frame: ImageLike,
        background: Optional[ImageLike] = None,
        frame_timestamp: Optional[float] = None,
    ) -> "Future[Optional[MattingResult]]":
        return self._executor.submit(self.process_preview, frame, background, frame_timestamp)

    def close(self, close_engine: bool = True) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        if close_engine:
            self.engine.close()

    def __enter__(self) -> "PipelineOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _result_fields(scratch: Dict[str, object]) -> Dict[str, object]:
    return {k: v for k, v in scratch.items() if k != "size"}
