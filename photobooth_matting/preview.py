"""
Live-preview plumbing around `PipelineOrchestrator`.

- `PreviewThrottle`: drops frames arriving faster than the minimum interval.
- `FrameCache`: single-slot latest frame, for capture-from-preview.
- `PreviewPipeline`: throttle + cache + stale-result discard + FPS logging.
- `CaptureGuard`: at most one final capture in flight.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Optional, Tuple

from .config import PREVIEW_FPS_LOG_INTERVAL_S, PREVIEW_MIN_INTERVAL_S
from .contracts import MattingResult
from .pipeline import PipelineOrchestrator
from .raster import ImageLike, RasterBuffer, as_raster

log = logging.getLogger(__name__)

Clock = Callable[[], float]

# Absorbs float error when timestamps are sums of the interval.
_EPS = 1e-9


class PreviewThrottle:
    def __init__(self, min_interval_s: float = PREVIEW_MIN_INTERVAL_S, clock: Clock = time.monotonic):
        self.min_interval_s = float(min_interval_s)
        self.clock = clock
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def try_acquire(self, now: Optional[float] = None) -> bool:
        """True when a frame at `now` may be processed; records it as the last accepted frame."""
        with self._lock:
            t = self.clock() if now is None else float(now)
            if self._last is not None and t - self._last + _EPS < self.min_interval_s:
                return False
            self._last = t
            return True

    def reset(self) -> None:
        with self._lock:
            self._last = None


class FrameCache:
    def __init__(self, clock: Clock = time.monotonic):
        self.clock = clock
        self._entry: Optional[Tuple[float, RasterBuffer]] = None
        self._lock = threading.Lock()

    def put(self, frame: ImageLike, timestamp: Optional[float] = None) -> None:
        raster = as_raster(frame).copy()
        ts = self.clock() if timestamp is None else float(timestamp)
        with self._lock:
            self._entry = (ts, raster)

    def get(self) -> Optional[Tuple[float, RasterBuffer]]:
        with self._lock:
            return self._entry

    def clear(self) -> None:
        with self._lock:
            self._entry = None


class PreviewPipeline:
    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        *,
        throttle: Optional[PreviewThrottle] = None,
        cache: Optional[FrameCache] = None,
        clock: Clock = time.monotonic,
        fps_log_interval_s: float = PREVIEW_FPS_LOG_INTERVAL_S,
        logger: Optional[logging.Logger] = None,
    ):
        self.orchestrator = orchestrator
        self.clock = clock
        self.throttle = throttle or PreviewThrottle(orchestrator.options.preview_min_interval_s, clock=clock)
        self.cache = cache or FrameCache(clock=clock)
        self.fps_log_interval_s = float(fps_log_interval_s)
        self.log = logger or log

        self._lock = threading.Lock()
        self._newest_delivered: Optional[float] = None
        self._fps_count = 0
        self._fps_window_start: Optional[float] = None

    def submit(
        self,
        frame: ImageLike,
        background: Optional[ImageLike] = None,
        timestamp: Optional[float] = None,
    ) -> "Optional[Future[Optional[MattingResult]]]":
        """
        Cache the frame and, unless throttled, process it off-thread.

        Returns None for a throttled frame, otherwise a Future resolving to the
        result, or to None when the frame failed or was overtaken by a newer one.
        """
        ts = self.clock() if timestamp is None else float(timestamp)
        self.cache.put(frame, ts)
        if not self.throttle.try_acquire(ts):
            return None

        out: "Future[Optional[MattingResult]]" = Future()
        inner = self.orchestrator.submit_preview(frame, background, ts)
        inner.add_done_callback(lambda f: self._resolve(f, out, ts))
        return out

    def _resolve(self, inner: Future, out: Future, ts: float) -> None:
        try:
            result = inner.result()
        except Exception as e:  # noqa: BLE001
            self.log.warning("preview worker failed: %s", e)
            result = None
        out.set_result(self.deliver(ts, result))

    def deliver(self, timestamp: float, result: Optional[MattingResult]) -> Optional[MattingResult]:
        """Apply the stale-result policy; returns the result to display or None."""
        if result is None:
            return None
        with self._lock:
            if self._newest_delivered is not None and timestamp < self._newest_delivered:
                self.log.debug("discarding stale preview frame ts=%.3f newest=%.3f", timestamp, self._newest_delivered)
                return None
            self._newest_delivered = timestamp
            self._tick_fps()
        return result

    def _tick_fps(self) -> None:
        now = self.clock()
        if self._fps_window_start is None:
            self._fps_window_start = now
        self._fps_count += 1
        elapsed = now - self._fps_window_start
        if elapsed > 0 and elapsed >= self.fps_log_interval_s:
            self.log.info("preview fps=%.1f", self._fps_count / elapsed)
            self._fps_count = 0
            self._fps_window_start = now


class CaptureGuard:
    """Runs the final pipeline on the cached preview frame, one capture at a time."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        cache: FrameCache,
        logger: Optional[logging.Logger] = None,
    ):
        self.orchestrator = orchestrator
        self.cache = cache
        self.log = logger or log
        self._gate = threading.Semaphore(1)

    def capture_final_from_cache(
        self,
        background: Optional[ImageLike] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[MattingResult]:
        if not self._gate.acquire(blocking=False):
            self.log.info("capture already in progress; ignoring request")
            return None
        try:
            entry = self.cache.get()
            if entry is None:
                self.log.info("no cached frame to capture")
                return None
            _ts, frame = entry
            return self.orchestrator.process_final(frame, background, cancel)
        finally:
            self._gate.release()
