from __future__ import annotations

import logging
import threading
from types import SimpleNamespace

import numpy as np

from photobooth_matting.config import PipelineOptions
from photobooth_matting.contracts import MattingResult
from photobooth_matting.pipeline import PipelineOrchestrator
from photobooth_matting.preview import CaptureGuard, FrameCache, PreviewPipeline, PreviewThrottle
from photobooth_matting.raster import RasterBuffer


def _frame(value: int = 50) -> RasterBuffer:
    px = np.full((48, 64, 3), value, dtype=np.uint8)
    px[12:36, 16:48] = 220
    return RasterBuffer(px)


def _stub_orchestrator():
    return SimpleNamespace(options=PipelineOptions())


def test_throttle_drops_frames_inside_interval():
    throttle = PreviewThrottle()
    assert throttle.try_acquire(0.0)
    assert not throttle.try_acquire(0.05)
    assert throttle.try_acquire(0.120)
    assert not throttle.try_acquire(0.2)
    assert throttle.try_acquire(0.5)


def test_throttle_uses_injected_clock():
    now = [10.0]
    throttle = PreviewThrottle(clock=lambda: now[0])
    assert throttle.try_acquire()
    now[0] = 10.1
    assert not throttle.try_acquire()
    throttle.reset()
    assert throttle.try_acquire()


def test_frame_cache_keeps_latest_copy():
    cache = FrameCache()
    assert cache.get() is None

    frame = _frame()
    cache.put(frame, timestamp=1.0)
    cache.put(_frame(90), timestamp=2.0)
    ts, cached = cache.get()
    assert ts == 2.0
    assert cached.get(0, 0) == (90, 90, 90)

    cached_before = cache.get()[1]
    frame.pixels[...] = 0
    assert cached_before.get(0, 0) == (90, 90, 90)

    cache.clear()
    assert cache.get() is None


def test_stale_results_are_discarded():
    pipeline = PreviewPipeline(_stub_orchestrator(), clock=lambda: 0.0)
    r = MattingResult.empty(4, 4)
    assert pipeline.deliver(1.0, r) is r
    assert pipeline.deliver(0.5, r) is None
    assert pipeline.deliver(2.0, r) is r
    assert pipeline.deliver(3.0, None) is None


def test_fps_is_logged(caplog):
    ticks = iter([0.0, 1.0, 2.5])
    pipeline = PreviewPipeline(_stub_orchestrator(), clock=lambda: next(ticks))
    r = MattingResult.empty(4, 4)
    with caplog.at_level(logging.INFO, logger="photobooth_matting.preview"):
        for ts in (1.0, 2.0, 3.0):
            pipeline.deliver(ts, r)
    assert any("preview fps" in rec.getMessage() for rec in caplog.records)


def test_preview_pipeline_throttles_and_processes():
    orch = PipelineOrchestrator(options=PipelineOptions(max_workers=1))
    try:
        pipeline = PreviewPipeline(orch)
        first = pipeline.submit(_frame(), timestamp=0.0)
        dropped = pipeline.submit(_frame(), timestamp=0.05)
        second = pipeline.submit(_frame(), timestamp=0.2)

        assert dropped is None
        r1 = first.result(timeout=30)
        r2 = second.result(timeout=30)
        assert r1 is not None and r1.frame_timestamp == 0.0
        assert r2 is not None and r2.frame_timestamp == 0.2
        # every incoming frame lands in the cache, throttled or not
        assert pipeline.cache.get()[0] == 0.2
    finally:
        orch.close()


class _BlockingOrchestrator:
    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def process_final(self, image, background=None, cancel=None):
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=10)
        return MattingResult.empty(image.width, image.height)


def test_capture_guard_needs_a_cached_frame():
    guard = CaptureGuard(_BlockingOrchestrator(), FrameCache())
    assert guard.capture_final_from_cache() is None


def test_capture_guard_rejects_reentry():
    orch = _BlockingOrchestrator()
    cache = FrameCache()
    cache.put(_frame(), timestamp=1.0)
    guard = CaptureGuard(orch, cache)

    results = []
    worker = threading.Thread(target=lambda: results.append(guard.capture_final_from_cache()))
    worker.start()
    assert orch.started.wait(timeout=10)

    assert guard.capture_final_from_cache() is None
    orch.release.set()
    worker.join(timeout=10)

    assert orch.calls == 1
    assert results[0] is not None
    assert results[0].matte.size == (64, 48)
    # gate is released afterwards
    assert guard.capture_final_from_cache() is not None
