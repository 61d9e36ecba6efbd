from __future__ import annotations

import numpy as np

from photobooth_matting.errors import Err, InferenceShapeMismatch, InvalidInput, Ok
from photobooth_matting.raster import AlphaMatte, PixelFormat, RasterBuffer
from photobooth_matting.segmentation import (
    HeuristicSegmenter,
    ModelBackedSegmenter,
    SegmentationEngine,
    bilinear_upsample,
    create_engine,
    majority_smooth,
)


class _FakeBackend:
    input_size = 33

    def __init__(self, out=None, exc: Exception | None = None):
        self.out = out
        self.exc = exc
        self.seen_shapes = []
        self.closed = False

    def run(self, x: np.ndarray) -> np.ndarray:
        self.seen_shapes.append(x.shape)
        if self.exc is not None:
            raise self.exc
        return self.out

    def close(self) -> None:
        self.closed = True


def _block_image(size: int = 100, block: int = 50) -> np.ndarray:
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[...] = (20, 20, 20)
    s = (size - block) // 2
    img[s : s + block, s : s + block] = (220, 200, 180)
    return img


def test_heuristic_finds_centred_block():
    img = _block_image()
    result = SegmentationEngine(HeuristicSegmenter()).segment(img)
    assert isinstance(result, Ok)
    m = result.value.values
    assert m.shape == (100, 100)

    block = m[25:75, 25:75]
    assert float((block > 128).mean()) >= 0.9
    # uniform surround is background
    assert int(m[:20, :].max()) == 0


def test_majority_smooth_removes_isolated_pixel():
    mask = np.zeros((5, 5), dtype=bool)
    mask[2, 2] = True
    assert not majority_smooth(mask).any()


def test_bilinear_upsample_uses_left_aligned_grid():
    grid = np.array([[0.0, 1.0], [0.0, 1.0]], dtype=np.float32)
    out = bilinear_upsample(grid, 4, 2)
    np.testing.assert_allclose(out[0], [0.0, 0.5, 1.0, 1.0])
    np.testing.assert_allclose(out[1], out[0])


def test_model_backed_reconstructs_full_resolution():
    out = np.zeros((1, 21, 9, 9), dtype=np.float32)
    out[0, 15] = 1.0
    backend = _FakeBackend(out)
    engine = SegmentationEngine(ModelBackedSegmenter(backend))

    result = engine.segment(np.zeros((30, 40, 3), dtype=np.uint8))
    assert isinstance(result, Ok)
    assert result.value.values.shape == (30, 40)
    assert (result.value.values == 255).all()
    assert backend.seen_shapes == [(1, 3, 33, 33)]


def test_single_channel_output_is_accepted():
    backend = _FakeBackend(np.full((1, 1, 5, 5), 0.5, dtype=np.float32))
    result = ModelBackedSegmenter(backend).segment(np.zeros((10, 10, 3), dtype=np.uint8))
    assert isinstance(result, Ok)
    assert (result.value.values == 127).all()


def test_shape_mismatch_is_an_error_not_a_fallback():
    backend = _FakeBackend(np.zeros((1, 3, 9, 9), dtype=np.float32))
    engine = SegmentationEngine(ModelBackedSegmenter(backend))

    result = engine.segment(_block_image())
    assert isinstance(result, Err)
    assert isinstance(result.error, InferenceShapeMismatch)

    matte = engine.infer(_block_image())
    assert matte.values.shape == (100, 100)
    assert not matte.values.any()


def test_backend_failure_degrades_to_heuristic():
    backend = _FakeBackend(exc=RuntimeError("device lost"))
    engine = SegmentationEngine(ModelBackedSegmenter(backend))

    result = engine.segment(_block_image())
    assert isinstance(result, Ok)
    assert float((result.value.values[25:75, 25:75] > 128).mean()) >= 0.9


def test_non_finite_output_degrades_to_heuristic():
    out = np.full((1, 21, 4, 4), np.nan, dtype=np.float32)
    engine = SegmentationEngine(ModelBackedSegmenter(_FakeBackend(out)))
    assert isinstance(engine.segment(_block_image()), Ok)


def test_invalid_inputs():
    engine = SegmentationEngine()
    tiny = engine.segment(np.zeros((4, 4, 3), dtype=np.uint8))
    assert isinstance(tiny, Err) and isinstance(tiny.error, InvalidInput)

    wrong = engine.segment(np.zeros((20, 20), dtype=np.uint8))
    assert isinstance(wrong, Err) and isinstance(wrong.error, InvalidInput)

    assert engine.infer(np.zeros((4, 4, 3), dtype=np.uint8)).values.shape == (4, 4)


def test_bgra_input_is_converted():
    bgr = _block_image()[..., ::-1]
    bgra = np.dstack([bgr, np.full((100, 100), 255, dtype=np.uint8)])
    result = SegmentationEngine().segment(RasterBuffer(np.ascontiguousarray(bgra), PixelFormat.BGRA))
    assert isinstance(result, Ok)
    assert isinstance(result.value, AlphaMatte)


def test_close_releases_backend():
    backend = _FakeBackend(np.zeros((1, 21, 4, 4), dtype=np.float32))
    SegmentationEngine(ModelBackedSegmenter(backend)).close()
    assert backend.closed


def test_create_engine_without_model_is_heuristic(tmp_path):
    assert isinstance(create_engine(None).strategy, HeuristicSegmenter)
    assert isinstance(create_engine(str(tmp_path / "missing.torchscript")).strategy, HeuristicSegmenter)


A = (220, 200, 180)
B = (20, 20, 20)


def test_subject_touching_the_edge_is_feathered():
    img = np.zeros((100, 100, 3), dtype=np.uint8)
    img[...] = B
    img[25:75, 0:75] = A
    result = HeuristicSegmenter().segment(img)
    assert isinstance(result, Ok)
    row = result.value.values[50]
    # linear ramp 255 * min(1, d / 5) towards the left border
    assert row[:7].tolist() == [0, 51, 102, 153, 204, 255, 255]
    assert row[99] == 0


def test_outer_zone_and_border_strip_are_stricter():
    img = _block_image()
    far = (150, 130, 110)  # ~121 from the centre colour: too far for the outer zone
    near = (174, 154, 134)  # ~80 from the centre colour: too far for the border strip
    img[6:13, 6:13] = far
    img[12:19, 47:54] = far
    img[45:56, 0:8] = near

    mask = HeuristicSegmenter().classify(img)
    assert mask[25:75, 25:75].all()
    # same colour: accepted in the middle zone, rejected in the outer zone
    assert mask[12:19, 47:54].all()
    assert not mask[6:13, 6:13].any()
    # the outermost 5% needs a close colour match; just inside it does not
    assert not mask[45:56, 0:5].any()
    assert mask[45:56, 5:8].all()
