import unittest

import numpy as np

from photobooth_matting.raster import AlphaMatte, PixelFormat, RasterBuffer, as_raster, unpremultiply


class TestRasterBuffer(unittest.TestCase):
    def test_bgr_to_rgb_swaps_channels(self):
        px = np.zeros((4, 5, 3), dtype=np.uint8)
        px[..., 0] = 200  # blue in BGR
        buf = RasterBuffer(px, PixelFormat.BGR)
        rgb = buf.to_rgb()
        self.assertEqual(rgb.shape, (4, 5, 3))
        self.assertTrue((rgb[..., 2] == 200).all())
        self.assertTrue((rgb[..., 0] == 0).all())

    def test_channel_count_must_match_format(self):
        with self.assertRaises(ValueError):
            RasterBuffer(np.zeros((4, 4, 3), dtype=np.uint8), PixelFormat.RGBA)
        with self.assertRaises(ValueError):
            RasterBuffer(np.zeros((4, 4, 3), dtype=np.float32))

    def test_get_set_are_bounds_checked(self):
        buf = RasterBuffer(np.zeros((3, 4, 3), dtype=np.uint8))
        buf.set(3, 2, (1, 2, 3))
        self.assertEqual(buf.get(3, 2), (1, 2, 3))
        self.assertEqual(buf.size, (4, 3))
        with self.assertRaises(IndexError):
            buf.get(4, 0)
        with self.assertRaises(IndexError):
            buf.set(0, -1, (0, 0, 0))

    def test_premultiplied_rgba_is_unpremultiplied(self):
        px = np.zeros((2, 2, 4), dtype=np.uint8)
        px[0, 0] = (50, 50, 50, 128)
        px[0, 1] = (3, 3, 3, 4)
        buf = RasterBuffer(px, PixelFormat.RGBA, premultiplied=True)
        rgb = buf.to_rgb()
        self.assertEqual(tuple(rgb[0, 0]), (100, 100, 100))
        # alpha below the cut-off collapses to black
        self.assertEqual(tuple(rgb[0, 1]), (0, 0, 0))

    def test_unpremultiply_keeps_alpha(self):
        px = np.full((2, 2, 4), 255, dtype=np.uint8)
        out = unpremultiply(px)
        self.assertTrue((out == 255).all())

    def test_alpha_defaults_to_opaque(self):
        buf = RasterBuffer(np.zeros((3, 3, 3), dtype=np.uint8))
        self.assertTrue((buf.alpha() == 255).all())

    def test_as_raster_accepts_arrays(self):
        self.assertEqual(as_raster(np.zeros((2, 2, 4), dtype=np.uint8)).pixel_format, PixelFormat.RGBA)
        with self.assertRaises(TypeError):
            as_raster([[1, 2], [3, 4]])


class TestAlphaMatte(unittest.TestCase):
    def test_from_unit_truncates_and_clamps(self):
        m = AlphaMatte.from_unit(np.array([[0.5, 2.0], [-1.0, np.nan]], dtype=np.float32))
        self.assertEqual(m.values.tolist(), [[127, 255], [0, 0]])

    def test_set_rejects_out_of_range(self):
        m = AlphaMatte.transparent(3, 2)
        self.assertEqual(m.size, (3, 2))
        with self.assertRaises(ValueError):
            m.set(0, 0, 256)
        with self.assertRaises(IndexError):
            m.set(3, 0, 1)

    def test_transparent_zero_size_is_empty(self):
        self.assertTrue(AlphaMatte.transparent(0, 0).is_empty)


if __name__ == "__main__":
    unittest.main()
