"""
Pixel containers shared by every stage.

Both buffers wrap a row-major uint8 numpy array and expose bounds-checked
`get(x, y)` / `set(x, y, value)` accessors. Stages never mutate a buffer they
were handed; they return newly allocated ones.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image

from .config import UNPREMULTIPLY_MIN_ALPHA


class PixelFormat(str, Enum):
    RGB = "RGB"
    RGBA = "RGBA"
    BGR = "BGR"
    BGRA = "BGRA"

    @property
    def channels(self) -> int:
        return 4 if self in (PixelFormat.RGBA, PixelFormat.BGRA) else 3

    @property
    def has_alpha(self) -> bool:
        return self.channels == 4


_TO_RGB = {
    PixelFormat.RGB: None,
    PixelFormat.RGBA: cv2.COLOR_RGBA2RGB,
    PixelFormat.BGR: cv2.COLOR_BGR2RGB,
    PixelFormat.BGRA: cv2.COLOR_BGRA2RGB,
}

_TO_RGBA = {
    PixelFormat.RGB: cv2.COLOR_RGB2RGBA,
    PixelFormat.RGBA: None,
    PixelFormat.BGR: cv2.COLOR_BGR2RGBA,
    PixelFormat.BGRA: cv2.COLOR_BGRA2RGBA,
}


def unpremultiply(rgba: np.ndarray, min_alpha: int = UNPREMULTIPLY_MIN_ALPHA) -> np.ndarray:
    """
    Convert premultiplied RGBA to straight RGBA.

    Pixels with alpha below `min_alpha` get black colour to avoid noisy division.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
    a = rgba[..., 3:4].astype(np.float32)
    rgb = rgba[..., :3].astype(np.float32)
    safe = np.where(a >= float(min_alpha), a, 255.0)
    straight = np.clip(rgb * 255.0 / safe, 0.0, 255.0)
    straight = np.where(a >= float(min_alpha), straight, 0.0)
    out = rgba.copy()
    out[..., :3] = np.rint(straight).astype(np.uint8)
    return out


def _check_xy(x: int, y: int, width: int, height: int) -> None:
    if not (0 <= x < width and 0 <= y < height):
        raise IndexError(f"Pixel ({x}, {y}) outside {width}x{height} buffer")


@dataclass(frozen=True)
class RasterBuffer:
    """3- or 4-channel colour image, shape (H, W, C)."""

    pixels: np.ndarray
    pixel_format: PixelFormat = PixelFormat.RGB
    premultiplied: bool = False

    def __post_init__(self) -> None:
        px = self.pixels
        if not isinstance(px, np.ndarray):
            raise TypeError(f"Expected numpy array, got {type(px)}")
        if px.ndim != 3 or px.shape[2] not in (3, 4):
            raise ValueError(f"Expected (H,W,3|4) array, got shape={px.shape}")
        if px.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {px.dtype}")
        if px.shape[2] != self.pixel_format.channels:
            raise ValueError(f"{self.pixel_format.value} needs {self.pixel_format.channels} channels, got {px.shape[2]}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def stride(self) -> int:
        return int(self.pixels.strides[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def get(self, x: int, y: int) -> Tuple[int, ...]:
        _check_xy(x, y, self.width, self.height)
        return tuple(int(v) for v in self.pixels[y, x])

    def set(self, x: int, y: int, value) -> None:
        _check_xy(x, y, self.width, self.height)
        if len(value) != self.channels:
            raise ValueError(f"Expected {self.channels} channel values, got {len(value)}")
        self.pixels[y, x] = value

    def copy(self) -> "RasterBuffer":
        return RasterBuffer(self.pixels.copy(), self.pixel_format, self.premultiplied)

    def to_rgb(self) -> np.ndarray:
        """Straight-colour RGB uint8 array (H, W, 3), always a fresh copy."""
        src = self
        if self.premultiplied:
            src = RasterBuffer(unpremultiply(self.to_rgba_array(straight=False)), PixelFormat.RGBA)
        code = _TO_RGB[src.pixel_format]
        if code is None:
            return src.pixels.copy()
        return cv2.cvtColor(src.pixels, code)

    def to_rgba_array(self, straight: bool = True) -> np.ndarray:
        code = _TO_RGBA[self.pixel_format]
        rgba = self.pixels.copy() if code is None else cv2.cvtColor(self.pixels, code)
        if straight and self.premultiplied:
            rgba = unpremultiply(rgba)
        return rgba

    def to_rgba(self) -> "RasterBuffer":
        return RasterBuffer(self.to_rgba_array(), PixelFormat.RGBA)

    def alpha(self) -> np.ndarray:
        """Alpha channel (H, W); fully opaque when the format carries none."""
        if not self.pixel_format.has_alpha:
            return np.full((self.height, self.width), 255, dtype=np.uint8)
        return self.pixels[..., 3].copy()

    def resized(self, width: int, height: int) -> "RasterBuffer":
        if (width, height) == self.size:
            return self.copy()
        interp = cv2.INTER_AREA if width < self.width or height < self.height else cv2.INTER_LINEAR
        out = cv2.resize(self.pixels, (int(width), int(height)), interpolation=interp)
        return RasterBuffer(np.ascontiguousarray(out), self.pixel_format, self.premultiplied)

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterBuffer":
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            return cls(np.array(img.convert("RGBA"), dtype=np.uint8), PixelFormat.RGBA)
        return cls(np.array(img.convert("RGB"), dtype=np.uint8), PixelFormat.RGB)

    def to_pil(self) -> Image.Image:
        if self.pixel_format.has_alpha:
            return Image.fromarray(self.to_rgba_array())
        return Image.fromarray(self.to_rgb())


@dataclass(frozen=True)
class AlphaMatte:
    """Single-channel continuous opacity, uint8 (H, W) in [0, 255]."""

    values: np.ndarray

    def __post_init__(self) -> None:
        v = self.values
        if not isinstance(v, np.ndarray):
            raise TypeError(f"Expected numpy array, got {type(v)}")
        if v.ndim != 2:
            raise ValueError(f"Expected 2D matte, got shape={v.shape}")
        if v.dtype != np.uint8:
            raise ValueError(f"Expected uint8 matte, got {v.dtype}")

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def is_empty(self) -> bool:
        return self.values.size == 0

    def get(self, x: int, y: int) -> int:
        _check_xy(x, y, self.width, self.height)
        return int(self.values[y, x])

    def set(self, x: int, y: int, value: int) -> None:
        _check_xy(x, y, self.width, self.height)
        if not 0 <= int(value) <= 255:
            raise ValueError(f"Matte value out of range: {value}")
        self.values[y, x] = int(value)

    def copy(self) -> "AlphaMatte":
        return AlphaMatte(self.values.copy())

    def as_unit(self) -> np.ndarray:
        return self.values.astype(np.float32) / 255.0

    def resized(self, width: int, height: int) -> "AlphaMatte":
        if (width, height) == self.size:
            return self.copy()
        out = cv2.resize(self.values, (int(width), int(height)), interpolation=cv2.INTER_LINEAR)
        return AlphaMatte(np.ascontiguousarray(out))

    @classmethod
    def transparent(cls, width: int, height: int) -> "AlphaMatte":
        return cls(np.zeros((max(0, int(height)), max(0, int(width))), dtype=np.uint8))

    @classmethod
    def from_unit(cls, values: np.ndarray) -> "AlphaMatte":
        """Clamp a float matte to [0, 1] and scale to bytes (truncating, like a byte cast)."""
        v = np.nan_to_num(values.astype(np.float32, copy=False), nan=0.0)
        v = np.clip(v, 0.0, 1.0) * 255.0
        return cls(v.astype(np.uint8))

    @classmethod
    def from_float(cls, values: np.ndarray) -> "AlphaMatte":
        """Round a float matte already on the 0..255 scale back to bytes."""
        return cls(np.clip(np.rint(values), 0.0, 255.0).astype(np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.values)


ImageLike = Union[RasterBuffer, np.ndarray]


def as_raster(image: ImageLike) -> RasterBuffer:
    """Accept a RasterBuffer or a bare (H,W,3|4) RGB(A) array."""
    if isinstance(image, RasterBuffer):
        return image
    if isinstance(image, np.ndarray) and image.ndim == 3 and image.shape[2] in (3, 4):
        fmt = PixelFormat.RGBA if image.shape[2] == 4 else PixelFormat.RGB
        return RasterBuffer(np.ascontiguousarray(image), fmt)
    raise TypeError(f"Unsupported image type: {type(image)}")
