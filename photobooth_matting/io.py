from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any, Dict, Union

from PIL import Image

from .raster import AlphaMatte, RasterBuffer


def load_image(path: str) -> RasterBuffer:
    img = Image.open(path)
    img.load()
    return RasterBuffer.from_pil(img)


def encode_png(image: Union[RasterBuffer, AlphaMatte]) -> bytes:
    buf = io.BytesIO()
    image.to_pil().save(buf, format="PNG")
    return buf.getvalue()


def decode_png(data: bytes) -> RasterBuffer:
    """Decode PNG (or any Pillow-readable) bytes into straight RGBA."""
    img = Image.open(io.BytesIO(data))
    img.load()
    return RasterBuffer.from_pil(img.convert("RGBA"))


def save_png(image: Union[RasterBuffer, AlphaMatte], path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    image.to_pil().save(str(p), format="PNG", optimize=False)


def write_json(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def safe_id_from_relpath(relpath: str) -> str:
    """
    Make a stable, filesystem-safe id from a relative path.
    Example: "booth/day 1/shot.jpg" -> "booth__day_1__shot"
    """
    stem = Path(relpath).with_suffix("").as_posix().replace("/", "__")
    return "".join(ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in stem)
