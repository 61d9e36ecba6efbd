from __future__ import annotations

import logging
import os
from typing import Optional, Protocol

import requests

from .errors import RemoteFallbackFailure
from .io import decode_png, encode_png
from .raster import ImageLike, RasterBuffer, as_raster

log = logging.getLogger(__name__)


class RemoteMattingService(Protocol):
    @property
    def is_available(self) -> bool: ...

    def remove_background(self, image: ImageLike) -> RasterBuffer: ...


def _get_api_key() -> Optional[str]:
    return os.getenv("REMOVEBG_API_KEY") or None


def _get_base_url() -> str:
    return os.getenv("REMOVEBG_BASE_URL", "https://api.remove.bg").rstrip("/")


def _get_timeout_s() -> float:
    try:
        return float(os.getenv("REMOVEBG_TIMEOUT_S", "30"))
    except ValueError:
        return 30.0


class RemoveBgClient:
    """
    remove.bg HTTP client. Uploads a PNG, returns the subject as straight RGBA.

    Credentials and endpoint come from REMOVEBG_API_KEY / REMOVEBG_BASE_URL /
    REMOVEBG_TIMEOUT_S unless given explicitly.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key if api_key is not None else _get_api_key()
        self.base_url = (base_url or _get_base_url()).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else _get_timeout_s()
        self.log = logger or log

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def remove_background(self, image: ImageLike) -> RasterBuffer:
        if not self.api_key:
            raise RemoteFallbackFailure("Missing REMOVEBG_API_KEY")

        url = f"{self.base_url}/v1.0/removebg"
        files = {"image_file": ("image.png", encode_png(as_raster(image)), "image/png")}
        data = {"size": "auto", "format": "png"}
        try:
            resp = requests.post(url, headers={"X-Api-Key": self.api_key}, files=files, data=data, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise RemoteFallbackFailure(f"remove.bg request failed: {e}") from e

        if resp.status_code != 200:
            raise RemoteFallbackFailure(f"remove.bg returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            out = decode_png(resp.content)
        except Exception as e:  # noqa: BLE001 - any decoder failure is a remote failure
            raise RemoteFallbackFailure(f"remove.bg returned an undecodable image: {e}") from e
        self.log.info("remove.bg ok %dx%d", out.width, out.height)
        return out
