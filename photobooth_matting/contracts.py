from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

import numpy as np
from pydantic import BaseModel, Field

from .raster import AlphaMatte, RasterBuffer

LOW_ALPHA = 5
HIGH_ALPHA = 250


@dataclass(frozen=True)
class StageTimings:
    preprocess_s: float = 0.0
    segment_s: float = 0.0
    postprocess_s: float = 0.0
    score_s: float = 0.0
    remote_s: float = 0.0
    compose_s: float = 0.0
    total_s: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class MattingResult:
    """
    Outcome of one matting run. Degraded runs carry confidence 0.0 and an
    `error` reason instead of raising.
    """

    foreground: Optional[RasterBuffer]
    matte: AlphaMatte
    composite: Optional[RasterBuffer] = None
    confidence: float = 0.0
    timings: StageTimings = field(default_factory=StageTimings)
    used_external_fallback: bool = False
    error: Optional[str] = None
    frame_timestamp: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def empty(
        cls,
        width: int = 0,
        height: int = 0,
        *,
        error: Optional[str] = None,
        timings: Optional[StageTimings] = None,
        frame_timestamp: Optional[float] = None,
    ) -> "MattingResult":
        return cls(
            foreground=None,
            matte=AlphaMatte.transparent(width, height),
            confidence=0.0,
            timings=timings or StageTimings(),
            error=error,
            frame_timestamp=frame_timestamp,
        )


class AlphaStatistics(BaseModel):
    min: int = 0
    max: int = 0
    mean: float = 0.0
    pct_low: float = 0.0
    pct_mid: float = 0.0
    pct_high: float = 0.0

    @classmethod
    def from_matte(cls, matte: AlphaMatte) -> "AlphaStatistics":
        v = matte.values
        if v.size == 0:
            return cls()
        n = float(v.size)
        low = int(np.count_nonzero(v <= LOW_ALPHA))
        high = int(np.count_nonzero(v >= HIGH_ALPHA))
        return cls(
            min=int(v.min()),
            max=int(v.max()),
            mean=float(v.mean()),
            pct_low=100.0 * low / n,
            pct_mid=100.0 * (v.size - low - high) / n,
            pct_high=100.0 * high / n,
        )


class MattingSummary(BaseModel):
    """JSON metadata written next to each output."""

    image_id: str
    source_path: str
    width: int
    height: int
    confidence: float
    used_external_fallback: bool
    error: Optional[str] = None
    timings: Dict[str, float] = Field(default_factory=dict)
    alpha: AlphaStatistics = Field(default_factory=AlphaStatistics)

    @classmethod
    def from_result(cls, image_id: str, source_path: str, result: MattingResult) -> "MattingSummary":
        return cls(
            image_id=image_id,
            source_path=source_path,
            width=result.matte.width,
            height=result.matte.height,
            confidence=result.confidence,
            used_external_fallback=result.used_external_fallback,
            error=result.error,
            timings=result.timings.to_dict(),
            alpha=AlphaStatistics.from_matte(result.matte),
        )
