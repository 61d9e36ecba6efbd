"""
Centralized configuration constants for the matting pipeline.

Ground rules:
- uint8 mattes in [0, 255], float32 for intermediate math
- Batch size 1
"""
from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field, model_validator

# DeepLabV3-class segmentation models take a fixed square input.
MODEL_INPUT_SIZE = 513
# Pascal VOC "person" class.
SUBJECT_CLASS_INDEX = 15

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

MIN_IMAGE_SIDE = 8

# Heuristic segmentation
INNER_ZONE = 0.30
OUTER_ZONE = 0.75
INNER_MARGIN = 20.0
OUTER_MARGIN = 40.0
OUTER_MAX_FG_DISTANCE = 100.0
MIDDLE_MARGIN = 20.0
EDGE_STRIP = 0.05
EDGE_STRIP_MAX_FG_DISTANCE = 60.0
FEATHER_RADIUS = 5

# Confidence scoring
EDGE_WEIGHT = 0.40
COVERAGE_WEIGHT = 0.35
CONSISTENCY_WEIGHT = 0.25
TRANSITION_LOW = 10
TRANSITION_HIGH = 245
EXPECTED_GRADIENT = 0.3
COVERAGE_THRESHOLD = 128
MIN_COVERAGE = 0.05
MAX_COVERAGE = 0.60
IDEAL_COVERAGE = 0.30
VARIANCE_SCALE = 1000.0

# Compositing despill band
DESPILL_MAX = 0.05
# Profile despill_strength that maps to DESPILL_MAX.
DESPILL_REFERENCE_STRENGTH = 0.20
DESPILL_LOW = 0.2
DESPILL_HIGH = 0.5
DESPILL_PEAK = 0.35
FAINT_EDGE_ALPHA = 0.1

# Premultiplied pixels below this alpha are treated as black when unpremultiplying.
UNPREMULTIPLY_MIN_ALPHA = 5

PREVIEW_MIN_INTERVAL_S = 0.120
PREVIEW_FPS_LOG_INTERVAL_S = 2.0


class ProcessingProfile(BaseModel):
    """Named bundle of matte refinement parameters."""

    model_config = ConfigDict(frozen=True)

    name: str
    clamp_low: int = Field(ge=0, le=255)
    clamp_high: int = Field(ge=0, le=255)
    blur_radius: float = Field(ge=0.0)
    selective_blur: bool = False
    erosion_radius: int = Field(default=0, ge=0)
    despill_strength: float = Field(default=0.0, ge=0.0, le=1.0)
    max_side: int = Field(gt=0)

    @property
    def despill_max(self) -> float:
        """Peak alpha reduction the compositor applies in the fringe band."""
        return DESPILL_MAX * self.despill_strength / DESPILL_REFERENCE_STRENGTH

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ProcessingProfile":
        if self.clamp_low >= self.clamp_high:
            raise ValueError(f"clamp_low ({self.clamp_low}) must be < clamp_high ({self.clamp_high})")
        return self


PREVIEW_PROFILE = ProcessingProfile(
    name="preview",
    clamp_low=10,
    clamp_high=240,
    blur_radius=0.8,
    selective_blur=False,
    erosion_radius=0,
    despill_strength=0.0,
    max_side=320,
)

FINAL_PROFILE = ProcessingProfile(
    name="final",
    clamp_low=5,
    clamp_high=250,
    blur_radius=2.5,
    selective_blur=True,
    erosion_radius=1,
    despill_strength=0.20,
    max_side=1080,
)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class PipelineOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    preview: ProcessingProfile = PREVIEW_PROFILE
    final: ProcessingProfile = FINAL_PROFILE
    confidence_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    enable_remote_fallback: bool = False
    preview_min_interval_s: float = Field(default=PREVIEW_MIN_INTERVAL_S, ge=0.0)
    max_workers: int = Field(default=2, gt=0)

    @classmethod
    def from_env(cls) -> "PipelineOptions":
        """Build options from MATTING_* environment variables, falling back to defaults."""
        return cls(
            confidence_threshold=_env_float("MATTING_CONFIDENCE_THRESHOLD", 0.70),
            enable_remote_fallback=_env_bool("MATTING_REMOTE_FALLBACK", False),
            preview_min_interval_s=_env_float("MATTING_PREVIEW_INTERVAL_S", PREVIEW_MIN_INTERVAL_S),
        )
