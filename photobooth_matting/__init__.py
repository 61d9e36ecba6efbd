from .composite import Compositor
from .confidence import ConfidenceBreakdown, ConfidenceScorer
from .config import FINAL_PROFILE, PREVIEW_PROFILE, PipelineOptions, ProcessingProfile
from .contracts import AlphaStatistics, MattingResult, MattingSummary, StageTimings
from .errors import Err, MattingError, Ok
from .pipeline import PipelineOrchestrator
from .postprocess import MattePostProcessor
from .preview import CaptureGuard, FrameCache, PreviewPipeline, PreviewThrottle
from .raster import AlphaMatte, PixelFormat, RasterBuffer
from .remote import RemoveBgClient
from .segmentation import HeuristicSegmenter, ModelBackedSegmenter, SegmentationEngine, create_engine

__version__ = "0.1.0"
