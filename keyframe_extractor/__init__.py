"""Pick one sharp, stable screenshot per distinct item shown in a video."""

__version__ = "0.1.0"

from .config import ImageFormat, ProcessingOptions, RunConfig
from .difference import frame_difference
from .engine import (
    Candidate,
    CandidatePool,
    EngineState,
    KeyFrameEngine,
    Screenshot,
    extract_keyframes,
)
from .errors import (
    ExtractionAbortedError,
    InvalidInputError,
    KeyframeError,
    SeekTimeoutError,
)
from .extractor import Frame, FrameSource, RenderedFrameSource, VideoFrameSource
from .sharpness import sharpness

__all__ = [
    "Candidate",
    "CandidatePool",
    "EngineState",
    "ExtractionAbortedError",
    "Frame",
    "FrameSource",
    "ImageFormat",
    "InvalidInputError",
    "KeyFrameEngine",
    "KeyframeError",
    "ProcessingOptions",
    "RenderedFrameSource",
    "RunConfig",
    "Screenshot",
    "SeekTimeoutError",
    "VideoFrameSource",
    "extract_keyframes",
    "frame_difference",
    "sharpness",
]
