from .aggregator import AllFramesFailedError, aggregate, risk_tier
from .classifier import ClassifierClient, ClassifierError, SightengineAdapter
from .repository import VideoNotFoundError, VideoRepository
from .sampler import select_frames
from .video_processor import (
    ExtractionFailedError,
    FFmpegError,
    MediaError,
    MediaNotFoundError,
    ProbeError,
    VideoMetadata,
    VideoProcessor,
)

__all__ = [
    "AllFramesFailedError", "aggregate", "risk_tier",
    "ClassifierClient", "ClassifierError", "SightengineAdapter",
    "VideoNotFoundError", "VideoRepository",
    "select_frames",
    "ExtractionFailedError", "FFmpegError", "MediaError", "MediaNotFoundError", "ProbeError",
    "VideoMetadata", "VideoProcessor",
]
