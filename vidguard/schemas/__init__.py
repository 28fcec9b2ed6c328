from .analysis import (
    CATEGORIES,
    CATEGORY_WEIGHTS,
    AnalysisMetadata,
    AnalysisResult,
    CategoryBreakdown,
    Frame,
    FrameAnalysis,
    FrameScore,
    RiskTier,
    ScoreSource,
    TemporalAnalysis,
    VideoJob,
    to_percent,
)
from .notification import FinishedMessage, ProgressMessage

__all__ = [
    "CATEGORIES", "CATEGORY_WEIGHTS", "AnalysisMetadata", "AnalysisResult", "CategoryBreakdown",
    "Frame", "FrameAnalysis", "FrameScore", "RiskTier", "ScoreSource", "TemporalAnalysis",
    "VideoJob", "FinishedMessage", "ProgressMessage", "to_percent",
]
