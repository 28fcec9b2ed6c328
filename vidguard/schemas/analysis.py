import enum
import math
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

CATEGORY_WEIGHTS = {"nsfw": 0.5, "violence": 0.3, "scene": 0.2}
CATEGORIES = tuple(CATEGORY_WEIGHTS)


def to_percent(value: float) -> int:
    """Score in [0,1] as a whole percentage, halves rounded up."""
    return int(math.floor(value * 100 + 0.5))


class ScoreSource(str, enum.Enum):
    PROVIDER = "provider"
    FALLBACK = "fallback"
    ERROR = "error"


class RiskTier(str, enum.Enum):
    LOW = "low"
    LOW_MEDIUM = "low-medium"
    MEDIUM = "medium"
    HIGH = "high"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Frame(CamelModel):
    path: str
    index: int
    timestamp: float = 0.0


class FrameScore(CamelModel):
    """Normalized classifier output for one frame."""

    frame_index: int
    nsfw: float = Field(0.0, ge=0.0, le=1.0)
    violence: float = Field(0.0, ge=0.0, le=1.0)
    scene: float = Field(0.0, ge=0.0, le=1.0)
    source: ScoreSource = ScoreSource.PROVIDER
    error: str | None = None
    details: dict = Field(default_factory=dict)

    @computed_field
    @property
    def composite_score(self) -> float:
        total = sum(getattr(self, name) * weight for name, weight in CATEGORY_WEIGHTS.items())
        # rounded so strict threshold comparisons are not skewed by float noise
        return round(min(max(total, 0.0), 1.0), 6)

    @property
    def succeeded(self) -> bool:
        return self.source != ScoreSource.ERROR

    @classmethod
    def failed(cls, frame_index: int, error: str) -> "FrameScore":
        return cls(frame_index=frame_index, source=ScoreSource.ERROR, error=error)


class CategoryBreakdown(CamelModel):
    average: float
    max: float
    confidence: float


class FrameAnalysis(CamelModel):
    frame_index: int
    timestamp: str
    composite_score: float
    is_flagged: bool
    categories: dict[str, float]
    errors: list[str] = Field(default_factory=list)


class TemporalAnalysis(CamelModel):
    flagged_timestamps: list[str]
    consistency_score: float


class AnalysisMetadata(CamelModel):
    models_used: list[str]
    api_provider: str
    sampling_strategy: str = "smart-uniform"
    processing_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AnalysisResult(CamelModel):
    overall_score: float
    peak_score: float
    risk_tier: RiskTier
    category_breakdown: dict[str, CategoryBreakdown]
    flagged_frame_indices: list[int]
    frame_count: int
    total_frames: int
    flagged_frames: int
    analysis: str
    recommendations: list[str]
    temporal_analysis: TemporalAnalysis
    frame_analysis: list[FrameAnalysis]
    metadata: AnalysisMetadata | None = None

    @property
    def sensitivity_score(self) -> int:
        return to_percent(self.peak_score)

    @property
    def is_flagged(self) -> bool:
        return self.risk_tier in (RiskTier.MEDIUM, RiskTier.HIGH)

    def to_metadata(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class VideoJob(BaseModel):
    """Snapshot of the persisted video record the pipeline works on."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    source_path: str
    status: str
    progress: int = 0
    original_name: str | None = None
    risk_level: str | None = None
    category_scores: dict | None = None
