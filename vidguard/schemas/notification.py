from pydantic import Field

from .analysis import CamelModel

PROGRESS_EVENT = "processing:update"
FINISHED_EVENT = "processing:finished"
BROADCAST_PROGRESS_EVENT = "processingProgress"
BROADCAST_FINISHED_EVENT = "processingComplete"


class ProgressMessage(CamelModel):
    video_id: str
    progress: int = Field(ge=0, le=100)
    status: str
    thumbnail: str | None = None


class FinishedMessage(CamelModel):
    video_id: str
    status: str
    sensitivity: str = "unknown"
    sensitivity_score: int = 0
    risk_tier: str | None = None
    overall_score: float | None = None
    progress: int = 100
    thumbnail: str | None = None
    duration: float | None = None
    message: str | None = None
