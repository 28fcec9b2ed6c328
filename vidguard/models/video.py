import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .types import GUID, JSONType


class VideoStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    DONE = "done"
    FLAGGED = "flagged"
    FAILED = "failed"


ACTIVE_STATUSES = (VideoStatus.PROCESSING, VideoStatus.ANALYZING)
TERMINAL_STATUSES = (VideoStatus.DONE, VideoStatus.FLAGGED, VideoStatus.FAILED)


def _status_enum() -> Enum:
    return Enum(VideoStatus, values_callable=lambda e: [m.value for m in e])


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(GUID(), nullable=True, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    original_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    status: Mapped[VideoStatus] = mapped_column(
        _status_enum(), default=VideoStatus.UPLOADED, nullable=False, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    duration: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    thumbnail: Mapped[str | None] = mapped_column(String(512), nullable=True)

    sensitivity: Mapped[str] = mapped_column(String(20), default="unknown", nullable=False)
    sensitivity_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    category_scores: Mapped[dict | None] = mapped_column(JSONType(), nullable=True)
    ai_metadata: Mapped[dict | None] = mapped_column(JSONType(), nullable=True)
    analysis: Mapped[str | None] = mapped_column(Text, nullable=True)
    flagged_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class VideoEvent(Base):
    __tablename__ = "video_events"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    old_status: Mapped[VideoStatus | None] = mapped_column(_status_enum(), nullable=True)
    new_status: Mapped[VideoStatus | None] = mapped_column(_status_enum(), nullable=True)
    event_data: Mapped[dict | None] = mapped_column(JSONType(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
