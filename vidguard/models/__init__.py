from .base import Base, SessionLocal
from .types import as_uuid
from .video import Video, VideoEvent, VideoStatus

__all__ = ["Base", "SessionLocal", "Video", "VideoEvent", "VideoStatus", "as_uuid"]
