import asyncio
from typing import Any
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from vidguard.models import SessionLocal, Video, VideoEvent, VideoStatus, as_uuid
from vidguard.schemas import VideoJob


class VideoNotFoundError(LookupError):
    pass


def _snapshot(video: Video) -> VideoJob:
    return VideoJob(
        id=video.id,
        source_path=video.source_path,
        status=VideoStatus(video.status).value,
        progress=video.progress,
        original_name=video.original_name,
        risk_level=video.risk_level,
        category_scores=video.category_scores,
    )


class VideoRepository:
    """
    Persistence collaborator for the pipeline.

    Each call runs in its own session and transaction on a worker thread so
    the event loop is never blocked by the database driver.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory

    # sync implementations -------------------------------------------------

    def _load(self, video_id: UUID) -> VideoJob | None:
        with self.session_factory() as db:
            video = db.get(Video, video_id)
            return _snapshot(video) if video else None

    def _save(self, video_id: UUID, fields: dict[str, Any]) -> None:
        with self.session_factory() as db:
            video = db.get(Video, video_id)
            if video is None:
                raise VideoNotFoundError(str(video_id))
            for key, value in fields.items():
                if not hasattr(Video, key):
                    raise AttributeError(f"Video has no field {key!r}")
                setattr(video, key, value)
            db.commit()

    def _log_event(self, video_id: UUID, event_type: str, old_status, new_status, data) -> None:
        with self.session_factory() as db:
            db.add(
                VideoEvent(
                    video_id=video_id,
                    event_type=event_type,
                    old_status=old_status,
                    new_status=new_status,
                    event_data=data,
                )
            )
            db.commit()

    def _find_for_reanalysis(self, include_analyzed: bool) -> list[VideoJob]:
        with self.session_factory() as db:
            videos = (
                db.query(Video)
                .filter(Video.status.in_((VideoStatus.DONE, VideoStatus.FLAGGED)))
                .order_by(Video.created_at)
                .all()
            )
            jobs = [_snapshot(v) for v in videos]
        if include_analyzed:
            return jobs
        return [j for j in jobs if not j.risk_level or not any((j.category_scores or {}).values())]

    def _risk_summary(self) -> dict[str, int]:
        with self.session_factory() as db:
            summary: dict[str, int] = {}
            for (risk_level,) in db.query(Video.risk_level).all():
                key = risk_level or "unknown"
                summary[key] = summary.get(key, 0) + 1
            return summary

    # async interface ------------------------------------------------------

    async def load_job(self, video_id: str | UUID) -> VideoJob | None:
        return await asyncio.to_thread(self._load, as_uuid(video_id))

    async def save_job(self, video_id: str | UUID, **fields: Any) -> None:
        """Apply a partial update atomically."""
        await asyncio.to_thread(self._save, as_uuid(video_id), fields)

    async def log_event(
        self,
        video_id: str | UUID,
        event_type: str,
        old_status: VideoStatus | None,
        new_status: VideoStatus | None,
        data: dict | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._log_event, as_uuid(video_id), event_type, old_status, new_status, data
        )

    async def find_for_reanalysis(self, include_analyzed: bool = False) -> list[VideoJob]:
        return await asyncio.to_thread(self._find_for_reanalysis, include_analyzed)

    async def risk_summary(self) -> dict[str, int]:
        return await asyncio.to_thread(self._risk_summary)
