import asyncio
import time
from datetime import datetime, timezone
from pathlib import Path

import redis.asyncio as aioredis
import redis.exceptions
import structlog

from vidguard.core.config import Settings, settings as default_settings
from vidguard.core.messaging import NotificationPublisher
from vidguard.models import VideoStatus
from vidguard.models.video import ACTIVE_STATUSES
from vidguard.schemas import AnalysisResult, FinishedMessage, FrameScore, ProgressMessage, VideoJob, to_percent
from vidguard.services import (
    ClassifierClient,
    ClassifierError,
    MediaError,
    MediaNotFoundError,
    VideoProcessor,
    VideoRepository,
    aggregate,
    select_frames,
)
from vidguard.services.aggregator import FLAG_THRESHOLD

logger = structlog.get_logger()

CLAIM_PROGRESS = 10
METADATA_PROGRESS = 20
THUMBNAIL_PROGRESS = 40
EXTRACTION_PROGRESS = 45
CLASSIFICATION_PROGRESS = 50
CLASSIFICATION_END_PROGRESS = 85
AGGREGATED_PROGRESS = 90


async def acquire_lock(client: aioredis.Redis, video_id: str, timeout: int = 1800):
    """Claim a video for one run; None when another run holds it."""
    lock = client.lock(f"lock:video:{video_id}", timeout=timeout)
    if await lock.acquire(blocking=False):
        return lock
    return None


async def release_lock(lock) -> None:
    try:
        await lock.release()
    except redis.exceptions.LockError as e:
        # expired or taken over after lock_timeout
        logger.warning("lock_release_failed", error=str(e))


class RunInterruptedError(Exception):
    """The run was cancelled before reaching a verdict."""
    pass


class RunState:
    """Progress and status of one run; progress never moves backwards."""

    def __init__(self, pipeline: "VideoPipeline", video_id: str, status: VideoStatus) -> None:
        self.pipeline = pipeline
        self.video_id = video_id
        self.status = status
        self.progress = 0
        self.thumbnail: str | None = None
        self.duration: float | None = None

    async def advance(self, progress: int, status: VideoStatus | None = None, **fields) -> None:
        progress = max(progress, self.progress)
        old_status = self.status
        new_status = status or self.status
        update = dict(fields, progress=progress)
        if new_status != old_status:
            update["status"] = new_status

        try:
            await self.pipeline.repository.save_job(self.video_id, **update)
        except Exception as e:
            logger.error("progress_persist_failed", video_id=self.video_id, progress=progress, error=str(e))

        self.progress = progress
        self.status = new_status
        if new_status != old_status:
            await self.pipeline.record_event(self.video_id, "STATUS_CHANGED", old_status, new_status)

        await self.pipeline.publisher.progress(
            ProgressMessage(
                video_id=self.video_id,
                progress=progress,
                status=new_status.value,
                thumbnail=fields.get("thumbnail"),
            )
        )


class VideoPipeline:
    """
    Sensitivity pipeline for a single video.

    claim -> metadata -> thumbnail -> extract -> sample -> classify
    -> aggregate -> persist -> notify. Domain failures end the run in
    `failed`; process() itself only raises on cancellation.
    """

    def __init__(
        self,
        repository: VideoRepository,
        processor: VideoProcessor,
        classifier: ClassifierClient,
        publisher: NotificationPublisher,
        lock_client: aioredis.Redis,
        settings: Settings = default_settings,
        sleep=asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.classifier = classifier
        self.publisher = publisher
        self.lock_client = lock_client
        self.settings = settings
        self.sleep = sleep

    async def process(self, video_id: str) -> dict:
        """Start processing this video. Safe to call for re-analysis."""
        video_id = str(video_id)
        logger.info("processing_requested", video_id=video_id)

        try:
            lock = await acquire_lock(self.lock_client, video_id, self.settings.lock_timeout)
        except redis.exceptions.RedisError as e:
            logger.error("lock_unavailable", video_id=video_id, error=str(e))
            return {"status": "error", "reason": "lock_unavailable", "video_id": video_id}
        if not lock:
            logger.info("locked_skipped", video_id=video_id)
            return {"status": "skipped", "reason": "locked", "video_id": video_id}

        try:
            try:
                job = await self.repository.load_job(video_id)
            except ValueError as e:
                logger.error("invalid_video_id", video_id=video_id, error=str(e))
                return {"status": "error", "reason": "invalid_video_id", "video_id": video_id}
            except Exception as e:
                logger.error("video_load_failed", video_id=video_id, error=str(e))
                return {"status": "error", "reason": "load_failed", "video_id": video_id}
            if not job:
                logger.error("video_not_found", video_id=video_id)
                return {"status": "error", "reason": "video_not_found", "video_id": video_id}
            return await self._run(job)
        finally:
            await release_lock(lock)

    async def record_event(self, video_id, event_type, old_status, new_status, data=None) -> None:
        try:
            await self.repository.log_event(video_id, event_type, old_status, new_status, data)
        except Exception as e:
            logger.error("event_log_failed", video_id=video_id, event_type=event_type, error=str(e))

    async def _run(self, job: VideoJob) -> dict:
        video_id = str(job.id)
        scratch = Path(self.settings.scratch_dir) / video_id
        run = RunState(self, video_id, VideoStatus(job.status))
        start_time = time.monotonic()

        if run.status in ACTIVE_STATUSES:
            # the previous holder's lock expired without reaching a terminal state
            logger.warning("stale_run_reclaimed", video_id=video_id, status=run.status.value)

        cancelled = None
        try:
            result = await self._execute(job, run, scratch)
        except asyncio.CancelledError as e:
            # worker shutdown: close the run out before letting the cancellation through
            cancelled = e
            message = await self._fail(run, RunInterruptedError("Processing interrupted by worker shutdown"))
            outcome = {"status": "failed", "video_id": video_id, "error": message.message}
        except Exception as e:
            message = await self._fail(run, e)
            outcome = {"status": "failed", "video_id": video_id, "error": message.message}
        else:
            message = self._finished_message(run, result)
            outcome = {
                "status": "success",
                "video_id": video_id,
                "result_status": run.status.value,
                "risk_level": result.risk_tier.value,
                "sensitivity_score": result.sensitivity_score,
            }
        finally:
            await asyncio.to_thread(self.processor.cleanup, str(scratch))

        outcome["processing_time"] = round(time.monotonic() - start_time, 2)
        await self.publisher.finished(message)
        logger.info("processing_finished", **outcome)
        if cancelled is not None:
            raise cancelled
        return outcome

    async def _execute(self, job: VideoJob, run: RunState, scratch: Path) -> AnalysisResult:
        video_id = run.video_id
        source = job.source_path

        await run.advance(
            CLAIM_PROGRESS,
            VideoStatus.PROCESSING,
            started_at=datetime.now(timezone.utc),
            completed_at=None,
            error_message=None,
            flagged_reason=None,
            ai_metadata=None,
            risk_level=None,
            category_scores=None,
            sensitivity="unknown",
            sensitivity_score=0,
        )

        if not await asyncio.to_thread(Path(source).is_file):
            raise MediaNotFoundError("Video file not found")

        duration = 0.0
        try:
            metadata = await self.processor.probe(source)
            duration = metadata.duration
            run.duration = round(duration)
            await run.advance(METADATA_PROGRESS, duration=run.duration)
        except MediaNotFoundError:
            raise
        except MediaError as e:
            logger.warning("metadata_extraction_failed", video_id=video_id, error=str(e))

        try:
            name = await self.processor.generate_thumbnail(source, self.settings.thumbnail_dir, duration)
            run.thumbnail = f"{self.settings.thumbnail_url_prefix.rstrip('/')}/{name}"
            await run.advance(THUMBNAIL_PROGRESS, thumbnail=run.thumbnail)
        except MediaNotFoundError:
            raise
        except MediaError as e:
            logger.warning("thumbnail_generation_failed", video_id=video_id, error=str(e))

        await run.advance(EXTRACTION_PROGRESS, VideoStatus.ANALYZING)

        if not self.classifier.configured:
            raise ClassifierError("classifier credentials missing")

        frames = await self.processor.extract_frames(
            source, self.settings.extract_frame_count, str(scratch / "frames")
        )
        sampled = select_frames(frames, self.settings.max_sampled_frames)
        logger.info("frames_sampled", video_id=video_id, extracted=len(frames), sampled=len(sampled))

        await run.advance(CLASSIFICATION_PROGRESS)
        scores = await self._classify(run, sampled)
        await asyncio.to_thread(self.processor.cleanup, str(scratch))

        result = aggregate(
            scores,
            len(frames),
            provider=self.classifier.provider,
            models_used=self.classifier.adapter.models_used,
        )
        await run.advance(AGGREGATED_PROGRESS)

        await self._save_verdict(run, result)
        return result

    async def _classify(self, run: RunState, sampled: list) -> list[FrameScore]:
        scores = []
        span = CLASSIFICATION_END_PROGRESS - CLASSIFICATION_PROGRESS
        for position, frame in enumerate(sampled):
            if position:
                # provider quota: one call per interval, never concurrent
                await self.sleep(self.settings.classifier_call_delay)

            score = await self.classifier.classify(frame.path, frame.index)
            scores.append(score)
            logger.info(
                "frame_classified",
                video_id=run.video_id,
                frame_index=frame.index,
                position=position + 1,
                sampled=len(sampled),
                source=score.source.value,
                composite=score.composite_score,
            )
            await run.advance(CLASSIFICATION_PROGRESS + span * (position + 1) // len(sampled))
        return scores

    async def _save_verdict(self, run: RunState, result: AnalysisResult) -> None:
        final_status = VideoStatus.FLAGGED if result.is_flagged else VideoStatus.DONE
        sensitivity = "flagged" if result.peak_score > FLAG_THRESHOLD else "safe"
        flagged_reason = None
        if sensitivity == "flagged":
            flagged_reason = (
                f"AI detected potentially sensitive content "
                f"({result.sensitivity_score}% peak across {result.frame_count} frames)"
            )

        # unlike progress checkpoints, losing the verdict fails the run
        await self.repository.save_job(
            run.video_id,
            status=final_status,
            progress=100,
            sensitivity=sensitivity,
            sensitivity_score=result.sensitivity_score,
            risk_level=result.risk_tier.value,
            category_scores={
                name: to_percent(breakdown.max)
                for name, breakdown in result.category_breakdown.items()
            },
            ai_metadata=result.to_metadata(),
            analysis=result.analysis,
            flagged_reason=flagged_reason,
            completed_at=datetime.now(timezone.utc),
        )
        await self.record_event(
            run.video_id,
            "PROCESSING_COMPLETED",
            run.status,
            final_status,
            {"risk_level": result.risk_tier.value, "sensitivity_score": result.sensitivity_score},
        )
        run.status = final_status
        run.progress = 100

    async def _fail(self, run: RunState, error: Exception) -> FinishedMessage:
        message = str(error) or error.__class__.__name__
        logger.error(
            "processing_failed",
            video_id=run.video_id,
            error_type=error.__class__.__name__,
            error=message,
        )
        try:
            await self.repository.save_job(
                run.video_id,
                status=VideoStatus.FAILED,
                progress=100,
                error_message=message[:500],
                completed_at=datetime.now(timezone.utc),
            )
        except Exception as e:
            logger.error("failure_persist_failed", video_id=run.video_id, error=str(e))
        await self.record_event(
            run.video_id, "PROCESSING_FAILED", run.status, VideoStatus.FAILED, {"error": message[:500]}
        )
        run.status = VideoStatus.FAILED
        run.progress = 100
        return FinishedMessage(
            video_id=run.video_id,
            status=VideoStatus.FAILED.value,
            sensitivity="unknown",
            thumbnail=run.thumbnail,
            duration=run.duration,
            message=message,
        )

    def _finished_message(self, run: RunState, result: AnalysisResult) -> FinishedMessage:
        return FinishedMessage(
            video_id=run.video_id,
            status=run.status.value,
            sensitivity="flagged" if result.peak_score > FLAG_THRESHOLD else "safe",
            sensitivity_score=result.sensitivity_score,
            risk_tier=result.risk_tier.value,
            overall_score=round(result.overall_score, 4),
            thumbnail=run.thumbnail,
            duration=run.duration,
        )

    async def aclose(self) -> None:
        await self.classifier.aclose()
        await self.lock_client.aclose()
        self.publisher.close()


def build_pipeline(settings: Settings = default_settings) -> VideoPipeline:
    """Wire the pipeline's collaborators once per process; call inside the running loop."""
    return VideoPipeline(
        repository=VideoRepository(),
        processor=VideoProcessor(frame_width=settings.frame_width, timeout=settings.ffmpeg_timeout),
        classifier=ClassifierClient.from_settings(settings),
        publisher=NotificationPublisher(),
        lock_client=aioredis.from_url(settings.redis_url),
        settings=settings,
    )
