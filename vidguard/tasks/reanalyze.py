import asyncio

import structlog

from vidguard.services import VideoRepository

from .video import VideoPipeline

logger = structlog.get_logger()


async def reanalyze_videos(
    pipeline: VideoPipeline,
    repository: VideoRepository,
    include_analyzed: bool = False,
    delay: float = 5.0,
    sleep=asyncio.sleep,
) -> dict:
    """
    Re-run the pipeline over finished videos, one at a time.

    By default only videos without a risk level or category scores are
    picked up; `include_analyzed` re-runs every done/flagged video.
    """
    videos = await repository.find_for_reanalysis(include_analyzed)
    logger.info("reanalysis_started", count=len(videos), include_analyzed=include_analyzed)

    counts = {"success": 0, "failed": 0, "skipped": 0, "error": 0}
    for position, job in enumerate(videos):
        if position:
            # spacing between videos keeps the provider under its quota
            await sleep(delay)

        outcome = await pipeline.process(str(job.id))
        counts[outcome["status"]] = counts.get(outcome["status"], 0) + 1
        logger.info(
            "reanalysis_progress",
            video_id=str(job.id),
            position=position + 1,
            total=len(videos),
            outcome=outcome["status"],
        )

    summary = await repository.risk_summary()
    logger.info("reanalysis_completed", processed=len(videos), risk_summary=summary, **counts)
    return {"processed": len(videos), **counts, "risk_summary": summary}
