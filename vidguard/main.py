"""
Video sensitivity worker - consumes processing requests from RabbitMQ and
runs the analysis pipeline for each video.
"""

import asyncio
import json
import signal
import sys
import time
from functools import partial

import pika
import structlog

from vidguard.core.config import settings
from vidguard.core.logging import configure_logging
from vidguard.services import VideoRepository
from vidguard.tasks import TaskRunner, build_pipeline, reanalyze_videos

logger = structlog.get_logger()

shutdown_requested = False

# outcomes caused by an unavailable dependency rather than the video itself
RETRYABLE_REASONS = ("lock_unavailable", "load_failed")


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info("shutdown_requested", signal=signum)
    shutdown_requested = True


def parse_message(body: bytes) -> str:
    """Return the video id from a processing request."""
    message = json.loads(body)
    if not isinstance(message, dict):
        raise ValueError("message must be a JSON object")
    video_id = message.get("video_id") or message.get("job_id")
    if not video_id:
        raise ValueError("message has no video_id")
    return str(video_id)


def _on_run_done(channel, delivery_tag, video_id, future) -> None:
    """Runs on the connection thread once the pipeline run has finished."""
    if future.cancelled():
        # interrupted by shutdown; another worker picks the request up
        logger.warning("run_interrupted", video_id=video_id)
        channel.basic_nack(delivery_tag=delivery_tag, requeue=True)
        return
    error = future.exception()
    if error is not None:
        logger.error("run_crashed", video_id=video_id, error=str(error))
        channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
        return
    outcome = future.result()
    if outcome.get("reason") in RETRYABLE_REASONS:
        logger.warning("job_requeued", video_id=video_id, reason=outcome["reason"])
        channel.basic_nack(delivery_tag=delivery_tag, requeue=True)
        return
    logger.info("job_acknowledged", video_id=video_id, outcome=outcome.get("status"))
    channel.basic_ack(delivery_tag=delivery_tag)


def on_message(channel, method, properties, body, runner: TaskRunner, connection):
    """Hand an incoming processing request to the task runner."""
    try:
        video_id = parse_message(body)
    except (json.JSONDecodeError, ValueError) as e:
        logger.error("invalid_message", error=str(e))
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    logger.info("job_received", video_id=video_id)

    try:
        future = runner.submit(video_id)
    except Exception as e:
        logger.error("submit_failed", video_id=video_id, error=str(e))
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
        return

    # acks must be issued from the connection's own thread
    future.add_done_callback(
        lambda f: connection.add_callback_threadsafe(
            partial(_on_run_done, channel, method.delivery_tag, video_id, f)
        )
    )


def main():
    configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("worker_starting", concurrency=settings.worker_concurrency)

    runner = TaskRunner(partial(build_pipeline, settings), settings.worker_concurrency)
    runner.start()

    while not shutdown_requested:
        try:
            params = pika.URLParameters(settings.rabbitmq_url)
            connection = pika.BlockingConnection(params)
            channel = connection.channel()

            channel.queue_declare(queue=settings.process_queue, durable=True)

            # one unacked message per concurrent run
            channel.basic_qos(prefetch_count=settings.worker_concurrency)

            channel.basic_consume(
                queue=settings.process_queue,
                on_message_callback=partial(on_message, runner=runner, connection=connection),
            )

            logger.info("worker_ready", queue=settings.process_queue)

            while not shutdown_requested:
                connection.process_data_events(time_limit=1)

            # drain runs while the channel is open so their acks still go out
            runner.stop(settings.shutdown_timeout)
            connection.process_data_events(time_limit=1)
            connection.close()

        except pika.exceptions.AMQPConnectionError as e:
            logger.error("rabbitmq_connection_error", error=str(e))
            if not shutdown_requested:
                time.sleep(5)

        except Exception as e:
            logger.error("worker_error", error=str(e))
            if not shutdown_requested:
                time.sleep(5)

    runner.stop()
    logger.info("worker_stopped")


async def _reanalyze(include_analyzed: bool) -> dict:
    pipeline = build_pipeline(settings)
    try:
        return await reanalyze_videos(
            pipeline,
            VideoRepository(),
            include_analyzed=include_analyzed,
            delay=settings.reanalysis_delay,
        )
    finally:
        await pipeline.aclose()


def reanalyze():
    """Re-run analysis for finished videos. Pass --all to include already analyzed ones."""
    configure_logging()
    summary = asyncio.run(_reanalyze("--all" in sys.argv[1:]))
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
