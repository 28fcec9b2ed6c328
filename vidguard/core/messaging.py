import asyncio
import threading

import pika
import structlog
from pydantic import BaseModel

from vidguard.schemas.notification import (
    BROADCAST_FINISHED_EVENT,
    BROADCAST_PROGRESS_EVENT,
    FINISHED_EVENT,
    PROGRESS_EVENT,
    FinishedMessage,
    ProgressMessage,
)

from .config import settings

logger = structlog.get_logger()

PUBLISH_ATTEMPTS = 2


class NotificationPublisher:
    """
    Publishes pipeline notifications to RabbitMQ.

    Job-scoped subscribers bind to the topic exchange with `video.<id>.#`;
    dashboards consume the fanout exchange for every video.
    """

    def __init__(
        self,
        url: str | None = None,
        exchange: str | None = None,
        broadcast_exchange: str | None = None,
    ) -> None:
        self.url = url or settings.rabbitmq_url
        self.exchange = exchange or settings.notification_exchange
        self.broadcast_exchange = broadcast_exchange or settings.broadcast_exchange
        self._connection: pika.BlockingConnection | None = None
        self._channel = None
        # BlockingConnection is not thread-safe
        self._lock = threading.Lock()

    def _connect(self) -> None:
        if self._connection is None or self._connection.is_closed:
            params = pika.URLParameters(self.url)
            # nothing pumps this connection between publishes, so heartbeats cannot be serviced
            params.heartbeat = 0
            self._connection = pika.BlockingConnection(params)
            self._channel = self._connection.channel()

            self._channel.exchange_declare(
                exchange=self.exchange, exchange_type="topic", durable=True
            )
            self._channel.exchange_declare(
                exchange=self.broadcast_exchange, exchange_type="fanout", durable=True
            )

    def _publish(self, video_id: str, event: str, broadcast_event: str, message: BaseModel) -> None:
        body = message.model_dump_json(by_alias=True, exclude_none=True)
        suffix = event.split(":")[-1]
        with self._lock:
            self._connect()
            self._channel.basic_publish(
                exchange=self.exchange,
                routing_key=f"video.{video_id}.{suffix}",
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    type=event,
                ),
            )
            self._channel.basic_publish(
                exchange=self.broadcast_exchange,
                routing_key="",
                body=body,
                properties=pika.BasicProperties(
                    content_type="application/json",
                    type=broadcast_event,
                ),
            )

    def publish(self, video_id: str, event: str, broadcast_event: str, message: BaseModel) -> bool:
        """
        Best-effort delivery: failures are logged, never raised.

        A broken connection is replaced and the publish tried once more.
        """
        for attempt in range(1, PUBLISH_ATTEMPTS + 1):
            try:
                self._publish(video_id, event, broadcast_event, message)
            except pika.exceptions.AMQPError as e:
                self._reset()
                if attempt == PUBLISH_ATTEMPTS:
                    logger.error("notification_publish_failed", video_id=video_id, event=event, error=str(e))
                    return False
                logger.warning("notification_publish_retry", video_id=video_id, event=event, error=str(e))
            except Exception as e:
                logger.error("notification_publish_failed", video_id=video_id, event=event, error=str(e))
                self._reset()
                return False
            else:
                logger.debug("notification_published", video_id=video_id, event=event)
                return True
        return False

    async def progress(self, message: ProgressMessage) -> bool:
        return await asyncio.to_thread(
            self.publish, message.video_id, PROGRESS_EVENT, BROADCAST_PROGRESS_EVENT, message
        )

    async def finished(self, message: FinishedMessage) -> bool:
        return await asyncio.to_thread(
            self.publish, message.video_id, FINISHED_EVENT, BROADCAST_FINISHED_EVENT, message
        )

    def _reset(self) -> None:
        with self._lock:
            connection, self._connection, self._channel = self._connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except pika.exceptions.AMQPError as e:
                logger.warning("notification_connection_close_failed", error=str(e))

    def close(self) -> None:
        self._reset()
