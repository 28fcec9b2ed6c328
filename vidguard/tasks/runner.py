import asyncio
import threading
from concurrent.futures import Future
from typing import Callable

import structlog

from .video import VideoPipeline

logger = structlog.get_logger()


class TaskRunner:
    """
    Runs pipeline jobs on a dedicated event loop thread.

    Callers on other threads (the AMQP consumer) hand over a video id and get
    back a concurrent Future; at most `concurrency` runs are active at once.
    On stop, in-flight runs get `timeout` seconds to finish; the rest are
    cancelled and close themselves out as failed before the loop shuts down.
    """

    def __init__(self, pipeline_factory: Callable[[], VideoPipeline], concurrency: int = 2) -> None:
        self.pipeline_factory = pipeline_factory
        self.concurrency = max(concurrency, 1)
        self.loop = asyncio.new_event_loop()
        self.pipeline: VideoPipeline | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._thread = threading.Thread(target=self._run_loop, name="vidguard-tasks", daemon=True)

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    async def _setup(self) -> None:
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self.pipeline = self.pipeline_factory()

    async def _guarded(self, video_id: str) -> dict:
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            async with self._semaphore:
                return await self.pipeline.process(video_id)
        finally:
            self._tasks.discard(task)

    async def _shutdown(self, timeout: float | None) -> None:
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            logger.info("task_runner_draining", active=len(pending), timeout=timeout)
            _, pending = await asyncio.wait(pending, timeout=timeout)
        if pending:
            logger.warning("task_runner_cancelling", remaining=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if self.pipeline is not None:
            await self.pipeline.aclose()

    def start(self) -> None:
        self._thread.start()
        asyncio.run_coroutine_threadsafe(self._setup(), self.loop).result()
        logger.info("task_runner_started", concurrency=self.concurrency)

    def submit(self, video_id: str) -> Future:
        if self.pipeline is None:
            raise RuntimeError("TaskRunner.start() must be called before submit()")
        if self._stopping:
            raise RuntimeError("TaskRunner is stopping")
        return asyncio.run_coroutine_threadsafe(self._guarded(video_id), self.loop)

    def stop(self, timeout: float | None = 30) -> None:
        if not self._thread.is_alive():
            return
        self._stopping = True
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(timeout), self.loop).result()
        except Exception as e:
            logger.warning("pipeline_close_failed", error=str(e))
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self.loop.close()
        logger.info("task_runner_stopped")
