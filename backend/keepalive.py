import asyncio
import logging
from typing import Callable, Optional

import requests

import config
import file_processor

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a blocking callable every ``interval`` seconds on an asyncio task.

    The owner calls ``start()`` once (from the app lifespan) and ``stop()`` on
    shutdown. Errors raised by the callable are logged and the loop goes on.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object], initial_delay: float = 0):
        self.name = name
        self.interval = interval
        self.func = func
        self.initial_delay = initial_delay
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.info("[Tasks] %s started (every %ss)", self.name, self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Tasks] %s stopped", self.name)

    async def _run(self):
        if self.initial_delay:
            await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await asyncio.to_thread(self.func)
            except Exception:
                logger.exception("[Tasks] %s failed", self.name)
            await asyncio.sleep(self.interval)


def ping(url: str = None) -> bool:
    url = url or config.PING_URL
    try:
        response = requests.get(url, timeout=10)
    except requests.exceptions.RequestException as e:
        logger.warning("[Ping] Keep-alive ping error: %s", e)
        return False
    if response.ok:
        logger.debug("[Ping] Keep-alive ping successful")
    else:
        logger.warning("[Ping] Keep-alive ping failed: %s", response.status_code)
    return response.ok


def build_tasks():
    """Background tasks owned by the application for its whole lifetime."""
    tasks = [
        PeriodicTask(
            "upload-cleanup",
            config.UPLOAD_CLEANUP_INTERVAL_SECONDS,
            file_processor.cleanup_old_files,
            initial_delay=5,
        )
    ]
    if config.APP_ENV == "production":
        tasks.append(PeriodicTask("keep-alive", config.PING_INTERVAL_SECONDS, ping, initial_delay=60))
    else:
        logger.info("[Ping] Keep-alive skipped outside production")
    return tasks
