"""
Relay lifecycle events.

Events are queued from the relay loop without awaiting and delivered by a
background worker to local handlers and, optionally, one webhook.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import aiohttp

from models import RelayEvent, WebhookConfig

logger = logging.getLogger(__name__)


class EventManager:
    def __init__(self, webhook: Optional[WebhookConfig] = None, drain_timeout: float = 0.5):
        self.webhook = webhook
        self.drain_timeout = drain_timeout
        self.handlers: List[Callable] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self._session: Optional[aiohttp.ClientSession] = None
        self._worker_task: Optional[asyncio.Task] = None

    def add_handler(self, handler: Callable):
        self.handlers.append(handler)

    def emit_nowait(self, event: RelayEvent):
        """Queue an event; safe to call from synchronous code on the loop."""
        self.queue.put_nowait(event)
        logger.debug(f"Queued event {event.event_type.value} for stream {event.stream_name}")

    async def start(self):
        if self._worker_task:
            return
        if self.webhook:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.webhook.timeout))
            logger.info(f"Sending relay events to {self.webhook.url}")
        self._worker_task = asyncio.create_task(self._worker())

    async def stop(self):
        """
        Give queued events up to drain_timeout to be delivered, then drop
        whatever is left. Webhook retries in flight are cancelled.
        """
        if self._worker_task is None:
            return

        try:
            await asyncio.wait_for(self.queue.join(), timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self.queue.qsize()} undelivered event(s) at shutdown")

        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

        if self._session:
            await self._session.close()
            self._session = None

    async def _worker(self):
        while True:
            event = await self.queue.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"Error processing event: {e}")
            finally:
                self.queue.task_done()

    async def _dispatch(self, event: RelayEvent):
        for handler in self.handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Error in event handler {handler.__name__}: {e}")

        if self.webhook and event.event_type in self.webhook.events:
            await self._post_webhook(event)

    async def _post_webhook(self, event: RelayEvent):
        """POST the event, backing off 1s, 2s, 4s... between attempts."""
        payload = {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "stream_name": event.stream_name,
            "timestamp": event.timestamp.isoformat(),
            "data": event.data
        }
        headers = {"User-Agent": "stream-relay", **self.webhook.headers}

        for attempt in range(self.webhook.retry_attempts + 1):
            if attempt:
                await asyncio.sleep(2 ** (attempt - 1))
            try:
                async with self._session.post(str(self.webhook.url), json=payload,
                                              headers=headers) as response:
                    if response.status < 400:
                        return
                    logger.warning(f"Webhook returned {response.status} for {event.event_type.value}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Webhook attempt {attempt + 1} to {self.webhook.url} failed: {e}")

        logger.error(f"Giving up on {event.event_type.value} webhook after "
                     f"{self.webhook.retry_attempts + 1} attempt(s)")
