import asyncio
import logging
from typing import Optional

from errors import RelayCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Stop flag passed to every blocking or retrying relay call.

    Set from a signal handler running on the event loop, polled at each
    suspension point.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info(f"Stop requested ({reason})")

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RelayCancelled(self.reason or "cancelled")

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; return True early if cancelled."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True
