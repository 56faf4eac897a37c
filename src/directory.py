import logging
from typing import Optional

import httpx

from errors import DirectoryError
from models import StreamDescriptor

logger = logging.getLogger(__name__)


class DirectoryClient:
    """HTTP client for the directory portal that tracks active streams."""

    def __init__(self, base_url: Optional[str], timeout: float = 5.0,
                 api_token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        headers = {"User-Agent": "Stream-Relay/1.0"}
        if api_token:
            headers["X-API-Token"] = api_token

        self.http_client = httpx.AsyncClient(
            base_url=self.base_url or "",
            timeout=timeout,
            headers=headers,
            transport=transport
        )

    async def check(self):
        """Make sure the portal is configured and reachable."""
        if not self.base_url:
            raise DirectoryError("Failed to find portal: no portal URL configured")
        try:
            response = await self.http_client.get("/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DirectoryError(f"Failed to find portal at {self.base_url}: {e}") from e
        logger.info(f"Portal reachable at {self.base_url}")

    async def new_stream(self, descriptor: StreamDescriptor):
        await self._post("/streams", descriptor)
        logger.info(f"Registered stream '{descriptor.name}' at {descriptor.endpoint}")

    async def close_stream(self, descriptor: StreamDescriptor):
        await self._post("/streams/close", descriptor)
        logger.info(f"Deregistered stream '{descriptor.name}'")

    async def _post(self, path: str, descriptor: StreamDescriptor):
        if not self.base_url:
            raise DirectoryError("No portal URL configured")
        try:
            response = await self.http_client.post(path, json=descriptor.to_wire())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DirectoryError(f"Portal call {path} failed: {e}") from e

    async def aclose(self):
        await self.http_client.aclose()
