"""
Read-only status API for a running relay, served on the relay's own event loop.
"""

import asyncio
import contextlib
import logging
import socket
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query

from config import settings, VERSION
from models import HealthCheck, RelayState

logger = logging.getLogger(__name__)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def create_app(relay) -> FastAPI:
    """Build the status app for one relay instance."""
    app = FastAPI(
        title="stream-relay",
        version=VERSION,
        description="Status of a live stream relay",
    )

    @app.get("/health", dependencies=[Depends(verify_token)])
    async def health_check():
        """Health check with relay state"""
        status = "healthy" if relay.state == RelayState.RUNNING else relay.state.value
        return HealthCheck(
            status=status,
            version=VERSION,
            state=relay.state,
            uptime_seconds=relay.uptime,
            active_clients=len(relay.clients),
        )

    @app.get("/stats", dependencies=[Depends(verify_token)])
    async def get_stats():
        """Relay counters"""
        return relay.get_stats()

    @app.get("/clients", dependencies=[Depends(verify_token)])
    async def list_clients():
        """Connected viewers"""
        viewers = [viewer.info() for viewer in relay.clients]
        return {"clients": viewers, "count": len(viewers)}

    @app.get("/stream", dependencies=[Depends(verify_token)])
    async def get_stream():
        """Descriptor registered with the portal"""
        return relay.descriptor.to_wire()

    return app


class StatusServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the relay."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self):
        pass


async def start_status_server(relay, host: str, port: int) -> tuple:
    """
    Start serving the status API; returns (server, task).

    The socket is bound here so a port clash raises OSError to the caller
    instead of exiting from inside uvicorn's startup.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise

    config = uvicorn.Config(
        create_app(relay),
        log_level=settings.LOG_LEVEL.lower(),
        lifespan="off",
    )
    server = StatusServer(config)
    task = asyncio.create_task(server.serve(sockets=[sock]))
    logger.info(f"Status API listening on {host}:{port}")
    return server, task


async def stop_status_server(server: StatusServer, task: asyncio.Task):
    server.should_exit = True
    try:
        await asyncio.wait_for(task, timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Status API did not stop in time, cancelling it")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    except Exception as e:
        logger.error(f"Status API stopped with error: {e}")
