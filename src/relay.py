"""
Relay loop.

Composes the transcoder supervisor, the upstream reader, the listener and the
client set on a single event loop:

    INITIALIZING -> RUNNING -> SHUTTING_DOWN -> TERMINATED
    INITIALIZING -> TERMINATED                      (startup failure)

While running, each cycle accepts at most one pending viewer, sleeps
cycle_sleep so the transcoder can produce data, then reads and broadcasts
chunks until tick_budget has elapsed. A new viewer therefore waits at most
one sleep plus one tick budget (plus one chunk read of overshoot) before it
is picked up, without a separate accept thread.
"""

import asyncio
import logging
import time
from typing import Optional

from cancellation import CancellationToken
from clients import ClientSet, Listener, Viewer
from directory import DirectoryClient
from errors import RelayCancelled, RelayError, UpstreamClosed, UpstreamError
from models import EventType, RelayConfig, RelayEvent, RelayState, RelayStats, StopReason
from transcoder import TranscoderSupervisor
from upstream import UpstreamReader

logger = logging.getLogger(__name__)


class Relay:
    def __init__(self, config: RelayConfig, directory: DirectoryClient,
                 token: Optional[CancellationToken] = None,
                 event_manager=None,
                 supervisor: Optional[TranscoderSupervisor] = None,
                 upstream: Optional[UpstreamReader] = None,
                 listener: Optional[Listener] = None):
        self.config = config
        self.descriptor = config.descriptor
        self.directory = directory
        self.token = token or CancellationToken()
        self.event_manager = event_manager

        self.supervisor = supervisor or TranscoderSupervisor(
            config.transcoder_command, stop_timeout=config.transcoder_stop_timeout)
        self.upstream = upstream or UpstreamReader(
            config.transcoder_host, config.transcoder_port,
            retry_interval=config.connect_retry_interval,
            connect_timeout=config.connect_timeout,
            poll_interval=config.read_poll_interval)
        self.listener = listener or Listener(
            config.listen_port, backlog=config.listen_backlog)
        self.clients = ClientSet(on_remove=self._on_client_removed)

        self.state = RelayState.INITIALIZING
        self.stop_reason: Optional[StopReason] = None
        self.created_at = time.time()
        self.chunks_relayed = 0
        self.bytes_relayed = 0
        self._registered = False

    def _set_state(self, state: RelayState):
        if state != self.state:
            logger.debug(f"Relay state {self.state.value} -> {state.value}")
            self.state = state

    def _emit(self, event_type: EventType, data: Optional[dict] = None):
        if not self.event_manager:
            return
        try:
            self.event_manager.emit_nowait(RelayEvent(
                event_type=event_type,
                stream_name=self.descriptor.name,
                data=data or {}
            ))
        except Exception as e:
            logger.error(f"Error emitting event: {e}")

    def _on_client_removed(self, viewer: Viewer, reason: str):
        self._emit(EventType.CLIENT_DISCONNECTED, {
            "address": viewer.address,
            "bytes_sent": viewer.bytes_sent,
            "reason": reason,
            "client_count": len(self.clients)
        })

    async def initialize(self):
        """
        Find the portal, open the listen socket, start the transcoder, connect
        to it and register the stream, in that order.

        Raises:
            RelayCancelled: stop requested while waiting for the transcoder
            RelayError: any startup step failed
        """
        await self.directory.check()

        self.listener.open()

        logger.info("Starting and connecting to transcoder...")
        await self.supervisor.spawn(
            self.config.source_path,
            self.config.transcoder_endpoint,
            self.config.video_size,
            self.config.bit_rate)

        await self.upstream.connect(self.token, process_alive=self.supervisor.is_running)

        await self.directory.new_stream(self.descriptor)
        self._registered = True

        self._set_state(RelayState.RUNNING)
        self._emit(EventType.STREAM_STARTED, {
            "endpoint": self.descriptor.endpoint,
            "transcoder_pid": self.supervisor.pid
        })

    def accept_pending(self) -> Optional[Viewer]:
        """Add one waiting viewer to the client set, if any."""
        accepted = self.listener.try_accept()
        if accepted is None:
            return None

        sock, address = accepted
        viewer = self.clients.add(sock, address)
        self._emit(EventType.CLIENT_CONNECTED, {
            "address": viewer.address,
            "client_count": len(self.clients)
        })
        return viewer

    def _stop(self, reason: StopReason) -> StopReason:
        self.stop_reason = reason
        self._set_state(RelayState.SHUTTING_DOWN)
        return reason

    async def run(self) -> StopReason:
        """Accept/broadcast until cancelled or the upstream read fails."""
        loop = asyncio.get_running_loop()
        chunk_size = self.config.chunk_size
        tick_budget = self.config.tick_budget

        logger.info("Relay ready")

        while True:
            self.accept_pending()

            # Wait a bit so there's some data to send
            if await self.token.wait(self.config.cycle_sleep):
                return self._stop(StopReason.CANCELLED)

            tick_start = loop.time()
            while True:
                try:
                    chunk = await self.upstream.read_chunk(chunk_size, self.token)
                except RelayCancelled:
                    return self._stop(StopReason.CANCELLED)
                except UpstreamClosed as e:
                    logger.warning(f"Transcoder stream ended: {e}")
                    return self._stop(StopReason.UPSTREAM_CLOSED)
                except UpstreamError as e:
                    logger.error(f"Transcoder socket read failed: {e}")
                    return self._stop(StopReason.UPSTREAM_ERROR)

                self.clients.broadcast_and_prune(chunk)
                self.chunks_relayed += 1
                self.bytes_relayed += len(chunk)

                # Go back to accepting once a tick has passed
                if loop.time() - tick_start > tick_budget:
                    break

    async def shutdown(self):
        """
        Release everything the relay holds. Each step runs even if an earlier
        one fails, and every step is a no-op when its resource is already
        gone, so calling this twice is safe.
        """
        if self.state == RelayState.RUNNING:
            self._set_state(RelayState.SHUTTING_DOWN)

        try:
            self.clients.close_all()
        except Exception as e:
            logger.error(f"Error closing viewer connections: {e}")

        try:
            self.listener.close()
        except Exception as e:
            logger.error(f"Error closing listen socket: {e}")

        try:
            await self.upstream.close()
        except Exception as e:
            logger.error(f"Error closing transcoder connection: {e}")

        if self._registered:
            self._registered = False
            try:
                await self.directory.close_stream(self.descriptor)
            except Exception as e:
                logger.error(f"Failed to deregister stream '{self.descriptor.name}': {e}")

        try:
            await self.supervisor.terminate()
        except Exception as e:
            logger.error(f"Error terminating transcoder: {e}")

        self._set_state(RelayState.TERMINATED)

    async def serve(self) -> int:
        """Initialize, run and clean up. Returns the process exit code."""
        exit_code = 0
        try:
            try:
                await self.initialize()
            except RelayCancelled:
                logger.info("Exiting early...")
            except RelayError as e:
                logger.error(f"Relay initialization failed: {e}")
                self._emit(EventType.STREAM_FAILED, {"error": str(e)})
                exit_code = 1
            else:
                reason = await self.run()
                logger.info(f"Relay stopping: {reason.value}")
                self._emit(EventType.STREAM_STOPPED, {
                    "reason": reason.value,
                    "chunks_relayed": self.chunks_relayed,
                    "bytes_relayed": self.bytes_relayed
                })
        finally:
            await self.shutdown()
        return exit_code

    @property
    def uptime(self) -> float:
        return time.time() - self.created_at

    def get_stats(self) -> RelayStats:
        return RelayStats(
            state=self.state,
            stream_name=self.descriptor.name,
            endpoint=self.descriptor.endpoint,
            active_clients=len(self.clients),
            total_clients_accepted=self.clients.total_added,
            total_clients_dropped=self.clients.total_dropped,
            chunks_relayed=self.chunks_relayed,
            bytes_relayed=self.bytes_relayed,
            uptime_seconds=self.uptime,
            transcoder_pid=self.supervisor.pid,
            stop_reason=self.stop_reason
        )
