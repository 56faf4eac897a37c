import asyncio
import logging
from typing import Callable, Optional

from cancellation import CancellationToken
from errors import RelayCancelled, UpstreamClosed, UpstreamError

logger = logging.getLogger(__name__)


class UpstreamReader:
    """TCP connection to the transcoder's output port, read in fixed-size chunks."""

    def __init__(self, host: str, port: int,
                 retry_interval: float = 0.5,
                 connect_timeout: float = 2.0,
                 poll_interval: float = 0.5):
        self.host = host
        self.port = port
        self.retry_interval = retry_interval
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.bytes_read = 0

    @property
    def connected(self) -> bool:
        return self.reader is not None

    async def connect(self, token: CancellationToken,
                      process_alive: Optional[Callable[[], bool]] = None):
        """
        Connect to the transcoder, retrying every retry_interval until its
        port accepts connections.

        The transcoder needs time to start listening and gives no ready
        signal, so polling connect is the only option.

        Raises:
            RelayCancelled: the token was cancelled before a connection was made
            UpstreamError: the transcoder exited before its port opened
        """
        attempts = 0
        while True:
            token.raise_if_cancelled()

            if process_alive is not None and not process_alive():
                raise UpstreamError(
                    f"Transcoder exited before {self.host}:{self.port} became connectable")

            attempts += 1
            try:
                self.reader, self.writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port),
                    timeout=self.connect_timeout)
                logger.info(
                    f"Connected to transcoder at {self.host}:{self.port} after {attempts} attempt(s)")
                return
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Transcoder not ready at {self.host}:{self.port}: {e}")

            if await token.wait(self.retry_interval):
                raise RelayCancelled(token.reason or "cancelled")

    async def read_chunk(self, size: int, token: CancellationToken) -> bytes:
        """
        Read exactly `size` bytes, looping over short reads.

        A partial chunk is never returned: the call either yields `size`
        bytes or raises.

        Raises:
            RelayCancelled: the token was cancelled mid-read
            UpstreamClosed: the transcoder closed the connection mid-chunk
            UpstreamError: the socket reported an error
        """
        if self.reader is None:
            raise UpstreamError("Not connected to transcoder")

        buffer = bytearray()
        while len(buffer) < size:
            token.raise_if_cancelled()

            # The poll timeout is told apart from a socket TimeoutError
            # (ETIMEDOUT), which is an OSError raised by the read itself.
            read = asyncio.ensure_future(self.reader.read(size - len(buffer)))
            try:
                done, _ = await asyncio.wait({read}, timeout=self.poll_interval)
            except asyncio.CancelledError:
                read.cancel()
                raise
            if not done:
                # No data yet; re-check the token
                read.cancel()
                try:
                    await read
                except asyncio.CancelledError:
                    pass
                continue

            try:
                data = read.result()
            except OSError as e:
                raise UpstreamError(f"Transcoder socket read failed: {e}") from e

            if not data:
                raise UpstreamClosed(
                    f"Transcoder closed the connection ({len(buffer)}/{size} bytes of chunk read)")
            buffer.extend(data)

        self.bytes_read += size
        return bytes(buffer)

    async def close(self):
        """Shut down and close the connection. No-op when not connected."""
        writer = self.writer
        self.reader = None
        self.writer = None
        if writer is None:
            return

        try:
            if writer.can_write_eof():
                writer.write_eof()
        except OSError:
            pass
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error closing transcoder connection: {e}")
