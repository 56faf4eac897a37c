"""
Transcoder process supervision.

The transcoder is an external executable (a shell script wrapping FFmpeg by
default) that receives four positional arguments:

    $1 = video file path
    $2 = endpoint in "transport://ip:port" format (e.g. tcp://127.0.0.1:9601)
    $3 = video size (e.g. 480x270)
    $4 = video bit rate (e.g. 400k or 400000)

It is expected to listen on the endpoint's port and write a raw byte stream
to whoever connects. There is no ready signal; the port becoming connectable
is the only sign of life.
"""

import asyncio
import logging
import shlex
from typing import List, Optional

from errors import TranscoderError

logger = logging.getLogger(__name__)


class TranscoderSupervisor:
    """Owns the transcoder child process: spawn, stderr logging, terminate and reap."""

    def __init__(self, command: str, stop_timeout: float = 5.0):
        self.command = command
        self.stop_timeout = stop_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def build_command(self, source_path: str, endpoint: str, video_size: str, bit_rate: str) -> List[str]:
        return shlex.split(self.command) + [source_path, endpoint, video_size, bit_rate]

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def spawn(self, source_path: str, endpoint: str, video_size: str, bit_rate: str) -> asyncio.subprocess.Process:
        """Start the transcoder without waiting for it to become ready."""
        if self.process is not None:
            raise TranscoderError(
                f"Transcoder already running with PID {self.process.pid}")

        cmd = self.build_command(source_path, endpoint, video_size, bit_rate)
        logger.info(f"Transcoder command: {' '.join(cmd)}")

        try:
            # Own session so a terminal Ctrl-C only reaches the relay, which
            # then terminates the transcoder itself
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True
            )
        except (OSError, ValueError) as e:
            raise TranscoderError(f"Failed to start transcoder: {e}") from e

        logger.info(f"Transcoder started with PID: {self.process.pid}")
        self._stderr_task = asyncio.create_task(self._log_stderr(self.process))
        return self.process

    async def _log_stderr(self, process: asyncio.subprocess.Process):
        """Drain and log transcoder stderr"""
        if not process.stderr:
            return

        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break

                line_str = line.decode('utf-8', errors='ignore').strip()
                if line_str:
                    logger.debug(f"Transcoder [{process.pid}]: {line_str}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error reading transcoder stderr: {e}")

    async def terminate(self) -> Optional[int]:
        """
        Send SIGTERM and reap the transcoder, killing it if it does not exit
        within stop_timeout.

        Best-effort: errors are logged, never raised. Calling it again after
        the process has been reaped is a no-op that returns None.
        """
        process = self.process
        if process is None:
            return None
        self.process = None

        try:
            if process.returncode is None:
                logger.info(f"Sending SIGTERM to transcoder (PID {process.pid})...")
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

                logger.info("Waiting on transcoder to exit...")
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Transcoder didn't exit within {self.stop_timeout}s, killing it")
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
            else:
                await process.wait()
            logger.info(f"Transcoder exited with code {process.returncode}")
        except Exception as e:
            logger.error(f"Error terminating transcoder: {e}")

        if self._stderr_task:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"stderr logger ended with: {e}")
            self._stderr_task = None

        return process.returncode
