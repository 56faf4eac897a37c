"""
Viewer side of the relay: the non-blocking listen socket and the set of
connected viewer sockets that every chunk is broadcast to.
"""

import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from errors import ListenerError
from models import ViewerInfo

logger = logging.getLogger(__name__)


class Listener:
    """Non-blocking TCP listen socket; accepting never suspends the relay loop."""

    def __init__(self, port: int, host: str = "", backlog: int = 10):
        self.host = host
        self.requested_port = port
        self.backlog = backlog
        self.sock: Optional[socket.socket] = None

    @property
    def port(self) -> Optional[int]:
        """Bound port (differs from the requested one when binding port 0)."""
        if self.sock is None:
            return None
        return self.sock.getsockname()[1]

    def open(self):
        if self.sock is not None:
            raise ListenerError("Listen socket already open")

        logger.info(f"Setting up listen socket on port {self.requested_port}...")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.requested_port))
            sock.listen(self.backlog)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise ListenerError(
                f"Failed to open listen socket on port {self.requested_port}: {e}") from e

        self.sock = sock
        logger.info(f"Listening for viewers on port {self.port}")

    def try_accept(self):
        """Return (socket, address) for a pending viewer, or None if there is none."""
        if self.sock is None:
            return None

        try:
            conn, addr = self.sock.accept()
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            # e.g. ECONNABORTED or EMFILE; try again next cycle
            logger.warning(f"Accept failed: {e}")
            return None

        conn.setblocking(False)
        return conn, addr

    def close(self):
        sock = self.sock
        self.sock = None
        if sock is None:
            return

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Listening sockets are not connected; shutdown may fail harmlessly
            pass
        sock.close()
        logger.info("Listen socket closed")


def _format_address(address) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address) if address else "unknown"


@dataclass(eq=False)
class Viewer:
    """One connected viewer socket."""
    sock: socket.socket
    address: str = "unknown"
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    bytes_sent: int = 0

    def close(self):
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"Error closing viewer {self.address}: {e}")

    def info(self) -> ViewerInfo:
        return ViewerInfo(address=self.address, connected_at=self.connected_at,
                          bytes_sent=self.bytes_sent)


class ClientSet:
    """
    Connected viewers.

    A viewer whose write fails in any way, including a short write, is removed
    and closed during the same broadcast pass and never retried: a stalled
    viewer must not hold up delivery to the others.
    """

    def __init__(self, on_remove: Optional[Callable[[Viewer, str], None]] = None):
        self._viewers: List[Viewer] = []
        self.on_remove = on_remove
        self.total_added = 0
        self.total_dropped = 0

    def __len__(self) -> int:
        return len(self._viewers)

    def __iter__(self) -> Iterator[Viewer]:
        return iter(list(self._viewers))

    def __contains__(self, sock) -> bool:
        return any(v.sock is sock for v in self._viewers)

    def add(self, sock: socket.socket, address=None) -> Viewer:
        viewer = Viewer(sock=sock, address=_format_address(address))
        self._viewers.append(viewer)
        self.total_added += 1
        logger.info(f"Accepted new viewer {viewer.address} ({len(self._viewers)} connected)")
        return viewer

    def broadcast_and_prune(self, chunk: bytes) -> int:
        """Write `chunk` to every viewer; drop and close the ones that fail.

        Returns the number of viewers removed.
        """
        failed = []
        for viewer in self._viewers:
            try:
                sent = viewer.sock.send(chunk)
            except OSError as e:
                failed.append((viewer, str(e) or type(e).__name__))
                continue

            if sent < len(chunk):
                failed.append((viewer, f"short write ({sent}/{len(chunk)} bytes)"))
            else:
                viewer.bytes_sent += sent

        if not failed:
            return 0

        dropped = {id(viewer) for viewer, _ in failed}
        self._viewers = [v for v in self._viewers if id(v) not in dropped]
        for viewer, reason in failed:
            viewer.close()
            self.total_dropped += 1
            logger.info(f"Removing viewer {viewer.address} from client list: {reason}")
            if self.on_remove:
                try:
                    self.on_remove(viewer, reason)
                except Exception as e:
                    logger.error(f"Error in viewer removal hook: {e}")

        return len(failed)

    def close_all(self) -> int:
        """Close and remove every viewer. Returns how many were closed."""
        viewers = self._viewers
        self._viewers = []
        for viewer in viewers:
            viewer.close()
        if viewers:
            logger.info(f"Closed {len(viewers)} viewer connection(s)")
        return len(viewers)
