"""
Tests for the listen socket and the viewer client set
"""
import socket
import sys
import os
import time
import pytest
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from clients import ClientSet, Listener
from errors import ListenerError


def viewer_pair():
    """Return (relay_side, viewer_side) of a connected socket pair."""
    relay_side, viewer_side = socket.socketpair()
    relay_side.setblocking(False)
    return relay_side, viewer_side


def recv_exact(sock, size):
    data = b""
    while len(data) < size:
        part = sock.recv(size - len(data))
        if not part:
            break
        data += part
    return data


class TestClientSet:

    def test_broadcast_reaches_every_viewer(self):
        clients = ClientSet()
        pairs = [viewer_pair() for _ in range(3)]
        for relay_side, _ in pairs:
            clients.add(relay_side, ("127.0.0.1", 5000))

        chunk = bytes(range(256))
        assert clients.broadcast_and_prune(chunk) == 0
        for relay_side, viewer_side in pairs:
            assert recv_exact(viewer_side, 256) == chunk
            viewer_side.close()
            relay_side.close()
        assert all(v.bytes_sent == 256 for v in clients)

    def test_failed_viewer_is_removed_and_closed(self):
        removed = []
        clients = ClientSet(on_remove=lambda viewer, reason: removed.append(viewer))
        good = [viewer_pair() for _ in range(2)]
        for relay_side, _ in good:
            clients.add(relay_side)

        broken = Mock()
        broken.send.side_effect = BrokenPipeError("gone")
        clients.add(broken)

        chunk = b"\xaa" * 256
        assert clients.broadcast_and_prune(chunk) == 1

        assert len(clients) == 2
        assert broken not in clients
        broken.close.assert_called_once()
        assert len(removed) == 1 and removed[0].sock is broken
        assert clients.total_dropped == 1
        for relay_side, viewer_side in good:
            assert recv_exact(viewer_side, 256) == chunk
            relay_side.close()
            viewer_side.close()

    def test_short_write_counts_as_failure(self):
        clients = ClientSet()
        slow = Mock()
        slow.send.return_value = 100
        clients.add(slow)

        assert clients.broadcast_and_prune(b"x" * 256) == 1
        assert len(clients) == 0
        slow.close.assert_called_once()

    def test_viewer_closing_its_end_is_pruned(self):
        clients = ClientSet()
        (first_relay, first_viewer), (second_relay, second_viewer) = viewer_pair(), viewer_pair()
        clients.add(first_relay)
        clients.add(second_relay)

        second_viewer.close()
        assert clients.broadcast_and_prune(b"y" * 256) == 1

        assert len(clients) == 1
        assert first_relay in clients
        assert second_relay not in clients
        assert second_relay.fileno() == -1
        assert recv_exact(first_viewer, 256) == b"y" * 256
        first_relay.close()
        first_viewer.close()

    def test_removal_hook_errors_do_not_escape(self):
        def failing_hook(viewer, reason):
            raise RuntimeError("hook failed")

        clients = ClientSet(on_remove=failing_hook)
        broken = Mock()
        broken.send.side_effect = OSError("bad fd")
        clients.add(broken)
        assert clients.broadcast_and_prune(b"z") == 1

    def test_close_all(self):
        clients = ClientSet()
        socks = [Mock() for _ in range(3)]
        for sock in socks:
            clients.add(sock)

        assert clients.close_all() == 3
        assert len(clients) == 0
        for sock in socks:
            sock.close.assert_called_once()
        assert clients.close_all() == 0


class TestListener:

    def test_try_accept_returns_immediately_without_pending_viewer(self):
        listener = Listener(0, host="127.0.0.1")
        listener.open()
        try:
            start = time.monotonic()
            assert listener.try_accept() is None
            assert time.monotonic() - start < 0.1
        finally:
            listener.close()

    def test_accepts_pending_viewer(self):
        listener = Listener(0, host="127.0.0.1")
        listener.open()
        viewer = socket.create_connection(("127.0.0.1", listener.port))
        try:
            accepted = None
            for _ in range(50):
                accepted = listener.try_accept()
                if accepted:
                    break
                time.sleep(0.01)
            assert accepted is not None
            conn, addr = accepted
            assert conn.getblocking() is False
            assert addr[0] == "127.0.0.1"
            conn.close()
        finally:
            viewer.close()
            listener.close()

    def test_bind_failure_raises_listener_error(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            listener = Listener(blocker.getsockname()[1], host="127.0.0.1")
            with pytest.raises(ListenerError):
                listener.open()
            assert listener.sock is None
        finally:
            blocker.close()

    def test_close_is_idempotent(self):
        listener = Listener(0, host="127.0.0.1")
        listener.open()
        listener.close()
        listener.close()
        assert listener.sock is None
        assert listener.try_accept() is None
