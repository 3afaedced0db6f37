"""Shared fixtures: small settings, a recording scope and throwaway TCP servers."""

import socket
import threading
import time
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient

from profiler_load_demo import RetentionList, Settings, create_app


class RecordingScope:
    """Scope capability that remembers every label set it was asked to apply."""

    def __init__(self) -> None:
        self.entered: list[dict[str, str]] = []
        self.active: list[dict[str, str]] = []

    @contextmanager
    def __call__(self, labels: dict[str, str]):
        self.entered.append(dict(labels))
        self.active.append(labels)
        try:
            yield
        finally:
            self.active.pop()


class OneShotServer:
    """Accept a single connection on localhost, send ``reply`` and hold for ``linger`` seconds."""

    def __init__(self, reply: bytes = b"", linger: float = 0.0) -> None:
        self.reply = reply
        self.linger = linger
        self.received = b""
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(1)
        self._sock.settimeout(5)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self) -> None:
        try:
            conn, _ = self._sock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(5)
            while b"\r\n\r\n" not in self.received:
                chunk = conn.recv(1024)
                if not chunk:
                    break
                self.received += chunk
            if self.reply:
                conn.sendall(self.reply)
            time.sleep(self.linger)

    def start(self) -> "OneShotServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._thread.join(timeout=5)
        self._sock.close()


@pytest.fixture
def tcp_server():
    """Factory for one-shot servers; all are stopped at teardown."""
    servers: list[OneShotServer] = []

    def factory(reply: bytes = b"", linger: float = 0.0) -> OneShotServer:
        server = OneShotServer(reply, linger).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def settings() -> Settings:
    return Settings(
        slow_iterations=200_000,
        fast_iterations=20_000,
        memory_leak_mb=1,
        disk_chunk_count=8,
        disk_chunk_size=64 * 1024,
        disk_read_pause=0.0,
        network_host="127.0.0.1",
        network_connect_timeout=1.0,
        network_read_timeout=0.05,
        network_read_pause=0.0,
    )


@pytest.fixture
def scope() -> RecordingScope:
    return RecordingScope()


@pytest.fixture
def retention() -> RetentionList:
    return RetentionList()


@pytest.fixture
def client(settings, scope, retention):
    app = create_app(settings, scope=scope, retention=retention)
    with TestClient(app) as test_client:
        yield test_client
