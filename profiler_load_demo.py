#!/usr/bin/env python3
"""
Profiler Load Demo
Synthetic CPU, memory, disk and network load for continuous-profiling dashboards
Each endpoint burns one resource in a recognizable shape
"""
import logging
import os
import socket
import tempfile
import time
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass
from threading import Lock
from typing import IO, Callable, ContextManager, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
import uvicorn

logger = logging.getLogger("profiler_load_demo")

SERVER_ID = socket.gethostname()
MB = 1024 * 1024
PAGE_SIZE = 4096
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

ScopeWrapper = Callable[[Dict[str, str]], ContextManager]


def null_scope(labels: Dict[str, str]) -> ContextManager:
    """Labeled scope that tags nothing (profiling disabled)"""
    return nullcontext()


# ==============================
# CONFIGURATION
# ==============================

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    flag = value.strip().lower()
    if flag in ("1", "true", "yes", "on"):
        return True
    if flag in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    slow_iterations: int = 20_000_000
    fast_iterations: int = 5_000_000
    memory_leak_mb: int = 100
    disk_chunk_count: int = 100
    disk_chunk_size: int = MB
    disk_read_pause: float = 0.01
    network_host: str = "example.org"
    network_port: int = 80
    network_connect_timeout: float = 5.0
    network_read_timeout: float = 0.3
    network_read_pause: float = 0.2
    pyroscope_enabled: bool = False
    pyroscope_application_name: str = "my-python-app"
    pyroscope_server_address: str = "http://pyroscope-server:4040"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults"""
        d = cls()
        return cls(
            host=os.getenv("HOST", d.host),
            port=int(os.getenv("PORT", d.port)),
            slow_iterations=int(os.getenv("SLOW_ITERATIONS", d.slow_iterations)),
            fast_iterations=int(os.getenv("FAST_ITERATIONS", d.fast_iterations)),
            memory_leak_mb=int(os.getenv("MEMORY_LEAK_MB", d.memory_leak_mb)),
            disk_chunk_count=int(os.getenv("DISK_CHUNK_COUNT", d.disk_chunk_count)),
            disk_chunk_size=int(os.getenv("DISK_CHUNK_SIZE", d.disk_chunk_size)),
            disk_read_pause=float(os.getenv("DISK_READ_PAUSE", d.disk_read_pause)),
            network_host=os.getenv("NETWORK_HOST", d.network_host),
            network_port=int(os.getenv("NETWORK_PORT", d.network_port)),
            network_connect_timeout=float(os.getenv("NETWORK_CONNECT_TIMEOUT", d.network_connect_timeout)),
            network_read_timeout=float(os.getenv("NETWORK_READ_TIMEOUT", d.network_read_timeout)),
            network_read_pause=float(os.getenv("NETWORK_READ_PAUSE", d.network_read_pause)),
            pyroscope_enabled=_env_bool("PYROSCOPE_ENABLED", d.pyroscope_enabled),
            pyroscope_application_name=os.getenv("PYROSCOPE_APPLICATION_NAME", d.pyroscope_application_name),
            pyroscope_server_address=os.getenv("PYROSCOPE_SERVER_ADDRESS", d.pyroscope_server_address),
            log_level=os.getenv("LOG_LEVEL", d.log_level).upper(),
        )


# ==============================
# ERRORS
# ==============================

class LoadSimulationError(Exception):
    """A simulation could not set up or drive its resource; reported as HTTP 500"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TempFileError(LoadSimulationError):
    pass


class DiskWriteError(LoadSimulationError):
    pass


class DiskSeekError(LoadSimulationError):
    pass


class NetworkDialError(LoadSimulationError):
    pass


# ==============================
# HELPER FUNCTIONS
# ==============================

def format_duration(seconds: float) -> str:
    """Render elapsed time as e.g. '850.125ms' or '1.204s'"""
    if seconds < 1:
        return f"{seconds * 1000:.3f}ms"
    return f"{seconds:.3f}s"


def burn_cpu(iterations: int) -> None:
    """Busy loop: sample the monotonic clock and throw the value away"""
    for _ in range(iterations):
        time.monotonic_ns()


class RetentionList:
    """
    Buffers kept alive for the life of the owner to simulate a leak.

    Appends are serialized with a lock; nothing is ever removed.
    """

    def __init__(self):
        self._buffers: List[bytearray] = []
        self._lock = Lock()

    def append(self, buffer: bytearray) -> int:
        with self._lock:
            self._buffers.append(buffer)
            return len(self._buffers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)

    @property
    def retained_bytes(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._buffers)


def allocate_leak(retention: RetentionList, size_bytes: int = 100 * MB) -> bytearray:
    """Allocate a buffer, commit its pages and hand it to the retention list"""
    block = bytearray(size_bytes)
    # one write per page so the allocation is resident, not just reserved
    for i in range(0, len(block), PAGE_SIZE):
        block[i] = 1
    retention.append(block)
    return block


@dataclass
class DiskResult:
    bytes_read: int
    elapsed: float


def _open_temp_file() -> Tuple[IO[bytes], str]:
    fd, path = tempfile.mkstemp(prefix="pyrotest")
    return os.fdopen(fd, "w+b"), path


def simulate_disk_io(
    chunk_count: int = 100,
    chunk_size: int = MB,
    read_pause: float = 0.01,
    open_temp: Callable[[], Tuple[IO[bytes], str]] = _open_temp_file,
) -> DiskResult:
    """Write chunk_count x chunk_size bytes to a temp file, then read them back slowly"""
    try:
        f, path = open_temp()
    except OSError as exc:
        raise TempFileError("Failed to create temp file") from exc

    try:
        data = bytearray(chunk_size)
        for _ in range(chunk_count):
            try:
                f.write(data)
            except OSError as exc:
                raise DiskWriteError("Disk write error") from exc

        try:
            f.seek(0)
        except OSError as exc:
            raise DiskSeekError("Seek error") from exc

        total = 0
        start = time.perf_counter()
        while True:
            try:
                n = f.readinto(data)
            except OSError as exc:
                logger.warning("Disk read stopped early: %s", exc)
                break
            if not n:
                break
            total += n
            time.sleep(read_pause)  # slow storage
        return DiskResult(bytes_read=total, elapsed=time.perf_counter() - start)
    finally:
        try:
            f.close()
        finally:
            os.remove(path)


def simulate_network_call(
    host: str = "example.org",
    port: int = 80,
    connect_timeout: float = 5.0,
    read_timeout: float = 0.3,
    read_pause: float = 0.2,
) -> float:
    """
    Fetch '/' from host over a raw TCP connection, consuming the reply slowly.

    Only the dial can fail. Once connected, any read error, timeout or end of
    stream ends the loop and counts as completion. Returns elapsed seconds.
    """
    start = time.perf_counter()
    try:
        sock = socket.create_connection((host, port), timeout=connect_timeout)
    except OSError as exc:
        raise NetworkDialError("Network dial error") from exc

    request = f"GET / HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n"
    with sock:
        try:
            sock.sendall(request.encode("ascii"))
            while True:
                sock.settimeout(read_timeout)
                if not sock.recv(4096):
                    break
                time.sleep(read_pause)  # slow consumer
        except OSError as exc:
            # timeout and remote close are deliberately not told apart
            logger.debug("Network read loop ended: %s", exc)
    return time.perf_counter() - start


# ==============================
# PROFILER
# ==============================

def start_profiler(settings: Settings) -> ScopeWrapper:
    """Configure the Pyroscope agent and return its tag wrapper"""
    import pyroscope

    pyroscope.configure(
        application_name=settings.pyroscope_application_name,
        server_address=settings.pyroscope_server_address,
        tags={"hostname": SERVER_ID},
        oncpu=True,
        gil_only=False,
        enable_logging=True,
    )
    logger.info("Pyroscope profiling enabled, sending to %s", settings.pyroscope_server_address)
    return pyroscope.tag_wrapper


# ==============================
# APPLICATION
# ==============================

def create_app(
    settings: Optional[Settings] = None,
    scope: Optional[ScopeWrapper] = None,
    retention: Optional[RetentionList] = None,
) -> FastAPI:
    """
    Build the demo app; scope wraps every handler in a labeled profiling scope.

    Settings left as None are read from the environment at startup, and a
    scope left as None becomes the Pyroscope tag wrapper when profiling is
    enabled, or a no-op otherwise.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.settings is None:
            app.state.settings = Settings.from_env()
        if app.state.scope is None:
            cfg = app.state.settings
            app.state.scope = start_profiler(cfg) if cfg.pyroscope_enabled else null_scope
        yield

    app = FastAPI(title="Profiler Load Demo", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.scope = scope
    app.state.retention = retention if retention is not None else RetentionList()

    @app.exception_handler(LoadSimulationError)
    async def load_simulation_error(request: Request, exc: LoadSimulationError):
        logger.warning("%s failed: %s", request.url.path, exc.message)
        return PlainTextResponse(exc.message + "\n", status_code=500)

    @app.get("/slow", response_class=PlainTextResponse)
    def slow():
        """CPU burn - heavy"""
        with app.state.scope({"handler": "slow"}):
            logger.info("Handling slow request...")
            burn_cpu(app.state.settings.slow_iterations)
            return "Slow request handled!\n"

    @app.get("/fast", response_class=PlainTextResponse)
    def fast():
        """CPU burn - light"""
        with app.state.scope({"handler": "fast"}):
            logger.info("Handling fast request...")
            burn_cpu(app.state.settings.fast_iterations)
            return "Fast request handled!\n"

    @app.get("/memory", response_class=PlainTextResponse)
    def memory():
        """Allocate a buffer that is never released"""
        with app.state.scope({"handler": "memory"}):
            logger.info("Handling memory leak request...")
            size_mb = app.state.settings.memory_leak_mb
            allocate_leak(app.state.retention, size_mb * MB)
            return f"Memory leak allocated {size_mb}MB!\n"

    @app.get("/disk", response_class=PlainTextResponse)
    def disk():
        """Write a temp file, then read it back with a pause per chunk"""
        with app.state.scope({"handler": "disk"}):
            logger.info("Handling slow disk request...")
            cfg = app.state.settings
            result = simulate_disk_io(cfg.disk_chunk_count, cfg.disk_chunk_size, cfg.disk_read_pause)
            return f"Disk read {result.bytes_read} bytes in {format_duration(result.elapsed)}!\n"

    @app.get("/network", response_class=PlainTextResponse)
    def network():
        """Slowly consume an HTTP reply from a remote host"""
        with app.state.scope({"handler": "network"}):
            logger.info("Handling slow network request...")
            cfg = app.state.settings
            elapsed = simulate_network_call(
                cfg.network_host,
                cfg.network_port,
                cfg.network_connect_timeout,
                cfg.network_read_timeout,
                cfg.network_read_pause,
            )
            return f"Network call to {cfg.network_host} finished in {format_duration(elapsed)}\n"

    return app


app = create_app()


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    app.state.settings = settings
    logger.info("Server started on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
