"""Shared fakes and fixtures for the netdiag test suite."""

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

from netdiag.measurements.latency import LatencyResult
from netdiag.measurements.models import TestTarget


class FakeClock:
    """Millisecond clock advanced explicitly by the fakes that use it."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeStream:
    """Byte stream returning scripted chunks; each read advances the clock by ``step_ms``."""

    def __init__(self, chunks, content_length=None, clock=None, step_ms=0.0, error_at=None, error=None):
        self.chunks = list(chunks)
        self.content_length = content_length
        self.clock = clock
        self.step_ms = step_ms
        self.error_at = error_at
        self.error = error
        self.reads = 0
        self.closed = False

    def read(self, max_bytes):
        if self.clock is not None:
            self.clock.advance(self.step_ms)
        if self.error_at is not None and self.reads == self.error_at:
            raise self.error
        self.reads += 1
        if not self.chunks:
            return b""
        return self.chunks.pop(0)[:max_bytes]

    def close(self):
        self.closed = True


class EndlessStream:
    """Always has another chunk ready."""

    content_length = None

    def __init__(self, chunk_size, clock, step_ms):
        self.chunk = b"x" * chunk_size
        self.clock = clock
        self.step_ms = step_ms

    def read(self, max_bytes):
        self.clock.advance(self.step_ms)
        return self.chunk[:max_bytes]

    def close(self):
        pass


class BlockingStream:
    """Blocks in ``read`` until closed, like a stalled socket."""

    content_length = None

    def __init__(self):
        self.closed_event = threading.Event()

    def read(self, max_bytes):
        self.closed_event.wait(10)
        return b""

    def close(self):
        self.closed_event.set()


class FakeSource:
    def __init__(self, name, stream=None, open_error=None):
        self.name = name
        self.stream = stream
        self.open_error = open_error
        self.opened = []

    def open(self, url):
        self.opened.append(url)
        if self.open_error is not None:
            raise self.open_error
        return self.stream


class FakeReachability:
    """Returns scripted round trips; an Exception entry is raised instead."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def check(self, host, timeout_ms):
        self.calls.append(host)
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return result


class FakeLatencyProber:
    def __init__(self, result=None, gate=None):
        self.result = result or LatencyResult(latency_ms=12, jitter_ms=3, samples=[12.0])
        self.gate = gate
        self.hosts = []

    def probe(self, host, attempts=10, timeout_ms=1000, spacing_ms=100, should_stop=None):
        self.hosts.append(host)
        if self.gate is not None:
            self.gate.wait(10)
        return self.result


class FakeTask:
    """Download task handing out scripted sampler events."""

    def __init__(self, events):
        self.events = list(events)
        self.cancelled = False
        self.strategy_used = "fake"

    def next_event(self, timeout=None):
        if self.events:
            return self.events.pop(0)
        time.sleep(min(timeout or 0.01, 0.01))
        return None

    def cancel(self):
        self.cancelled = True


class FakeDownloads:
    def __init__(self, events=()):
        self.events = list(events)
        self.urls = []
        self.tasks = []
        self.stops = 0

    def start(self, url):
        self.urls.append(url)
        task = FakeTask(self.events)
        self.tasks.append(task)
        return task

    def stop(self):
        self.stops += 1


def no_sleep(seconds):
    return None


@pytest.fixture
def target():
    return TestTarget(
        name="Local",
        country="BR",
        city="Sao Paulo",
        download_url="http://speed.example.net/100MB.bin",
    )


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "paths:\n"
        "  data_dir: data\n"
        "  logs_dir: logs\n"
        "targets:\n"
        "  - name: Local\n"
        "    country: BR\n"
        "    city: Sao Paulo\n"
        "    download_url: http://speed.example.net/100MB.bin\n"
        "  - name: Backup\n"
        "    country: FR\n"
        "    city: Paris\n"
        "    download_url: http://backup.example.net/10MB.bin\n"
        "selected_target: Local\n",
        encoding="utf-8",
    )
    return path


class _ThrottledHandler(BaseHTTPRequestHandler):
    """
    Serves ``/data?bytes=N&rate=R`` paced to R bytes per second.

    ``/stall`` sends headers and then no body; ``/stall-once`` does that for its
    first request only and serves like ``/data`` afterwards. Anything else is a 404.
    """

    def do_GET(self):  # noqa: N802
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)
        total = int(query.get("bytes", ["1000000"])[0])
        if parsed.path == "/stall" or (parsed.path == "/stall-once" and self._first_stall()):
            self._stall(total)
            return
        if parsed.path not in ("/data", "/stall-once"):
            self.send_error(404)
            return
        rate = float(query.get("rate", ["0"])[0])

        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(total))
        self.end_headers()

        chunk = b"\0" * 16384
        sent = 0
        started = time.monotonic()
        try:
            while sent < total:
                piece = chunk[: min(len(chunk), total - sent)]
                self.wfile.write(piece)
                sent += len(piece)
                if rate > 0:
                    due = started + sent / rate
                    delay = due - time.monotonic()
                    if delay > 0:
                        time.sleep(delay)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def _first_stall(self):
        with self.server.stall_lock:
            self.server.stalls += 1
            return self.server.stalls == 1

    def _stall(self, total):
        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(total))
        self.end_headers()
        self.wfile.flush()
        self.server.release.wait(30)

    def log_message(self, format, *args):  # noqa: A002
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _ThrottledHandler)
    server.daemon_threads = True
    server.release = threading.Event()
    server.stall_lock = threading.Lock()
    server.stalls = 0
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.release.set()
        server.shutdown()
        server.server_close()
