"""Byte-stream sources used by the download measurement (HTTP via requests)."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Dict, Iterator, List, Optional, Protocol

import requests

from ..config import ThroughputConfig
from .errors import ConnectionFailure, DiagnosticError, ProbeTimeout, ProtocolFailure, UnknownFailure

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "netdiag/1.0 (+throughput)"


class ByteStream(Protocol):
    content_length: Optional[int]

    def read(self, max_bytes: int) -> bytes:
        """Return up to ``max_bytes``; an empty result means end of stream."""

    def close(self) -> None:
        ...


class ByteStreamSource(Protocol):
    name: str

    def open(self, url: str) -> ByteStream:
        ...


def classify_request_error(exc: BaseException) -> DiagnosticError:
    """Map a requests/urllib3 exception onto the diagnostic taxonomy."""
    if isinstance(exc, DiagnosticError):
        return exc
    if isinstance(exc, requests.exceptions.Timeout):
        return ProbeTimeout(str(exc), cause=exc)
    if isinstance(exc, (requests.exceptions.HTTPError, requests.exceptions.ChunkedEncodingError,
                        requests.exceptions.ContentDecodingError, requests.exceptions.InvalidURL,
                        requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema)):
        return ProtocolFailure(str(exc), cause=exc)
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionError, OSError)):
        return ConnectionFailure(str(exc), cause=exc)
    return UnknownFailure(str(exc), cause=exc)


class HttpByteStream:
    """Wraps a streamed ``requests.Response``; ``close`` may be called from another thread."""

    def __init__(self, response: requests.Response):
        self._response = response
        self._closed = threading.Event()
        self._chunks: Optional[Iterator[bytes]] = None
        length = response.headers.get("Content-Length")
        try:
            parsed = int(length) if length is not None else None
        except ValueError:
            parsed = None
        self.content_length = parsed if parsed and parsed > 0 else None

    def read(self, max_bytes: int) -> bytes:
        if self._closed.is_set():
            return b""
        if self._chunks is None:
            self._chunks = self._response.iter_content(chunk_size=max_bytes)
        try:
            return next(self._chunks, b"")
        except Exception as exc:  # pylint: disable=broad-except
            if self._closed.is_set():
                return b""
            raise classify_request_error(exc) from exc

    def close(self) -> None:
        """Returns at once; a read blocked on another thread wakes with end of stream."""
        if self._closed.is_set():
            return
        self._closed.set()
        sock = _underlying_socket(self._response)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                LOGGER.debug("Socket already shut down: %s", exc)
        # response.close() waits on the reader's buffer lock
        threading.Thread(target=self._release, name="stream-close", daemon=True).start()

    def _release(self) -> None:
        try:
            self._response.close()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug("Error closing response stream: %s", exc)


def _underlying_socket(response: requests.Response) -> Optional[socket.socket]:
    raw = response.raw
    connection = getattr(raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if isinstance(sock, socket.socket):
        return sock
    # http.client response -> BufferedReader -> SocketIO
    fp = getattr(getattr(raw, "_fp", None), "fp", None)
    sock = getattr(getattr(fp, "raw", None), "_sock", None)
    if isinstance(sock, socket.socket):
        return sock
    return None


class HttpStreamSource:
    """Streams a URL with requests; ``pooled`` reuses a Session between runs."""

    def __init__(
        self,
        name: str,
        connect_timeout_s: float = 10.0,
        read_timeout_s: float = 20.0,
        pooled: bool = True,
        extra_headers: Optional[Dict[str, str]] = None,
    ):
        self.name = name
        self.timeout = (connect_timeout_s, read_timeout_s)
        self.headers = {"User-Agent": DEFAULT_USER_AGENT, **(extra_headers or {})}
        self._session = requests.Session() if pooled else None

    def open(self, url: str) -> HttpByteStream:
        LOGGER.debug("Opening %s stream for %s", self.name, url)
        try:
            if self._session is not None:
                response = self._session.get(url, stream=True, timeout=self.timeout, headers=self.headers)
            else:
                response = requests.get(url, stream=True, timeout=self.timeout, headers=self.headers)
        except Exception as exc:  # pylint: disable=broad-except
            raise classify_request_error(exc) from exc

        if not response.ok:
            response.close()
            raise ProtocolFailure(f"HTTP {response.status_code}")
        return HttpByteStream(response)


def build_sources(config: ThroughputConfig) -> List[HttpStreamSource]:
    """Instantiate the configured download strategies in fallback order."""
    sources = []
    # a chunk read never outlives the first-byte watchdog
    read_timeout_s = min(config.read_timeout_s, config.watchdog_ms / 1000.0)
    for strategy in config.strategies:
        if strategy == "session":
            sources.append(
                HttpStreamSource(
                    "session",
                    connect_timeout_s=config.connect_timeout_s,
                    read_timeout_s=read_timeout_s,
                    pooled=True,
                )
            )
        elif strategy == "direct":
            sources.append(
                HttpStreamSource(
                    "direct",
                    connect_timeout_s=config.connect_timeout_s,
                    read_timeout_s=read_timeout_s,
                    pooled=False,
                    extra_headers={"Accept-Encoding": "identity", "Connection": "close"},
                )
            )
        else:
            raise ValueError(f"Unknown throughput strategy {strategy!r}")
    if not sources:
        raise ValueError("At least one throughput strategy must be configured")
    return sources
