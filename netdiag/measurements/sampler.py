"""Chunked transfer sampling with a moving-window bitrate estimate."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Iterator, List, Optional

from .errors import DiagnosticError, UnknownFailure
from .models import Sample
from .sources import ByteStream

LOGGER = logging.getLogger(__name__)

WINDOW_MS = 2000
WINDOW_MAX_SAMPLES = 10
MIN_CHUNK_SIZE = 16 * 1024
MAX_CHUNK_SIZE = 64 * 1024


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class SamplerEventKind(str, Enum):
    PROGRESS = "progress"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class SamplerEvent:
    kind: SamplerEventKind
    percent: float
    mbps: float
    bytes_read: int
    length_known: bool = True
    error: Optional[DiagnosticError] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is not SamplerEventKind.PROGRESS


class RateWindow:
    """Recent (bytes, time) observations; entries older than the window are evicted."""

    def __init__(self, window_ms: float = WINDOW_MS, max_samples: int = WINDOW_MAX_SAMPLES):
        self.window_ms = window_ms
        self.max_samples = max_samples
        self._samples: Deque[Sample] = deque()

    def add(self, cumulative_bytes: int, timestamp_ms: float) -> None:
        self._samples.append(Sample(cumulative_bytes, timestamp_ms))
        cutoff = timestamp_ms - self.window_ms
        while self._samples and self._samples[0].timestamp_ms < cutoff:
            self._samples.popleft()

    @property
    def samples(self) -> List[Sample]:
        return list(self._samples)

    def bitrate_mbps(self) -> float:
        recent = list(self._samples)[-self.max_samples:]
        if len(recent) < 2:
            return 0.0
        first, last = recent[0], recent[-1]
        seconds = (last.timestamp_ms - first.timestamp_ms) / 1000.0
        if seconds <= 0:
            return 0.0
        return (last.cumulative_bytes - first.cumulative_bytes) * 8 / seconds / 1_000_000


class TransferSampler:
    """
    Reads a byte stream in fixed-size chunks and yields throughput observations.

    The generator yields PROGRESS events, spaced by at least ``report_interval_ms``,
    followed by exactly one DONE or ERROR event. A cancelled run simply stops.
    """

    def __init__(
        self,
        chunk_size: int = MAX_CHUNK_SIZE,
        report_interval_ms: int = 250,
        max_duration_ms: int = 10000,
        clock: Callable[[], float] = monotonic_ms,
    ):
        if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be within {MIN_CHUNK_SIZE}..{MAX_CHUNK_SIZE} bytes")
        if report_interval_ms <= 0 or max_duration_ms <= 0:
            raise ValueError("report_interval_ms and max_duration_ms must be positive")
        self.chunk_size = chunk_size
        self.report_interval_ms = report_interval_ms
        self.max_duration_ms = max_duration_ms
        self.clock = clock

    def sample(
        self,
        stream: ByteStream,
        cancel_event: Optional[threading.Event] = None,
        on_first_byte: Optional[Callable[[], None]] = None,
    ) -> Iterator[SamplerEvent]:
        total = stream.content_length
        length_known = bool(total)
        window = RateWindow()
        bytes_read = 0
        started = self.clock()
        last_emit = started
        last_percent = 0.0
        window.add(0, started)

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    LOGGER.debug("Sampler cancelled after %d bytes", bytes_read)
                    return
                chunk = stream.read(self.chunk_size)
                now = self.clock()
                if not chunk:
                    break
                if bytes_read == 0 and on_first_byte is not None:
                    on_first_byte()
                bytes_read += len(chunk)
                window.add(bytes_read, now)

                elapsed = now - started
                if elapsed >= self.max_duration_ms:
                    LOGGER.debug("Sampler duration budget reached after %d bytes", bytes_read)
                    break

                if now - last_emit >= self.report_interval_ms:
                    last_emit = now
                    if length_known:
                        percent = min(100.0, bytes_read * 100.0 / total)
                    else:
                        percent = min(100.0, elapsed * 100.0 / self.max_duration_ms)
                    last_percent = max(last_percent, percent)
                    yield SamplerEvent(
                        SamplerEventKind.PROGRESS,
                        percent=last_percent,
                        mbps=window.bitrate_mbps(),
                        bytes_read=bytes_read,
                        length_known=length_known,
                    )
        except DiagnosticError as exc:
            if cancel_event is not None and cancel_event.is_set():
                return
            LOGGER.warning("Transfer failed after %d bytes: %s", bytes_read, exc)
            yield self._error(exc, last_percent, window, bytes_read, length_known)
            return
        except Exception as exc:  # pylint: disable=broad-except
            if cancel_event is not None and cancel_event.is_set():
                return
            LOGGER.warning("Transfer failed after %d bytes: %s", bytes_read, exc, exc_info=True)
            error = UnknownFailure(str(exc), cause=exc)
            yield self._error(error, last_percent, window, bytes_read, length_known)
            return

        if cancel_event is not None and cancel_event.is_set():
            return

        seconds = max((self.clock() - started) / 1000.0, 0.001)
        final_mbps = bytes_read * 8 / seconds / 1_000_000
        yield SamplerEvent(
            SamplerEventKind.DONE,
            percent=100.0,
            mbps=final_mbps,
            bytes_read=bytes_read,
            length_known=length_known,
        )

    @staticmethod
    def _error(error, percent, window, bytes_read, length_known) -> SamplerEvent:
        return SamplerEvent(
            SamplerEventKind.ERROR,
            percent=percent,
            mbps=window.bitrate_mbps(),
            bytes_read=bytes_read,
            length_known=length_known,
            error=error,
        )
