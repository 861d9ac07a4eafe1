"""Download task: runs the sampler on a worker thread and exposes an event channel."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, List, Optional, Sequence

from .errors import DiagnosticError, ProbeTimeout, UnknownFailure
from .sampler import SamplerEvent, SamplerEventKind, TransferSampler
from .sources import ByteStream, ByteStreamSource

LOGGER = logging.getLogger(__name__)


class DownloadTask:
    """
    One download measurement against a URL.

    Strategies are tried in order. A strategy is abandoned for the next one when it
    fails to open, fails before its first byte, or delivers no byte within
    ``watchdog_ms``. Once bytes have flowed, its outcome is final.

    The event queue carries at most one terminal event and nothing after ``cancel()``.
    """

    def __init__(
        self,
        url: str,
        sources: Sequence[ByteStreamSource],
        sampler: TransferSampler,
        watchdog_ms: int = 4000,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        if not sources:
            raise ValueError("DownloadTask needs at least one byte-stream source")
        self.url = url
        self.sources = list(sources)
        self.sampler = sampler
        self.watchdog_ms = watchdog_ms
        self._timer_factory = timer_factory
        self._events: "queue.Queue[SamplerEvent]" = queue.Queue()
        self._cancel = threading.Event()
        self._terminal_sent = False
        self._emit_lock = threading.Lock()
        self._stream_lock = threading.Lock()
        self._stream: Optional[ByteStream] = None
        self._thread: Optional[threading.Thread] = None
        self.strategy_used: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def finished(self) -> bool:
        with self._emit_lock:
            return self._terminal_sent

    def start(self) -> "DownloadTask":
        self._thread = threading.Thread(target=self._run, name="download-task", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Stop the transfer; unblocks a pending read by closing the stream."""
        self._cancel.set()
        self._close_stream()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def next_event(self, timeout: Optional[float] = None) -> Optional[SamplerEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def _emit(self, event: SamplerEvent) -> bool:
        with self._emit_lock:
            if self._terminal_sent or self._cancel.is_set():
                return False
            if event.is_terminal:
                self._terminal_sent = True
            self._events.put(event)
            return True

    def _set_stream(self, stream: Optional[ByteStream]) -> None:
        with self._stream_lock:
            self._stream = stream
        if stream is not None and self._cancel.is_set():
            self._close_stream()

    def _close_stream(self) -> None:
        with self._stream_lock:
            stream = self._stream
        if stream is not None:
            stream.close()

    def _run(self) -> None:
        try:
            self._run_strategies()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Download task crashed: %s", exc)
            self._emit(
                SamplerEvent(
                    SamplerEventKind.ERROR, percent=0.0, mbps=0.0, bytes_read=0,
                    error=UnknownFailure(str(exc), cause=exc),
                )
            )
        finally:
            self._close_stream()

    def _run_strategies(self) -> None:
        last_error: Optional[DiagnosticError] = None
        for index, source in enumerate(self.sources):
            if self._cancel.is_set():
                return
            is_last = index == len(self.sources) - 1
            try:
                stream = source.open(self.url)
            except DiagnosticError as exc:
                LOGGER.warning("Strategy %s could not open %s: %s", source.name, self.url, exc)
                last_error = exc
                continue

            self._set_stream(stream)
            self.strategy_used = source.name
            outcome = self._sample_with_watchdog(source.name, stream, is_last)
            self._set_stream(None)
            stream.close()
            if outcome is None:
                return
            last_error = outcome

        if last_error is not None:
            self._emit(
                SamplerEvent(SamplerEventKind.ERROR, percent=0.0, mbps=0.0, bytes_read=0, error=last_error)
            )

    def _sample_with_watchdog(self, name: str, stream: ByteStream, is_last: bool) -> Optional[DiagnosticError]:
        """Returns None when the run reached a final outcome, else the error to fall back on."""
        first_byte = threading.Event()
        stalled = threading.Event()

        def on_stall() -> None:
            if not first_byte.is_set():
                LOGGER.warning("Strategy %s stalled for %d ms without data", name, self.watchdog_ms)
                stalled.set()
                stream.close()

        watchdog = None
        if not is_last:
            watchdog = self._timer_factory(self.watchdog_ms / 1000.0, on_stall)
            watchdog.daemon = True
            watchdog.start()

        try:
            for event in self.sampler.sample(stream, self._cancel, on_first_byte=first_byte.set):
                if stalled.is_set() and event.bytes_read == 0:
                    break
                if event.kind is SamplerEventKind.ERROR and event.bytes_read == 0 and not is_last:
                    LOGGER.info("Strategy %s failed before data (%s); trying next", name, event.error)
                    return event.error
                self._emit(event)
                if event.is_terminal:
                    return None
        finally:
            if watchdog is not None:
                watchdog.cancel()

        if stalled.is_set() and not first_byte.is_set():
            return ProbeTimeout(f"no data from {name} within {self.watchdog_ms} ms")
        return None


class DownloadRunner:
    """Keeps at most one download task active at a time."""

    def __init__(
        self,
        sources_factory: Callable[[], List[ByteStreamSource]],
        sampler: TransferSampler,
        watchdog_ms: int = 4000,
    ):
        self._sources_factory = sources_factory
        self.sampler = sampler
        self.watchdog_ms = watchdog_ms
        self._lock = threading.Lock()
        self._active: Optional[DownloadTask] = None
        self._sources: Optional[List[ByteStreamSource]] = None

    @property
    def active(self) -> Optional[DownloadTask]:
        with self._lock:
            return self._active

    def start(self, url: str) -> DownloadTask:
        with self._lock:
            if self._active is not None:
                LOGGER.info("Cancelling in-flight download of %s", self._active.url)
                self._active.cancel()
            if self._sources is None:
                self._sources = self._sources_factory()
            task = DownloadTask(url, self._sources, self.sampler, watchdog_ms=self.watchdog_ms)
            self._active = task
        return task.start()

    def stop(self) -> None:
        with self._lock:
            task, self._active = self._active, None
        if task is not None:
            task.cancel()
