"""Throughput run orchestration: ping, download, simulated upload."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import replace
from typing import Callable, List, Optional
from urllib.parse import urlparse

from ..config import LatencyConfig, ThroughputConfig
from .download import DownloadRunner
from .errors import Cancelled, DiagnosticError, describe_error
from .latency import LatencyProber
from .models import MeasurementState, RunStatus, TestPhase, TestTarget
from .observable import StateHolder
from .sampler import SamplerEventKind

LOGGER = logging.getLogger(__name__)

PING_DONE_PCT = 5.0
DOWNLOAD_DONE_PCT = 50.0
UPLOAD_DONE_PCT = 100.0


def extract_host(url: Optional[str], fallback: str = "8.8.8.8") -> str:
    if not url:
        return fallback
    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None
    return host or fallback


class ThroughputOrchestrator:
    """
    Drives one throughput run at a time and publishes its MeasurementState.

    ``start_run`` while a run is RUNNING is dropped; the published state is left
    untouched. The upload figure is derived from the download rate, not measured.
    """

    def __init__(
        self,
        latency_prober: LatencyProber,
        downloads: DownloadRunner,
        throughput_config: Optional[ThroughputConfig] = None,
        latency_config: Optional[LatencyConfig] = None,
        target_provider: Optional[Callable[[], Optional[TestTarget]]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.latency_prober = latency_prober
        self.downloads = downloads
        self.throughput_config = throughput_config or ThroughputConfig()
        self.latency_config = latency_config or LatencyConfig()
        self.target_provider = target_provider
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.clock = clock
        self.state: StateHolder[MeasurementState] = StateHolder(MeasurementState())
        self._lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[Callable[[MeasurementState], None]] = []

    def add_completion_listener(self, listener: Callable[[MeasurementState], None]) -> None:
        self._listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self.state.value.status is RunStatus.RUNNING

    def start_run(self, target: Optional[TestTarget] = None) -> bool:
        """Start a run; returns False (and changes nothing) when one is already running."""
        with self._lock:
            if self.is_running:
                LOGGER.info("Throughput run already in progress; request dropped")
                return False
            chosen = target or (self.target_provider() if self.target_provider else None)
            if chosen is None:
                raise ValueError("No test target available for the throughput run")

            self.downloads.stop()
            cancel_event = threading.Event()
            self._cancel = cancel_event
            self.state.set(
                MeasurementState(status=RunStatus.RUNNING, phase=TestPhase.PING, target=chosen)
            )
            self._thread = threading.Thread(
                target=self._run,
                args=(chosen, cancel_event),
                name="throughput-run",
                daemon=True,
            )
            self._thread.start()
        LOGGER.info("Throughput run started against %s (%s)", chosen.name, chosen.download_url)
        return True

    def cancel_run(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
            self.downloads.stop()
            self.state.update(
                lambda s: replace(s, status=RunStatus.IDLE, phase=TestPhase.IDLE)
                if s.status is RunStatus.RUNNING
                else s
            )

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _publish(self, cancel_event: threading.Event, **changes) -> None:
        # the cancelled check runs under the state lock so a cancelled run never overwrites IDLE
        self.state.update(lambda s: s if cancel_event.is_set() else replace(s, **changes))
        if cancel_event.is_set():
            raise Cancelled()

    def _advance_progress(self, cancel_event: threading.Event, progress: float, **changes) -> None:
        self.state.update(
            lambda s: s if cancel_event.is_set() else replace(s, progress_pct=max(s.progress_pct, progress), **changes)
        )
        if cancel_event.is_set():
            raise Cancelled()

    def _run(self, target: TestTarget, cancel_event: threading.Event) -> None:
        try:
            self._ping_phase(target, cancel_event)
            self._download_phase(target, cancel_event)
            self._upload_phase(cancel_event)
            self._publish(
                cancel_event,
                status=RunStatus.DONE,
                phase=TestPhase.COMPLETED,
                progress_pct=UPLOAD_DONE_PCT,
            )
        except Cancelled:
            LOGGER.info("Throughput run against %s cancelled", target.name)
            return
        except Exception as exc:  # pylint: disable=broad-except
            if cancel_event.is_set():
                return
            message = describe_error(exc)
            if not isinstance(exc, DiagnosticError):
                LOGGER.exception("Throughput run failed unexpectedly")
            LOGGER.error("Throughput run against %s failed: %s", target.name, message)
            self.state.update(
                lambda s: s if cancel_event.is_set() else replace(s, status=RunStatus.ERROR, error=message)
            )
            self._notify()
            return

        final = self.state.value
        LOGGER.info(
            "Throughput run complete: ping %d ms, jitter %d ms, down %.2f Mbps, up %.2f Mbps (simulated)",
            final.latency_ms,
            final.jitter_ms,
            final.download_mbps,
            final.upload_mbps,
        )
        self._notify()

    def _ping_phase(self, target: TestTarget, cancel_event: threading.Event) -> None:
        host = extract_host(target.download_url, self.latency_config.fallback_host)
        result = self.latency_prober.probe(
            host,
            attempts=self.latency_config.attempts,
            timeout_ms=self.latency_config.timeout_ms,
            spacing_ms=self.latency_config.spacing_ms,
            should_stop=cancel_event.is_set,
        )
        self._publish(
            cancel_event,
            latency_ms=result.latency_ms,
            jitter_ms=result.jitter_ms,
            latency_synthetic=result.synthetic,
            progress_pct=PING_DONE_PCT,
        )

    def _download_phase(self, target: TestTarget, cancel_event: threading.Event) -> None:
        self._publish(cancel_event, phase=TestPhase.DOWNLOAD)
        task = self.downloads.start(target.download_url)
        span = DOWNLOAD_DONE_PCT - PING_DONE_PCT
        deadline = self.clock() + self.throughput_config.download_timeout_ms / 1000.0
        try:
            while True:
                if cancel_event.is_set():
                    raise Cancelled()
                remaining = deadline - self.clock()
                if remaining <= 0:
                    LOGGER.warning(
                        "Download did not finish within %d ms; continuing with last observed rate",
                        self.throughput_config.download_timeout_ms,
                    )
                    break
                event = task.next_event(timeout=min(remaining, 0.1))
                if event is None:
                    continue
                if event.kind is SamplerEventKind.PROGRESS:
                    self._advance_progress(
                        cancel_event,
                        PING_DONE_PCT + event.percent / 100.0 * span,
                        download_mbps=event.mbps,
                    )
                elif event.kind is SamplerEventKind.DONE:
                    self._advance_progress(cancel_event, DOWNLOAD_DONE_PCT, download_mbps=event.mbps)
                    LOGGER.info(
                        "Download finished: %.2f Mbps over %d bytes via %s",
                        event.mbps,
                        event.bytes_read,
                        task.strategy_used,
                    )
                    return
                else:
                    raise event.error
        finally:
            task.cancel()
        self._advance_progress(cancel_event, DOWNLOAD_DONE_PCT)

    def _upload_phase(self, cancel_event: threading.Event) -> None:
        self._publish(cancel_event, phase=TestPhase.UPLOAD)
        config = self.throughput_config
        download_mbps = self.state.value.download_mbps
        target_mbps = download_mbps * self.rng.uniform(config.upload_ratio_min, config.upload_ratio_max)
        steps = config.upload_steps
        span = UPLOAD_DONE_PCT - DOWNLOAD_DONE_PCT
        for step in range(1, steps + 1):
            self.sleep(config.upload_step_delay_ms / 1000.0)
            self._advance_progress(
                cancel_event,
                DOWNLOAD_DONE_PCT + step * span / steps,
                upload_mbps=target_mbps * step / steps,
            )
        self._publish(cancel_event, upload_mbps=target_mbps)

    def _notify(self) -> None:
        snapshot = self.state.value
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("Throughput completion listener failed: %s", exc)
