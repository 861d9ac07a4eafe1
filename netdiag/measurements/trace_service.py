"""Owns the route-trace run and its published line log."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional

from .errors import describe_error
from .models import RunStatus, TraceState
from .observable import StateHolder
from .traceroute import RouteTracer

LOGGER = logging.getLogger(__name__)


class TraceService:
    """
    Runs one trace at a time. Starting a trace cancels the previous one; lines
    produced by a superseded run are dropped rather than appended.
    """

    def __init__(self, tracer: RouteTracer, default_max_hops: int = 30):
        self.tracer = tracer
        self.default_max_hops = default_max_hops
        self.state: StateHolder[TraceState] = StateHolder(TraceState())
        self._lock = threading.Lock()
        self._generation = 0
        self._cancel: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[Callable[[TraceState], None]] = []

    def add_completion_listener(self, listener: Callable[[TraceState], None]) -> None:
        self._listeners.append(listener)

    def start_trace(self, host: str, max_hops: Optional[int] = None) -> int:
        """Start a trace run and return its generation number."""
        hops = max_hops or self.default_max_hops
        if hops < 1:
            raise ValueError("max_hops must be at least 1")
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
            self._generation += 1
            generation = self._generation
            cancel_event = threading.Event()
            self._cancel = cancel_event
            self.state.set(TraceState(status=RunStatus.RUNNING, host=host))
            thread = threading.Thread(
                target=self._run,
                args=(generation, host, hops, cancel_event),
                name=f"trace-{generation}",
                daemon=True,
            )
            self._thread = thread
        LOGGER.info("Starting trace #%d to %s", generation, host)
        thread.start()
        return generation

    def cancel_trace(self) -> None:
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()
            self._generation += 1
            current = self.state.value
            if current.status is RunStatus.RUNNING:
                self.state.set(replace(current, status=RunStatus.IDLE))

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _publish(self, generation: int, transform: Callable[[TraceState], TraceState]) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self.state.update(transform)
            return True

    def _run(self, generation: int, host: str, max_hops: int, cancel_event: threading.Event) -> None:
        try:
            for event in self.tracer.trace(host, max_hops, cancel_event):
                appended = self._publish(
                    generation,
                    lambda s, e=event: replace(s, lines=s.lines + (e.line,), method=e.method),
                )
                if not appended:
                    return
        except Exception as exc:  # pylint: disable=broad-except
            message = describe_error(exc)
            LOGGER.warning("Trace #%d to %s failed: %s", generation, host, message)
            if self._publish(generation, lambda s: replace(s, status=RunStatus.ERROR, error=message)):
                self._notify()
            return

        if cancel_event.is_set():
            return
        if self._publish(generation, lambda s: replace(s, status=RunStatus.DONE)):
            LOGGER.info("Trace #%d to %s finished with %d lines", generation, host, len(self.state.value.lines))
            self._notify()

    def _notify(self) -> None:
        snapshot = self.state.value
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("Trace completion listener failed: %s", exc)
