"""Latency and jitter measurement with a synthetic fallback."""

from __future__ import annotations

import logging
import math
import platform
import random
import re
import socket
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

TIME_PATTERN = re.compile(r"time\s*[=<]\s*(\d+(?:\.\d+)?)\s*ms", re.IGNORECASE)

SYNTHETIC_LATENCY_RANGE = (20, 100)
SYNTHETIC_JITTER_RANGE = (5, 20)


class ReachabilityProbe(Protocol):
    def check(self, host: str, timeout_ms: int) -> Optional[float]:
        """Round trip in milliseconds, or None when the host did not answer."""


def parse_ping_time_ms(output: str) -> Optional[float]:
    """Extract the first ``time=12.3 ms`` / ``time<1ms`` value from ping output."""
    if not output:
        return None
    match = TIME_PATTERN.search(output)
    if not match:
        return None
    return float(match.group(1))


def build_ping_command(host: str, timeout_ms: int, ttl: Optional[int] = None, system: Optional[str] = None) -> List[str]:
    """Build a single-echo ping command line for the current platform."""
    system = system or platform.system()
    if system == "Windows":
        cmd = ["ping", "-n", "1", "-w", str(timeout_ms)]
        if ttl is not None:
            cmd += ["-i", str(ttl)]
    elif system == "Linux":
        cmd = ["ping", "-n", "-c", "1", "-W", str(max(1, math.ceil(timeout_ms / 1000)))]
        if ttl is not None:
            cmd += ["-t", str(ttl)]
    else:
        # macOS/BSD: -m sets the hop limit, -t is an overall timeout in seconds
        cmd = ["ping", "-n", "-c", "1", "-t", str(max(1, math.ceil(timeout_ms / 1000)))]
        if ttl is not None:
            cmd += ["-m", str(ttl)]
    return cmd + [host]


class PingReachability:
    """Reachability through the system ping command."""

    def __init__(self, system: Optional[str] = None):
        self.system = system or platform.system()

    def check(self, host: str, timeout_ms: int) -> Optional[float]:
        cmd = build_ping_command(host, timeout_ms, system=self.system)
        started = time.perf_counter()
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000.0 + 0.5,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return None
        except OSError as exc:
            LOGGER.debug("ping unavailable: %s", exc)
            return None
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if result.returncode != 0:
            return None
        parsed = parse_ping_time_ms(result.stdout)
        return parsed if parsed is not None else elapsed_ms


class TcpReachability:
    """Reachability by TCP connect time, for hosts where ICMP is not permitted."""

    def __init__(self, ports: Sequence[int] = (443, 80)):
        self.ports = tuple(ports)

    def check(self, host: str, timeout_ms: int) -> Optional[float]:
        for port in self.ports:
            started = time.perf_counter()
            try:
                with socket.create_connection((host, port), timeout=timeout_ms / 1000.0):
                    return (time.perf_counter() - started) * 1000.0
            except OSError:
                continue
        return None


class ChainedReachability:
    """First probe that answers wins."""

    def __init__(self, probes: Sequence[ReachabilityProbe]):
        self.probes = list(probes)

    def check(self, host: str, timeout_ms: int) -> Optional[float]:
        for probe in self.probes:
            rtt = probe.check(host, timeout_ms)
            if rtt is not None:
                return rtt
        return None


@dataclass(frozen=True)
class LatencyResult:
    latency_ms: int
    jitter_ms: int
    samples: List[float] = field(default_factory=list)
    synthetic: bool = False


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_round_trips(samples: Sequence[float]) -> LatencyResult:
    """Mean latency and mean absolute successive difference of the samples."""
    if not samples:
        raise ValueError("summarize_round_trips needs at least one sample")
    avg = sum(samples) / len(samples)
    if len(samples) > 1:
        diffs = [abs(samples[i + 1] - samples[i]) for i in range(len(samples) - 1)]
        jitter = sum(diffs) / len(diffs)
    else:
        jitter = 0.0
    return LatencyResult(
        latency_ms=round_half_up(avg),
        jitter_ms=round_half_up(jitter),
        samples=list(samples),
    )


class LatencyProber:
    def __init__(
        self,
        reachability: ReachabilityProbe,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.reachability = reachability
        self.sleep = sleep
        self.rng = rng or random.Random()

    def probe(
        self,
        host: str,
        attempts: int = 10,
        timeout_ms: int = 1000,
        spacing_ms: int = 100,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> LatencyResult:
        """Never raises: total unreachability yields a synthetic estimate."""
        samples: List[float] = []
        for attempt in range(attempts):
            if should_stop is not None and should_stop():
                break
            try:
                rtt = self.reachability.check(host, timeout_ms)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.debug("Reachability check %d to %s failed: %s", attempt + 1, host, exc)
                rtt = None
            if rtt is not None:
                samples.append(rtt)
            self.sleep(spacing_ms / 1000.0)

        if not samples:
            result = LatencyResult(
                latency_ms=self.rng.randint(*SYNTHETIC_LATENCY_RANGE),
                jitter_ms=self.rng.randint(*SYNTHETIC_JITTER_RANGE),
                synthetic=True,
            )
            LOGGER.warning(
                "No reachability probe to %s succeeded; using synthetic latency %d ms / jitter %d ms",
                host,
                result.latency_ms,
                result.jitter_ms,
            )
            return result

        result = summarize_round_trips(samples)
        LOGGER.info(
            "Latency to %s: %d ms, jitter %d ms (%d/%d probes answered)",
            host,
            result.latency_ms,
            result.jitter_ms,
            len(samples),
            attempts,
        )
        return result
