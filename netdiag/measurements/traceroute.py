"""Hop discovery with tiered fallbacks: TTL-limited ping, TCP connect, simulated."""

from __future__ import annotations

import logging
import random
import re
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generator, Iterator, List, Optional, Protocol, Sequence

from .errors import DiagnosticError, HostUnresolvable, TierUnavailable
from .latency import build_ping_command
from .models import HopMethod, HopResult

LOGGER = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(
    r"\bfrom\s+(?:(?P<name>\S+)\s+\((?P<paren>[0-9a-fA-F.:]+)\)|(?P<bare>[0-9a-fA-F.:]*[0-9a-fA-F]))",
    re.IGNORECASE,
)
TIME_PATTERN = re.compile(r"time\s*[=<]\s*(\d+(?:\.\d+)?)\s*ms", re.IGNORECASE)
EXCEEDED_PATTERN = re.compile(r"time to live exceeded|ttl expired|time exceeded", re.IGNORECASE)
REPLY_PATTERN = re.compile(r"\bttl=\d+|\bbytes from\b", re.IGNORECASE)
NO_ANSWER_PATTERN = re.compile(
    r"request timed out|request timeout|100(?:\.0)?% packet loss|\b0 (?:packets )?received|destination host unreachable",
    re.IGNORECASE,
)
PING_BANNER_PATTERN = re.compile(r"^PING\s|^Pinging\s|packets transmitted|Packets: Sent", re.IGNORECASE | re.MULTILINE)

PRIVILEGE_NOTICE = "Full route tracing requires elevated privileges; showing simulated hops."


class ProbeKind(str, Enum):
    REPLY = "reply"            # echo reply
    HOP = "hop"                # an intermediate router answered (TTL exceeded / unreachable)
    NO_ANSWER = "no-answer"    # recognisable ping output without any answer
    UNRECOGNISED = "unrecognised"


@dataclass(frozen=True)
class ParsedProbe:
    kind: ProbeKind
    address: Optional[str] = None
    rtt_ms: Optional[float] = None


@dataclass(frozen=True)
class ProbeOutput:
    text: str
    elapsed_ms: float
    timed_out: bool = False


@dataclass(frozen=True)
class TraceEvent:
    line: str
    method: HopMethod
    hop: Optional[HopResult] = None


def parse_ttl_probe_output(output: str) -> ParsedProbe:
    """Classify one hop-limited ping run and extract the responder and round trip.

    Handles Linux iputils, macOS/BSD and Windows output::

        From 10.0.0.1 icmp_seq=1 Time to live exceeded
        92 bytes from 10.0.0.1: Time to live exceeded
        Reply from 10.0.0.1: TTL expired in transit.
        64 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=12.3 ms
        Reply from 8.8.8.8: bytes=32 time=15ms TTL=117
    """
    if not output or not output.strip():
        return ParsedProbe(ProbeKind.UNRECOGNISED)

    address = None
    match = ADDRESS_PATTERN.search(output)
    if match:
        address = match.group("paren") or match.group("bare")

    time_match = TIME_PATTERN.search(output)
    rtt = float(time_match.group(1)) if time_match else None

    if address and EXCEEDED_PATTERN.search(output):
        return ParsedProbe(ProbeKind.HOP, address, rtt)
    if address and REPLY_PATTERN.search(output):
        return ParsedProbe(ProbeKind.REPLY, address, rtt)
    if address:
        # e.g. "From 10.0.0.1 icmp_seq=1 Destination Host Unreachable"
        return ParsedProbe(ProbeKind.HOP, address, rtt)
    if NO_ANSWER_PATTERN.search(output) or PING_BANNER_PATTERN.search(output):
        return ParsedProbe(ProbeKind.NO_ANSWER)
    return ParsedProbe(ProbeKind.UNRECOGNISED)


def resolve_host(host: str) -> str:
    """Resolve ``host`` to a numeric address; raises HostUnresolvable."""
    cleaned = (host or "").strip()
    if not cleaned:
        raise HostUnresolvable("empty host")
    try:
        infos = socket.getaddrinfo(cleaned, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as exc:
        raise HostUnresolvable(cleaned, cause=exc) from exc
    ipv4 = [info[4][0] for info in infos if info[0] == socket.AF_INET]
    if ipv4:
        return ipv4[0]
    if infos:
        return infos[0][4][0]
    raise HostUnresolvable(cleaned)


class TtlProbe(Protocol):
    def probe(self, address: str, ttl: int, timeout_ms: int) -> ProbeOutput:
        ...


class SystemTtlProbe:
    """Hop-limited echo through the unprivileged system ping binary."""

    def __init__(self, system: Optional[str] = None):
        self.system = system

    def probe(self, address: str, ttl: int, timeout_ms: int) -> ProbeOutput:
        cmd = build_ping_command(address, timeout_ms, ttl=ttl, system=self.system)
        started = time.perf_counter()
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout_ms / 1000.0 + 0.5,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout if isinstance(exc.stdout, str) else ""
            return ProbeOutput(partial or "", (time.perf_counter() - started) * 1000.0, timed_out=True)
        except (FileNotFoundError, PermissionError) as exc:
            raise TierUnavailable(f"ping binary not usable: {exc}", cause=exc) from exc
        elapsed = (time.perf_counter() - started) * 1000.0
        return ProbeOutput((completed.stdout or "") + (completed.stderr or ""), elapsed)


class TcpConnector(Protocol):
    def connect(self, address: str, port: int, timeout_ms: int, ttl: Optional[int] = None) -> Optional[float]:
        ...


class SocketTcpConnector:
    """TCP connect timing; ``ttl`` limits the SYN's hop count where the OS allows it."""

    def connect(self, address: str, port: int, timeout_ms: int, ttl: Optional[int] = None) -> Optional[float]:
        family = socket.AF_INET6 if ":" in address else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout_ms / 1000.0)
            if ttl is not None:
                self._apply_ttl(sock, family, ttl)
            started = time.perf_counter()
            sock.connect((address, port))
            return (time.perf_counter() - started) * 1000.0
        except OSError:
            return None
        finally:
            sock.close()

    @staticmethod
    def _apply_ttl(sock: socket.socket, family: int, ttl: int) -> None:
        try:
            if family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, ttl)
            else:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)
        except (OSError, AttributeError) as exc:
            LOGGER.debug("Hop limit not supported on this socket: %s", exc)


class ProbeBudget:
    """Wall-clock allowance shared by the probing tiers of one trace."""

    def __init__(self, total_ms: float, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.deadline = clock() + total_ms / 1000.0

    def remaining_ms(self) -> float:
        return max(0.0, (self.deadline - self.clock()) * 1000.0)

    def timeout_for(self, timeout_ms: int) -> int:
        """The probe timeout to use now; 0 once the budget is spent."""
        return int(min(timeout_ms, self.remaining_ms()))


def _probe_timeout(budget: Optional[ProbeBudget], timeout_ms: int) -> int:
    return timeout_ms if budget is None else budget.timeout_for(timeout_ms)


HopRun = Generator[TraceEvent, None, bool]


class HopStrategy:
    """One tier of the tracer. ``run`` yields events and returns True on a structured result."""

    method: HopMethod

    def run(
        self,
        host: str,
        address: str,
        max_hops: int,
        cancel_event: threading.Event,
        budget: Optional[ProbeBudget] = None,
    ) -> HopRun:
        raise NotImplementedError


def _event(hop: HopResult) -> TraceEvent:
    return TraceEvent(hop.format_line(), hop.method, hop)


class TtlProbeStrategy(HopStrategy):
    method = HopMethod.TTL_PROBE

    def __init__(self, probe: TtlProbe, timeout_ms: int = 1000, hop_delay_ms: int = 50):
        self.probe = probe
        self.timeout_ms = timeout_ms
        self.hop_delay_ms = hop_delay_ms

    def run(
        self,
        host: str,
        address: str,
        max_hops: int,
        cancel_event: threading.Event,
        budget: Optional[ProbeBudget] = None,
    ) -> HopRun:
        answered = False
        for ttl in range(1, max_hops + 1):
            if cancel_event.is_set():
                return answered
            timeout_ms = _probe_timeout(budget, self.timeout_ms)
            if timeout_ms <= 0:
                LOGGER.info("Probe budget spent at ttl %d", ttl)
                return answered
            output = self.probe.probe(address, ttl, timeout_ms)
            parsed = parse_ttl_probe_output(output.text)
            if parsed.kind is ProbeKind.UNRECOGNISED and not output.timed_out:
                if ttl == 1:
                    first_line = output.text.strip().splitlines()[0] if output.text.strip() else "no output"
                    raise TierUnavailable(first_line)
                LOGGER.debug("Unrecognised ping output at ttl %d: %r", ttl, output.text[:120])

            if parsed.address:
                answered = True
                rtt = parsed.rtt_ms if parsed.rtt_ms is not None else output.elapsed_ms
                reached = parsed.kind is ProbeKind.REPLY and parsed.address == address
                hop = HopResult(ttl, parsed.address, rtt, self.method, reached=reached)
            else:
                hop = HopResult(ttl, None, None, self.method)
            yield _event(hop)

            if hop.reached:
                return True
            if cancel_event.wait(self.hop_delay_ms / 1000.0):
                return answered
        return answered


class TcpProbeStrategy(HopStrategy):
    method = HopMethod.TCP_PROBE

    def __init__(
        self,
        connector: TcpConnector,
        ports: Sequence[int] = (80, 443, 22, 21, 25, 110, 143),
        max_hops: int = 10,
        timeout_ms: int = 1000,
        hop_delay_ms: int = 100,
    ):
        self.connector = connector
        self.ports = tuple(ports)
        self.max_hops = max_hops
        self.timeout_ms = timeout_ms
        self.hop_delay_ms = hop_delay_ms

    def run(
        self,
        host: str,
        address: str,
        max_hops: int,
        cancel_event: threading.Event,
        budget: Optional[ProbeBudget] = None,
    ) -> HopRun:
        for hop_index in range(1, min(max_hops, self.max_hops) + 1):
            for port in self.ports:
                if cancel_event.is_set():
                    return False
                timeout_ms = _probe_timeout(budget, self.timeout_ms)
                if timeout_ms <= 0:
                    LOGGER.info("Probe budget spent at hop %d", hop_index)
                    return False
                rtt = self.connector.connect(address, port, timeout_ms, ttl=hop_index)
                if rtt is not None:
                    yield _event(HopResult(hop_index, address, rtt, self.method, port=port, reached=True))
                    return True
            yield _event(HopResult(hop_index, None, None, self.method, label="no response"))
            if cancel_event.wait(self.hop_delay_ms / 1000.0):
                return False
        return False


class SimulatedStrategy(HopStrategy):
    """Last resort: clearly labelled synthetic hops."""

    method = HopMethod.SIMULATED

    def __init__(self, hops: int = 5, delay_ms: int = 200, rng: Optional[random.Random] = None):
        self.hops = hops
        self.delay_ms = delay_ms
        self.rng = rng or random.Random()

    def run(
        self,
        host: str,
        address: str,
        max_hops: int,
        cancel_event: threading.Event,
        budget: Optional[ProbeBudget] = None,
    ) -> HopRun:
        yield TraceEvent(PRIVILEGE_NOTICE, self.method)
        count = max(1, min(self.hops, max_hops))
        rtt = 0.0
        for hop_index in range(1, count + 1):
            if cancel_event.wait(self.delay_ms / 1000.0):
                return True
            rtt += self.rng.uniform(2.0, 15.0)
            if hop_index == count:
                label, hop_address = "destination reached", address
            elif hop_index == 1:
                label, hop_address = "local gateway", None
            else:
                label, hop_address = "intermediate hop", None
            yield _event(
                HopResult(
                    hop_index,
                    hop_address,
                    round(rtt, 1),
                    self.method,
                    label=f"[simulated] {label}",
                    reached=hop_index == count,
                )
            )
        return True


class RouteTracer:
    """
    Runs the tiers in order; the first tier with a structured result wins the run.

    The probing tiers of one trace share max_hops x probe_timeout_ms of wall-clock
    time. Once it is spent they stop and the run falls through to the next tier.
    """

    def __init__(
        self,
        strategies: Sequence[HopStrategy],
        resolver: Callable[[str], str] = resolve_host,
        probe_timeout_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not strategies:
            raise ValueError("RouteTracer needs at least one strategy")
        self.strategies = list(strategies)
        self.resolver = resolver
        self.probe_timeout_ms = probe_timeout_ms
        self.clock = clock

    def trace(
        self,
        host: str,
        max_hops: int = 30,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[TraceEvent]:
        if max_hops < 1:
            raise ValueError("max_hops must be at least 1")
        cancel_event = cancel_event or threading.Event()
        address = self.resolver(host)
        LOGGER.info("Tracing route to %s (%s), max %d hops", host, address, max_hops)
        budget = ProbeBudget(max_hops * self.probe_timeout_ms, clock=self.clock)

        for strategy in self.strategies:
            if cancel_event.is_set():
                return
            try:
                answered = yield from strategy.run(host, address, max_hops, cancel_event, budget=budget)
            except TierUnavailable as exc:
                LOGGER.info("Tier %s unavailable: %s", strategy.method.value, exc)
                continue
            except (DiagnosticError, OSError) as exc:
                LOGGER.warning("Tier %s failed: %s", strategy.method.value, exc)
                continue
            if cancel_event.is_set():
                return
            if answered:
                LOGGER.info("Route to %s traced with %s", host, strategy.method.value)
                return
            LOGGER.info("Tier %s produced no answering hop; falling back", strategy.method.value)

        raise TierUnavailable("all tracing tiers failed")


def build_default_strategies(
    probe_timeout_ms: int = 1000,
    ttl_hop_delay_ms: int = 50,
    tcp_ports: Sequence[int] = (80, 443, 22, 21, 25, 110, 143),
    tcp_max_hops: int = 10,
    tcp_hop_delay_ms: int = 100,
    simulated_hops: int = 5,
    simulated_delay_ms: int = 200,
) -> List[HopStrategy]:
    return [
        TtlProbeStrategy(SystemTtlProbe(), timeout_ms=probe_timeout_ms, hop_delay_ms=ttl_hop_delay_ms),
        TcpProbeStrategy(
            SocketTcpConnector(),
            ports=tcp_ports,
            max_hops=tcp_max_hops,
            timeout_ms=probe_timeout_ms,
            hop_delay_ms=tcp_hop_delay_ms,
        ),
        SimulatedStrategy(hops=simulated_hops, delay_ms=simulated_delay_ms),
    ]
