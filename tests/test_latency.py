"""Unit tests for latency probing, jitter and ping command handling."""

import random

import pytest

from conftest import FakeReachability, no_sleep
from netdiag.measurements.latency import (
    ChainedReachability,
    LatencyProber,
    build_ping_command,
    parse_ping_time_ms,
    round_half_up,
    summarize_round_trips,
)


class TestSummarizeRoundTrips:
    """Mean latency and successive-difference jitter."""

    def test_jitter_is_mean_absolute_successive_difference(self):
        """RTTs 100, 120, 90 give jitter (20 + 30) / 2 = 25."""
        result = summarize_round_trips([100.0, 120.0, 90.0])
        assert result.jitter_ms == 25
        assert result.latency_ms == 103

    def test_single_sample_has_zero_jitter(self):
        result = summarize_round_trips([42.4])
        assert result.latency_ms == 42
        assert result.jitter_ms == 0

    def test_rounding_is_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4
        assert round_half_up(2.49) == 2

    def test_requires_samples(self):
        with pytest.raises(ValueError):
            summarize_round_trips([])


class TestLatencyProber:
    """Attempt loop and synthetic fallback."""

    def test_measured_result(self):
        """Successful attempts are averaged; failed ones are skipped."""
        reach = FakeReachability([100.0, None, 120.0, 90.0])
        prober = LatencyProber(reach, sleep=no_sleep)

        result = prober.probe("speed.example.net", attempts=4)

        assert not result.synthetic
        assert result.samples == [100.0, 120.0, 90.0]
        assert result.jitter_ms == 25
        assert reach.calls == ["speed.example.net"] * 4

    @pytest.mark.parametrize("seed", range(20))
    def test_synthetic_values_when_nothing_answers(self, seed):
        """Zero successes give latency in [20, 100] and jitter in [5, 20]."""
        prober = LatencyProber(FakeReachability([]), sleep=no_sleep, rng=random.Random(seed))

        result = prober.probe("unreachable.example", attempts=3)

        assert result.synthetic
        assert 20 <= result.latency_ms <= 100
        assert 5 <= result.jitter_ms <= 20

    def test_probe_exceptions_count_as_failures(self):
        """A raising probe never propagates out of the prober."""
        reach = FakeReachability([OSError("no route"), 30.0])
        prober = LatencyProber(reach, sleep=no_sleep)

        result = prober.probe("speed.example.net", attempts=2)

        assert result.latency_ms == 30
        assert result.jitter_ms == 0

    def test_attempts_are_spaced(self):
        """The prober sleeps spacing_ms between attempts."""
        sleeps = []
        prober = LatencyProber(FakeReachability([10.0] * 10), sleep=sleeps.append)

        prober.probe("speed.example.net", attempts=10, spacing_ms=100)

        assert sleeps == [0.1] * 10

    def test_should_stop_ends_early(self):
        reach = FakeReachability([10.0] * 10)
        prober = LatencyProber(reach, sleep=no_sleep)
        calls = iter([False, False, True])

        result = prober.probe("speed.example.net", attempts=10, should_stop=lambda: next(calls))

        assert len(reach.calls) == 2
        assert result.latency_ms == 10


class TestChainedReachability:
    def test_first_answer_wins(self):
        first = FakeReachability([None])
        second = FakeReachability([25.0])
        third = FakeReachability([99.0])

        assert ChainedReachability([first, second, third]).check("h", 1000) == 25.0
        assert third.calls == []

    def test_none_when_nothing_answers(self):
        chain = ChainedReachability([FakeReachability([None]), FakeReachability([None])])
        assert chain.check("h", 1000) is None


class TestPingCommand:
    """Platform-specific ping command lines."""

    def test_linux(self):
        assert build_ping_command("8.8.8.8", 1000, system="Linux") == ["ping", "-n", "-c", "1", "-W", "1", "8.8.8.8"]

    def test_linux_with_ttl_rounds_timeout_up(self):
        cmd = build_ping_command("8.8.8.8", 1500, ttl=4, system="Linux")
        assert cmd == ["ping", "-n", "-c", "1", "-W", "2", "-t", "4", "8.8.8.8"]

    def test_windows(self):
        cmd = build_ping_command("8.8.8.8", 800, ttl=3, system="Windows")
        assert cmd == ["ping", "-n", "1", "-w", "800", "-i", "3", "8.8.8.8"]

    def test_macos(self):
        cmd = build_ping_command("8.8.8.8", 1000, ttl=7, system="Darwin")
        assert cmd == ["ping", "-n", "-c", "1", "-t", "1", "-m", "7", "8.8.8.8"]


class TestParsePingTime:
    """Round-trip extraction from ping output."""

    def test_linux_format(self):
        output = "64 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=12.3 ms"
        assert parse_ping_time_ms(output) == 12.3

    def test_windows_format(self):
        output = "Reply from 8.8.8.8: bytes=32 time=15ms TTL=117"
        assert parse_ping_time_ms(output) == 15.0

    def test_windows_sub_millisecond(self):
        output = "Reply from 127.0.0.1: bytes=32 time<1ms TTL=128"
        assert parse_ping_time_ms(output) == 1.0

    def test_no_time(self):
        assert parse_ping_time_ms("Request timed out.") is None
        assert parse_ping_time_ms("") is None
