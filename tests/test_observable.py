"""Unit tests for the latest-value state holder."""

import threading

from netdiag.measurements.observable import StateHolder


class TestStateHolder:
    def test_subscription_replays_current_value(self):
        """A new subscriber immediately sees the current value."""
        holder = StateHolder("idle")
        with holder.subscribe() as subscription:
            assert subscription.get(timeout=0.1) == "idle"
            assert subscription.get(timeout=0.05) is None

    def test_slow_reader_gets_latest_value_only(self):
        """Intermediate values are conflated away."""
        holder = StateHolder(0)
        subscription = holder.subscribe()
        subscription.get(timeout=0)
        for value in range(1, 6):
            holder.set(value)

        assert subscription.get(timeout=0.1) == 5
        assert subscription.get(timeout=0.05) is None
        subscription.close()

    def test_update_without_change_does_not_publish(self):
        holder = StateHolder({"a": 1})
        version = holder.version

        holder.update(lambda current: current)

        assert holder.version == version

    def test_update_publishes_new_value(self):
        holder = StateHolder(1)
        result = holder.update(lambda current: current + 1)
        assert result == 2
        assert holder.value == 2
        assert holder.version == 1

    def test_reader_wakes_on_publish(self):
        """A blocked get returns as soon as a value is published from another thread."""
        holder = StateHolder("idle")
        subscription = holder.subscribe()
        subscription.get(timeout=0)
        timer = threading.Timer(0.05, holder.set, args=("running",))
        timer.start()

        assert subscription.get(timeout=5) == "running"
        timer.join()

    def test_closed_subscription_returns_none(self):
        holder = StateHolder("idle")
        subscription = holder.subscribe()
        subscription.close()
        holder.set("running")
        assert subscription.get(timeout=0.05) is None
