"""Latest-value state holder shared between a run's worker and its readers."""

from __future__ import annotations

import threading
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")


class Subscription(Generic[T]):
    """Conflating reader: only the newest unseen value is ever delivered."""

    def __init__(self, holder: "StateHolder[T]", initial: T, version: int):
        self._holder = holder
        self._condition = threading.Condition()
        self._value = initial
        self._version = version
        self._seen = version - 1  # replay the current value on first get()
        self._closed = False

    def _offer(self, value: T, version: int) -> None:
        with self._condition:
            self._value = value
            self._version = version
            self._condition.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Return the next unseen value, or None on timeout or close."""
        with self._condition:
            if self._seen == self._version and not self._closed:
                self._condition.wait(timeout)
            if self._closed or self._seen == self._version:
                return None
            self._seen = self._version
            return self._value

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        self._holder._unsubscribe(self)

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class StateHolder(Generic[T]):
    """Single point of mutation for a published state value."""

    def __init__(self, initial: T):
        self._lock = threading.Lock()
        self._value = initial
        self._version = 0
        self._subscribers: List[Subscription[T]] = []

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def set(self, value: T) -> None:
        with self._lock:
            self._publish(value)

    def update(self, transform: Callable[[T], T]) -> T:
        """Apply ``transform`` to the current value atomically and publish the result."""
        with self._lock:
            new_value = transform(self._value)
            if new_value is not self._value:
                self._publish(new_value)
            return new_value

    def subscribe(self) -> Subscription[T]:
        with self._lock:
            subscription = Subscription(self, self._value, self._version)
            self._subscribers.append(subscription)
            return subscription

    def _publish(self, value: T) -> None:
        self._value = value
        self._version += 1
        for subscription in list(self._subscribers):
            subscription._offer(value, self._version)

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
