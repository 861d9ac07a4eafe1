"""Test target catalog and current selection."""

from __future__ import annotations

import logging
import random
import threading
from typing import List, Optional, Sequence

from .models import TestTarget

LOGGER = logging.getLogger(__name__)


class TargetCatalog:
    def __init__(self, targets: Sequence[TestTarget], selected: Optional[str] = None, rng: Optional[random.Random] = None):
        if not targets:
            raise ValueError("The target catalog cannot be empty")
        self._targets = list(targets)
        self._lock = threading.Lock()
        chosen = self.find(selected) if selected else None
        # no explicit choice: pick one at random
        self._selected = chosen or (rng or random.Random()).choice(self._targets)
        LOGGER.info("Selected test target: %s (%s, %s)", self._selected.name, self._selected.city, self._selected.country)

    @property
    def targets(self) -> List[TestTarget]:
        return list(self._targets)

    @property
    def selected(self) -> TestTarget:
        with self._lock:
            return self._selected

    def find(self, name: Optional[str]) -> Optional[TestTarget]:
        if not name:
            return None
        lowered = name.strip().lower()
        return next((t for t in self._targets if t.name.lower() == lowered), None)

    def select(self, name: str) -> TestTarget:
        target = self.find(name)
        if target is None:
            raise KeyError(name)
        with self._lock:
            self._selected = target
        LOGGER.info("Test target changed to %s", target.name)
        return target
