"""
ParamForge Shared Variables
============================
The two kinds of state partition tasks share during a round:

    Broadcast             — a read-only snapshot every task reads. Taken
                            by deep copy, so later changes to the
                            canonical model never leak into a running
                            round.
    BestScoreAccumulator  — a running maximum every task writes to.
                            Lock protected, so concurrent updates are
                            never lost. Order of updates does not matter.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Broadcast(Generic[T]):
    """
    Read-only, round-scoped snapshot of a value.

    Tasks must treat ``value`` as immutable and copy before modifying.
    """

    def __init__(self, value: T, broadcast_id: int = 0):
        self.id = broadcast_id
        self._value = copy.deepcopy(value)
        self._destroyed = False

    @property
    def value(self) -> T:
        if self._destroyed:
            raise RuntimeError(f"Broadcast {self.id} was used after destroy()")
        return self._value

    def destroy(self) -> None:
        """Release the snapshot. Any later access to ``value`` raises."""
        self._destroyed = True
        self._value = None

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else type(self._value).__name__
        return f"Broadcast(id={self.id}, {state})"


class BestScoreAccumulator:
    """Process-wide running maximum of reported scores."""

    def __init__(self, initial: float = float("-inf")):
        self._value = initial
        self._lock = threading.Lock()

    def add(self, score: float) -> None:
        with self._lock:
            if score > self._value:
                self._value = score

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def __repr__(self) -> str:
        return f"BestScoreAccumulator(value={self.value})"
