"""
ParamForge Parameter / Gradient Accumulator
============================================
Element-wise sum of flat parameter (or update) vectors collected from the
partitions of one round.

The accumulator only sums. Dividing the sum by the partition count is the
orchestrator's job.

Reproducibility:
    Summation is associative and commutative only up to floating-point
    rounding. Partition results arrive in no fixed order, so sums over
    different partition counts or arrival orders agree within tolerance
    but are NOT guaranteed to be bit-for-bit identical.

Usage:
    >>> acc = ParameterAccumulator(network.num_params())
    >>> results.foreach(lambda r: acc.add(r.values))   # concurrent adds
    >>> averaged = acc.value / results.num_partitions
"""

from __future__ import annotations

import threading
from typing import Iterable

import torch

from paramforge.errors import ShapeMismatchError


class ParameterAccumulator:
    """
    Thread-safe running sum of fixed-length vectors.

    Parameters
    ----------
    length : int
        Length every added vector must have.
    dtype : torch.dtype
        Dtype of the running sum.
    """

    def __init__(self, length: int, dtype: torch.dtype = torch.float32):
        if length < 1:
            raise ShapeMismatchError(f"Accumulator length must be >= 1, got {length}")
        self.length = length
        self.count = 0
        self._sum = torch.zeros(length, dtype=dtype)
        self._lock = threading.Lock()

    def add(self, vector: torch.Tensor) -> None:
        vector = torch.as_tensor(vector)
        if vector.dim() != 1 or vector.numel() != self.length:
            raise ShapeMismatchError(
                f"Cannot accumulate a vector of shape {tuple(vector.shape)} "
                f"into an accumulator of length {self.length}"
            )
        vector = vector.detach().to(self._sum.dtype)
        with self._lock:
            self._sum.add_(vector)
            self.count += 1

    def accumulate(self, vectors: Iterable[torch.Tensor]) -> torch.Tensor:
        """Add every vector, then return the running sum."""
        for vector in vectors:
            self.add(vector)
        return self.value

    @property
    def value(self) -> torch.Tensor:
        """A copy of the running sum."""
        with self._lock:
            return self._sum.clone()

    def __repr__(self) -> str:
        return f"ParameterAccumulator(length={self.length}, added={self.count})"
