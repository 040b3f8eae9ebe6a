"""
ParamForge Partitioned Collection
==================================
A small, in-process stand-in for a distributed dataset: a fixed list of
partitions plus a lazy chain of per-partition transforms.

Transforms (``map``, ``map_partitions``) only record work. Actions
(``count``, ``collect``, ``foreach``, ``aggregate``, ``cache``) run one
task per partition on the owning ``LocalContext``'s thread pool and block
until every task has finished. A collection whose transforms are
expensive and whose output is consumed more than once must be
``cache()``d, or every action re-runs the transforms.

Usage:
    >>> data = context.parallelize(datasets, num_partitions=4)
    >>> results = data.map_partitions(trainer).cache()
    >>> results.count()
    4
    >>> left, right = data.random_split([0.5, 0.5], seed=7)
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from paramforge.distributed.context import LocalContext

logger = logging.getLogger(__name__)

PartitionFn = Callable[[Iterator[Any]], Iterable[Any]]


class PartitionedCollection:
    """
    Immutable partitioned sequence with lazy per-partition transforms.

    Parameters
    ----------
    context : LocalContext
        Context whose executor runs this collection's tasks.
    partitions : sequence of sequences
        The materialized source partitions.
    transforms : tuple of callables
        Per-partition transforms applied in order when a partition is
        computed. Each takes an iterator and returns an iterable.
    """

    def __init__(
        self,
        context: LocalContext,
        partitions: Sequence[Sequence[Any]],
        transforms: tuple[PartitionFn, ...] = (),
    ):
        self.context = context
        self._partitions = tuple(tuple(p) for p in partitions)
        self._transforms = transforms

    @property
    def num_partitions(self) -> int:
        return len(self._partitions)

    def _compute(self, index: int) -> list[Any]:
        items: Iterable[Any] = self._partitions[index]
        for fn in self._transforms:
            items = fn(iter(items))
        return list(items)

    # ─── Transforms ─────────────────────────────────────────────────────

    def map_partitions(self, fn: PartitionFn) -> PartitionedCollection:
        return PartitionedCollection(
            self.context, self._partitions, self._transforms + (fn,)
        )

    def map(self, fn: Callable[[Any], Any]) -> PartitionedCollection:
        return self.map_partitions(lambda items: (fn(item) for item in items))

    # ─── Actions ────────────────────────────────────────────────────────

    def cache(self) -> PartitionedCollection:
        """Compute every partition once and keep the results."""
        computed = self.context.run_job(self._compute, self.num_partitions)
        return PartitionedCollection(self.context, computed)

    def collect(self) -> list[Any]:
        partitions = self.context.run_job(self._compute, self.num_partitions)
        return [item for part in partitions for item in part]

    def count(self) -> int:
        sizes = self.context.run_job(
            lambda i: len(self._compute(i)), self.num_partitions
        )
        return sum(sizes)

    def first(self) -> Any:
        for index in range(self.num_partitions):
            items = self._compute(index)
            if items:
                return items[0]
        raise ValueError("first() called on an empty collection")

    def foreach(self, fn: Callable[[Any], None]) -> None:
        def run(index: int) -> None:
            for item in self._compute(index):
                fn(item)

        self.context.run_job(run, self.num_partitions)

    def aggregate(
        self,
        zero: Any,
        seq_op: Callable[[Any, Any], Any],
        comb_op: Callable[[Any, Any], Any],
    ) -> Any:
        """
        Fold each partition with ``seq_op`` starting from a copy of
        ``zero``, then merge the per-partition results with ``comb_op``.
        Both operations must be associative and commutative.
        """
        def fold(index: int) -> Any:
            acc = copy.deepcopy(zero)
            for item in self._compute(index):
                acc = seq_op(acc, item)
            return acc

        partials = self.context.run_job(fold, self.num_partitions)
        result = copy.deepcopy(zero)
        for partial in partials:
            result = comb_op(result, partial)
        return result

    def random_split(
        self,
        weights: Sequence[float],
        seed: Optional[int] = None,
    ) -> list[PartitionedCollection]:
        """
        Randomly split into ``len(weights)`` collections.

        Each element lands in subset ``k`` with probability
        ``weights[k] / sum(weights)``, so subset sizes are only
        approximately proportional. A subset keeps at most this
        collection's partition count: partitions that drew no elements are
        dropped, so a subset that drew nothing has zero partitions.
        """
        weights = np.asarray(weights, dtype=np.float64)
        if weights.ndim != 1 or weights.size == 0 or (weights < 0).any() \
                or weights.sum() <= 0:
            raise ValueError(f"Invalid split weights: {weights.tolist()}")
        bounds = np.cumsum(weights / weights.sum())[:-1]

        partitions = self.context.run_job(self._compute, self.num_partitions)
        subsets: list[list[list[Any]]] = [
            [[] for _ in partitions] for _ in range(weights.size)
        ]
        for index, items in enumerate(partitions):
            rng = np.random.default_rng(None if seed is None else [seed, index])
            buckets = np.searchsorted(bounds, rng.random(len(items)), side="right")
            for item, bucket in zip(items, buckets):
                subsets[bucket][index].append(item)

        return [
            PartitionedCollection(self.context, [part for part in parts if part])
            for parts in subsets
        ]

    def __repr__(self) -> str:
        return (
            f"PartitionedCollection(partitions={self.num_partitions}, "
            f"transforms={len(self._transforms)})"
        )
