"""
ParamForge Local Context
=========================
Entry point to the in-process execution substrate. The context owns a
thread pool and hands out the primitives the orchestrator needs:

    parallelize / text_file  — build PartitionedCollections
    broadcast                — read-only, round-scoped snapshots
    best_score_accumulator   — concurrent max register
    run_job                  — one task per partition, synchronous barrier

Failure Model:
    A job fails as a whole. The first partition (by index) whose task
    raised is reported as a ``PartitionTaskError``; tasks not yet started
    are cancelled. There is no retry and no partial result.

Usage:
    >>> with LocalContext(num_workers=4) as context:
    ...     data = context.parallelize(datasets, num_partitions=4)
    ...     params = context.broadcast(network.params())
"""

from __future__ import annotations

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from paramforge.distributed.collection import PartitionedCollection
from paramforge.distributed.shared_variables import BestScoreAccumulator, Broadcast
from paramforge.errors import PartitionTaskError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalContext:
    """
    Thread-pool backed execution context.

    Parameters
    ----------
    num_workers : int
        Maximum number of partition tasks running at once. Also the
        default partition count for ``parallelize``.
    """

    def __init__(self, num_workers: int = 4):
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        self.num_workers = num_workers
        self._executor = ThreadPoolExecutor(
            max_workers=num_workers, thread_name_prefix="paramforge-task"
        )
        self._broadcast_ids = itertools.count()
        self._stopped = False

        logger.info(f"LocalContext started with {num_workers} workers")

    # ─── Collections ────────────────────────────────────────────────────

    def parallelize(
        self,
        data: Sequence[Any],
        num_partitions: Optional[int] = None,
    ) -> PartitionedCollection:
        """
        Split ``data`` into contiguous, near-equal partitions.

        When there are fewer elements than requested partitions, the
        partition count is reduced to the element count.
        """
        data = list(data)
        n = num_partitions or self.num_workers
        if n < 1:
            raise ValueError(f"num_partitions must be >= 1, got {n}")
        if data and len(data) < n:
            logger.warning(
                f"Only {len(data)} elements for {n} partitions; "
                f"using {len(data)} partitions"
            )
            n = len(data)

        base, extra = divmod(len(data), n)
        partitions = []
        start = 0
        for i in range(n):
            stop = start + base + (1 if i < extra else 0)
            partitions.append(data[start:stop])
            start = stop
        return PartitionedCollection(self, partitions)

    def text_file(
        self,
        path: str | Path,
        num_partitions: Optional[int] = None,
    ) -> PartitionedCollection:
        """Read a text file as a collection of its non-blank lines."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Text file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            lines = [line.rstrip("\r\n") for line in f if line.strip()]
        return self.parallelize(lines, num_partitions)

    # ─── Shared variables ───────────────────────────────────────────────

    def broadcast(self, value: T) -> Broadcast[T]:
        return Broadcast(value, next(self._broadcast_ids))

    def best_score_accumulator(self) -> BestScoreAccumulator:
        return BestScoreAccumulator()

    # ─── Execution ──────────────────────────────────────────────────────

    def run_job(self, fn: Callable[[int], T], num_partitions: int) -> list[T]:
        """
        Run ``fn(index)`` for every partition index and wait for all.

        Returns
        -------
        list
            Results in partition order.

        Raises
        ------
        PartitionTaskError
            If any task raised.
        """
        if self._stopped:
            raise RuntimeError("LocalContext has been stopped")

        futures = [self._executor.submit(fn, i) for i in range(num_partitions)]
        results = []
        for index, future in enumerate(futures):
            try:
                results.append(future.result())
            except Exception as exc:
                for pending in futures[index + 1:]:
                    pending.cancel()
                logger.error(f"Task for partition {index} failed: {exc}")
                raise PartitionTaskError(index, exc) from exc
        return results

    def stop(self) -> None:
        if not self._stopped:
            self._executor.shutdown(wait=True)
            self._stopped = True
            logger.info("LocalContext stopped")

    def __enter__(self) -> LocalContext:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def __repr__(self) -> str:
        return f"LocalContext(num_workers={self.num_workers}, stopped={self._stopped})"
