"""
paramforge.distributed — Execution Substrate
=============================================
An in-process stand-in for a cluster: partitions are processed by tasks
on a thread pool, with broadcast-in / reduce-out as the only
communication.

Components:
    - context.py          — LocalContext: thread pool, collection
                            builders, broadcast, run_job barrier
    - collection.py       — PartitionedCollection: lazy per-partition
                            transforms, actions, random_split
    - shared_variables.py — Broadcast snapshots, BestScoreAccumulator
"""

from paramforge.distributed.collection import PartitionedCollection
from paramforge.distributed.context import LocalContext
from paramforge.distributed.shared_variables import BestScoreAccumulator, Broadcast
