"""
paramforge.aggregation — Merging Partition Results
===================================================
The two reducers the orchestrator runs at the end of every round:

    - accumulator.py        — ParameterAccumulator: element-wise sum of
                              flat parameter or update vectors
    - updater_aggregator.py — UpdaterAggregator and its per-variant
                              subclasses: two-phase reduce of optimizer
                              state

Information Flow:
    per-partition TrainingResults
        ├─ values  → ParameterAccumulator → sum (÷ partitions)
        └─ updater → UpdaterAggregator    → merged Updater
"""

from paramforge.aggregation.accumulator import ParameterAccumulator
from paramforge.aggregation.updater_aggregator import (
    AGGREGATORS,
    CombineRule,
    UpdaterAggregator,
    aggregate_combiner,
    aggregator_for,
    element_combiner,
)
