"""
ParamForge Updater State Aggregator
====================================
Merges the optimizer ("updater") state of many partitions into one.

Two-Phase Reduce:
    The merge is a distributed reduce with two operations, the same shape
    as a tree aggregate over a partitioned collection:

        combine_element(updater)   fold one partition's Updater into a
                                   running aggregate
        combine_aggregate(other)   merge two partial aggregates

    ``get_updater()`` finalizes the aggregate into a single Updater.

Combine Rules:
    HOW a state entry merges depends on what it means to the optimizer,
    so every updater variant declares one rule per state key:

        MEAN  running averages (momentum buffers, squared-gradient and
              moment estimates). Summed during the reduce, divided by
              the number of contributions at the end.
        MAX   step counters. Every replica starts from the same broadcast
              step and advances by its own local step count, so the
              merged state has advanced as far as the furthest replica.

    Step counters are intentionally NOT summed like other raw per-step
    counters. A sum would count the shared broadcast prefix once per
    partition, and Adam/RMSprop bias correction would then act as if
    P times more steps had been taken.

    ==========  ==========================================  =============
    Variant     MEAN                                        MAX
    ==========  ==========================================  =============
    sgd         (no state)                                  —
    nesterovs   momentum_buffer                             —
    adagrad     sum                                         step
    rmsprop     square_avg                                  step
    adam        exp_avg, exp_avg_sq                         step
    ==========  ==========================================  =============

    Variants are dispatched through the static ``AGGREGATORS`` registry.
    Mixing variants or layer counts in one reduce is an error.

Both phases are associative and commutative up to floating-point
summation order, so partition results may arrive in any order. With a
single contribution the finalized state is bit-for-bit the input.

Usage:
    >>> aggregator = results[0].updater.get_aggregator(add_this=False)
    >>> for r in results:
    ...     aggregator.combine_element(r.updater)
    >>> merged = aggregator.get_updater()
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, ClassVar, Mapping

import torch

from paramforge.errors import NumericDegeneracyError, ShapeMismatchError
from paramforge.model.updater import Updater, UpdaterType

logger = logging.getLogger(__name__)


class CombineRule(Enum):
    MEAN = "mean"
    MAX = "max"


def _copy(value: Any) -> Any:
    return value.detach().clone() if torch.is_tensor(value) else value


def _combine(rule: CombineRule, left: Any, right: Any) -> Any:
    if rule is CombineRule.MAX:
        if torch.is_tensor(left):
            return torch.maximum(left, torch.as_tensor(right, dtype=left.dtype))
        return max(left, right)
    return left + right


class UpdaterAggregator:
    """
    Generic two-phase reduce over Updater snapshots of one variant.

    Subclasses only declare ``updater_type`` and ``combine_rules``.

    Parameters
    ----------
    num_layers : int
        Layer count every folded Updater must have.
    """

    updater_type: ClassVar[UpdaterType]
    combine_rules: ClassVar[Mapping[str, CombineRule]] = {}

    def __init__(self, num_layers: int):
        self.num_layers = num_layers
        self.count = 0
        # layer -> param name -> state key -> [combined value, contributions]
        self._states: list[dict[str, dict[str, list]]] = [
            {} for _ in range(num_layers)
        ]

    def _rule(self, key: str) -> CombineRule:
        try:
            return self.combine_rules[key]
        except KeyError:
            raise ShapeMismatchError(
                f"No combine rule for {self.updater_type.value} updater "
                f"state '{key}'"
            ) from None

    def _fold(self, states: list[dict[str, dict[str, list]]]) -> None:
        for acc, record in zip(self._states, states):
            for name, entries in record.items():
                target = acc.setdefault(name, {})
                for key, (value, n) in entries.items():
                    rule = self._rule(key)
                    if key in target:
                        current, seen = target[key]
                        target[key] = [_combine(rule, current, value), seen + n]
                    else:
                        target[key] = [_copy(value), n]

    def combine_element(self, updater: Updater) -> UpdaterAggregator:
        """Fold one partition's Updater into this aggregate."""
        if updater.updater_type is not self.updater_type:
            raise ShapeMismatchError(
                f"Cannot fold a {updater.updater_type.value} updater into a "
                f"{self.updater_type.value} aggregator"
            )
        if updater.num_layers != self.num_layers:
            raise ShapeMismatchError(
                f"Updater has {updater.num_layers} layer records, aggregator "
                f"expects {self.num_layers}"
            )

        self._fold([
            {
                name: {key: (value, 1) for key, value in entries.items()}
                for name, entries in record.items()
            }
            for record in updater.layer_states
        ])
        self.count += 1
        return self

    def combine_aggregate(self, other: UpdaterAggregator) -> UpdaterAggregator:
        """Merge another partial aggregate of the same variant into this one."""
        if type(other) is not type(self) or other.num_layers != self.num_layers:
            raise ShapeMismatchError(
                f"Cannot merge {type(other).__name__}(layers={other.num_layers}) "
                f"into {type(self).__name__}(layers={self.num_layers})"
            )
        self._fold([
            {
                name: {key: tuple(pair) for key, pair in entries.items()}
                for name, entries in record.items()
            }
            for record in other._states
        ])
        self.count += other.count
        return self

    def get_updater(self) -> Updater:
        """
        Finalize into a single Updater.

        Raises
        ------
        NumericDegeneracyError
            If nothing was folded in.
        """
        if self.count == 0:
            raise NumericDegeneracyError(
                f"Cannot finalize a {self.updater_type.value} aggregator "
                f"with no updaters"
            )

        records = []
        for acc in self._states:
            record = {}
            for name, entries in acc.items():
                finished = {}
                for key, (value, n) in entries.items():
                    if self._rule(key) is CombineRule.MEAN and n > 1:
                        value = value / n
                    finished[key] = value
                record[name] = finished
            records.append(record)
        return Updater(self.updater_type, tuple(records))

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(layers={self.num_layers}, "
            f"updaters={self.count})"
        )


class NoOpUpdaterAggregator(UpdaterAggregator):
    """Aggregator for stateless SGD: every merge is vacuous."""

    updater_type = UpdaterType.SGD

    def combine_aggregate(self, other: UpdaterAggregator) -> UpdaterAggregator:
        if type(other) is not type(self):
            raise ShapeMismatchError(
                f"Cannot merge {type(other).__name__} into {type(self).__name__}"
            )
        self.count += other.count
        return self

    def get_updater(self) -> Updater:
        return Updater.empty(self.updater_type, self.num_layers)


class NesterovsAggregator(UpdaterAggregator):
    updater_type = UpdaterType.NESTEROVS
    combine_rules = {"momentum_buffer": CombineRule.MEAN}


class AdaGradAggregator(UpdaterAggregator):
    updater_type = UpdaterType.ADAGRAD
    combine_rules = {"sum": CombineRule.MEAN, "step": CombineRule.MAX}


class RmsPropAggregator(UpdaterAggregator):
    updater_type = UpdaterType.RMSPROP
    combine_rules = {"square_avg": CombineRule.MEAN, "step": CombineRule.MAX}


class AdamAggregator(UpdaterAggregator):
    updater_type = UpdaterType.ADAM
    combine_rules = {
        "exp_avg": CombineRule.MEAN,
        "exp_avg_sq": CombineRule.MEAN,
        "step": CombineRule.MAX,
    }


AGGREGATORS: dict[UpdaterType, type[UpdaterAggregator]] = {
    UpdaterType.SGD: NoOpUpdaterAggregator,
    UpdaterType.NESTEROVS: NesterovsAggregator,
    UpdaterType.ADAGRAD: AdaGradAggregator,
    UpdaterType.RMSPROP: RmsPropAggregator,
    UpdaterType.ADAM: AdamAggregator,
}


def aggregator_for(updater_type: UpdaterType, num_layers: int) -> UpdaterAggregator:
    """Create an empty aggregator for ``updater_type``."""
    return AGGREGATORS[updater_type](num_layers)


def element_combiner(aggregator: UpdaterAggregator, updater: Updater) -> UpdaterAggregator:
    """``seq_op`` for ``PartitionedCollection.aggregate``."""
    return aggregator.combine_element(updater)


def aggregate_combiner(left: UpdaterAggregator, right: UpdaterAggregator) -> UpdaterAggregator:
    """``comb_op`` for ``PartitionedCollection.aggregate``."""
    return left.combine_aggregate(right)
