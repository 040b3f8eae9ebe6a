"""
ParamForge Updater
===================
An *updater* is the optimizer plus its internal accumulators. The torch
optimizer does the stepping; this module defines the ``Updater`` snapshot
that travels between the orchestrator and the partitions.

Updater Snapshot:
    ``Updater.layer_states`` holds one record per layer. Each record maps
    a parameter name ("weight", "bias") to that parameter's optimizer
    state, e.g. for Adam::

        {"weight": {"step": tensor(3.), "exp_avg": ..., "exp_avg_sq": ...},
         "bias":   {"step": tensor(3.), "exp_avg": ..., "exp_avg_sq": ...}}

    Plain SGD keeps no state, so its records are empty. A snapshot whose
    records are all empty is the "empty state" marker.

Variants:
    The set of updater variants is closed (``UpdaterType``). Each variant
    maps to one torch optimizer and to one aggregator class that knows how
    to merge that variant's state across partitions
    (see ``paramforge.aggregation.updater_aggregator``).
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

import torch

from paramforge.config import MultiLayerConfiguration

logger = logging.getLogger(__name__)


class UpdaterType(Enum):
    SGD = "sgd"
    NESTEROVS = "nesterovs"
    ADAGRAD = "adagrad"
    RMSPROP = "rmsprop"
    ADAM = "adam"


def build_optimizer(
    conf: MultiLayerConfiguration,
    params: Iterable[torch.nn.Parameter],
) -> torch.optim.Optimizer:
    """Create the torch optimizer for ``conf.updater``."""
    kind = UpdaterType(conf.updater)
    lr = conf.learning_rate

    if kind is UpdaterType.SGD:
        return torch.optim.SGD(params, lr=lr)
    if kind is UpdaterType.NESTEROVS:
        return torch.optim.SGD(params, lr=lr, momentum=conf.momentum, nesterov=True)
    if kind is UpdaterType.ADAGRAD:
        return torch.optim.Adagrad(params, lr=lr, eps=conf.epsilon)
    if kind is UpdaterType.RMSPROP:
        return torch.optim.RMSprop(params, lr=lr, alpha=conf.rms_decay, eps=conf.epsilon)
    return torch.optim.Adam(
        params, lr=lr, betas=(conf.adam_beta1, conf.adam_beta2), eps=conf.epsilon
    )


def _copy_value(value: Any) -> Any:
    if torch.is_tensor(value):
        return value.detach().clone()
    return copy.deepcopy(value)


@dataclass(frozen=True, eq=False)
class Updater:
    """
    Snapshot of an updater's state, one record per layer.

    Parameters
    ----------
    updater_type : UpdaterType
        The optimizer variant that produced the state.
    layer_states : tuple[dict, ...]
        Per-layer records: ``{param_name: {state_key: value}}``.
    """
    updater_type: UpdaterType
    layer_states: tuple[dict[str, dict[str, Any]], ...]

    @classmethod
    def empty(cls, updater_type: UpdaterType, num_layers: int) -> Updater:
        return cls(updater_type, tuple({} for _ in range(num_layers)))

    @property
    def num_layers(self) -> int:
        return len(self.layer_states)

    def is_empty(self) -> bool:
        return not any(
            entries for record in self.layer_states for entries in record.values()
        )

    def clone(self) -> Updater:
        return Updater(
            self.updater_type,
            tuple(
                {
                    name: {key: _copy_value(v) for key, v in entries.items()}
                    for name, entries in record.items()
                }
                for record in self.layer_states
            ),
        )

    def get_aggregator(self, add_this: bool = True):
        """
        Return an aggregator for this updater's variant.

        Parameters
        ----------
        add_this : bool
            Fold this updater into the new aggregator. Pass False to get
            an empty seed of the right variant for a distributed reduce.
        """
        from paramforge.aggregation.updater_aggregator import aggregator_for

        aggregator = aggregator_for(self.updater_type, self.num_layers)
        if add_this:
            aggregator.combine_element(self)
        return aggregator

    def __repr__(self) -> str:
        keys = sorted({
            key for record in self.layer_states
            for entries in record.values() for key in entries
        })
        return (
            f"Updater(type={self.updater_type.value}, layers={self.num_layers}, "
            f"state={keys or 'empty'})"
        )
