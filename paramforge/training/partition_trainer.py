"""
ParamForge Partition Trainer
=============================
The work one partition does in one round. A trainer is a callable over a
partition's iterator of DataSets, suitable for
``PartitionedCollection.map_partitions``:

    1. Rebuild a local network from the configuration JSON
    2. Install the broadcast parameters and updater (copies; the
       broadcast snapshot itself is never modified)
    3. Merge the local DataSets into one batch and ``fit`` it for the
       configured number of iterations
    4. Report the score to the best-score accumulator
    5. Yield exactly ONE TrainingResult

Two policies differ only in what the result carries:

    ParameterAveragingTrainer    the updated parameter vector
    GradientAccumulationTrainer  the local update: params_after - params_before

A partition with no examples is a precondition violation and raises
``EmptyPartitionError``; it never yields a result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import torch

from paramforge.config import MultiLayerConfiguration
from paramforge.data.dataset import DataSet
from paramforge.distributed.shared_variables import BestScoreAccumulator, Broadcast
from paramforge.errors import EmptyPartitionError
from paramforge.model.network import MultiLayerNetwork
from paramforge.model.updater import Updater

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class TrainingResult:
    """
    Outcome of one partition's local training.

    Parameters
    ----------
    values : torch.Tensor
        Updated parameters (averaging) or the local update (accumulation).
    updater : Updater
        The partition's optimizer state after training.
    score : float
        Score of the last local iteration.
    num_examples : int
        Examples the partition trained on.
    """
    values: torch.Tensor
    updater: Updater
    score: float
    num_examples: int


class PartitionTrainer:
    """
    Base partition trainer.

    Parameters
    ----------
    conf_json : str
        Serialized MultiLayerConfiguration for this round.
    params : Broadcast[torch.Tensor]
        Canonical parameter vector.
    updater : Broadcast[Updater]
        Canonical updater state.
    best_score : BestScoreAccumulator or None
        Shared tracker the partition's score is reported to.
    """

    def __init__(
        self,
        conf_json: str,
        params: Broadcast[torch.Tensor],
        updater: Broadcast[Updater],
        best_score: Optional[BestScoreAccumulator] = None,
    ):
        self.conf_json = conf_json
        self.params = params
        self.updater = updater
        self.best_score = best_score

    def __call__(self, datasets: Iterator[DataSet]) -> Iterator[TrainingResult]:
        local = list(datasets)
        if not local or sum(d.num_examples() for d in local) == 0:
            raise EmptyPartitionError(
                "Partition has no examples to train on; every partition "
                "of a round must hold at least one example"
            )

        network = MultiLayerNetwork(MultiLayerConfiguration.from_json(self.conf_json))
        initial = self.params.value
        network.set_parameters(initial)
        network.set_updater(self.updater.value)

        batch = DataSet.merge(local)
        score = network.fit(batch)
        if self.best_score is not None:
            self.best_score.add(score)

        logger.debug(
            f"Partition trained on {batch.num_examples()} examples for "
            f"{network.conf.num_iterations} iterations, score={score:.6f}"
        )

        yield TrainingResult(
            values=self._result_values(network, initial),
            updater=network.get_updater(),
            score=score,
            num_examples=batch.num_examples(),
        )

    def _result_values(self, network: MultiLayerNetwork, initial: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class ParameterAveragingTrainer(PartitionTrainer):
    """Emit the locally updated parameter vector."""

    def _result_values(self, network: MultiLayerNetwork, initial: torch.Tensor) -> torch.Tensor:
        return network.params()


class GradientAccumulationTrainer(PartitionTrainer):
    """Emit the local update, to be added to the canonical parameters."""

    def _result_values(self, network: MultiLayerNetwork, initial: torch.Tensor) -> torch.Tensor:
        return network.params() - initial.to(network.params().dtype)
