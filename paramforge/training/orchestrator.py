"""
ParamForge Training Orchestrator
=================================
Owns the canonical network and runs distributed training rounds over a
PartitionedCollection of DataSets.

One Round (``_run_iteration``):
    1. Broadcast the canonical parameter vector and updater state
    2. Run a partition trainer on every partition (parallel, barrier) and
       cache the results, since they are consumed twice
    3. Merge parameters:
         averaging     params  = Σ partition params / n_partitions
         accumulation  params += Σ partition updates (÷ n_partitions if
                                 divide_accum_gradient)
    4. Merge updater state with the two-phase UpdaterAggregator reduce and
       install it, even when it is the empty-state marker
    5. Destroy the broadcasts

Averaging Policy (``_fit_round``):
    END OF ROUND (default)  one round; every partition runs all K local
                            iterations before the merge
    EACH ITERATION          K rounds of one local iteration each, using a
                            transient copy of the configuration with the
                            iteration count forced to 1. The canonical
                            configuration is never modified.

Per-Round Budget (``fit_data_set``):
    With ``examples_per_fit`` set, the data is randomly split into
    ceil(count / examples_per_fit) equal-weight subsets, trained one
    after the other on the same canonical network.

Every phase failure surfaces as a ``TrainingPhaseError`` naming the phase
("broadcast", "local train", "parameter merge", "updater merge").

Usage:
    >>> with LocalContext(num_workers=4) as context:
    ...     master = DistributedMultiLayer(context, conf, TrainingConfig())
    ...     network = master.fit_labeled_points(x, y, batch_size=32)
    ...     probs = master.predict(x[:5])
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
import torch

from paramforge.aggregation.accumulator import ParameterAccumulator
from paramforge.aggregation.updater_aggregator import aggregate_combiner, element_combiner
from paramforge.config import MultiLayerConfiguration, TrainingConfig
from paramforge.data.conversion import (
    RecordReader,
    RecordReaderFunction,
    labeled_points_to_datasets,
)
from paramforge.distributed.collection import PartitionedCollection
from paramforge.distributed.context import LocalContext
from paramforge.errors import NumericDegeneracyError, training_phase
from paramforge.model.network import MultiLayerNetwork
from paramforge.training.partition_trainer import (
    GradientAccumulationTrainer,
    ParameterAveragingTrainer,
)
from paramforge.training.splits import compute_num_splits, split_weights

logger = logging.getLogger(__name__)


class DistributedMultiLayer:
    """
    Distributed trainer for a MultiLayerNetwork.

    Parameters
    ----------
    context : LocalContext
        Execution context for partition tasks and broadcasts.
    model : MultiLayerConfiguration or MultiLayerNetwork
        Either a configuration (a fresh network is built and initialized)
        or an existing network to continue training.
    training : TrainingConfig or None
        Averaging policy flags and partitioning defaults.
    """

    def __init__(
        self,
        context: LocalContext,
        model: Union[MultiLayerConfiguration, MultiLayerNetwork],
        training: Optional[TrainingConfig] = None,
    ):
        self.context = context
        if isinstance(model, MultiLayerNetwork):
            self._network = model
            self.conf = model.conf.clone()
        else:
            self.conf = model.clone()
            self._network = MultiLayerNetwork(self.conf)

        self.training = training or TrainingConfig()
        self.training.validate()
        self.best_score_accumulator = context.best_score_accumulator()

    @property
    def network(self) -> MultiLayerNetwork:
        return self._network

    @network.setter
    def network(self, network: MultiLayerNetwork) -> None:
        self._network = network
        self.conf = network.conf.clone()

    @property
    def best_score(self) -> float:
        """Highest score any partition has reported so far."""
        return self.best_score_accumulator.value

    # ─── Training entry points ──────────────────────────────────────────

    def fit_data_set(
        self,
        data: PartitionedCollection,
        examples_per_fit: Optional[int] = None,
    ) -> MultiLayerNetwork:
        """
        Fit the network, splitting into several rounds if needed.

        Training proceeds as: train on ``examples_per_fit`` examples →
        merge → train on the next ``examples_per_fit`` → merge ... until
        the whole collection has been used.

        Parameters
        ----------
        data : PartitionedCollection
            Collection of DataSets.
        examples_per_fit : int or None
            Elements to learn on between merges, across all partitions.
            None uses the whole collection in a single round.

        Returns
        -------
        MultiLayerNetwork
            The trained canonical network.
        """
        n_splits = 1
        if examples_per_fit is not None:
            n_splits = compute_num_splits(data.count(), examples_per_fit)

        if n_splits == 1:
            self._fit_round(data)
        else:
            subsets = data.random_split(
                split_weights(n_splits), seed=self.training.split_seed
            )
            for i, subset in enumerate(subsets):
                if subset.num_partitions == 0:
                    logger.warning(
                        f"Subset {i + 1} of {len(subsets)} drew no examples; skipping"
                    )
                    continue
                logger.info(
                    f"Initiating distributed training of subset {i + 1} of "
                    f"{len(subsets)}"
                )
                self._fit_round(subset)

        return self._network

    def fit_labeled_points(
        self,
        features: np.ndarray,
        labels: np.ndarray,
        batch_size: int,
        num_partitions: Optional[int] = None,
    ) -> MultiLayerNetwork:
        """
        Fit on numpy features and integer class labels.

        Labels are one-hot encoded to the output layer's arity.
        """
        batches = labeled_points_to_datasets(
            features, labels, self.conf.output_layer.n_out, batch_size
        )
        data = self.context.parallelize(
            batches, num_partitions or self.training.num_partitions
        )
        return self.fit_data_set(data, self.training.examples_per_fit)

    def fit_text_file(
        self,
        path: Union[str, Path],
        label_index: int,
        record_reader: RecordReader,
        num_partitions: Optional[int] = None,
    ) -> MultiLayerNetwork:
        """
        Fit on a text file with one example per line.

        Parameters
        ----------
        path : str or Path
            Text file to read.
        label_index : int
            Position of the class label in each parsed record.
        record_reader : callable
            Parses one line into a sequence of numeric values.
        """
        lines = self.context.text_file(
            path, num_partitions or self.training.num_partitions
        )
        points = lines.map(
            RecordReaderFunction(record_reader, label_index, self.conf.output_layer.n_out)
        )
        return self.fit_data_set(points, self.training.examples_per_fit)

    @classmethod
    def train(
        cls,
        context: LocalContext,
        features: np.ndarray,
        labels: np.ndarray,
        conf: MultiLayerConfiguration,
        training: Optional[TrainingConfig] = None,
        batch_size: int = 32,
    ) -> MultiLayerNetwork:
        """Build a DistributedMultiLayer for ``conf`` and fit it in one call."""
        master = cls(context, conf, training)
        return master.fit_labeled_points(features, labels, batch_size)

    def predict(self, features: np.ndarray) -> np.ndarray:
        """
        Canonical network output for a feature matrix.

        A single 1-D feature vector is accepted and a 1-D output returned.
        """
        features = np.asarray(features, dtype=np.float32)
        single = features.ndim == 1
        if single:
            features = features.reshape(1, -1)
        outputs = self._network.output(torch.from_numpy(features)).numpy()
        return outputs[0] if single else outputs

    # ─── Rounds ─────────────────────────────────────────────────────────

    def _fit_round(self, data: PartitionedCollection) -> MultiLayerNetwork:
        iterations = self.conf.num_iterations
        logger.info(
            f"Running distributed training: (averaging each iteration = "
            f"{self.training.average_each_iteration}), (iterations = "
            f"{iterations}), (num partitions = {data.num_partitions})"
        )

        if not self.training.average_each_iteration:
            self._run_iteration(data, self.conf)
        else:
            single_step = self.conf.with_num_iterations(1)
            for _ in range(iterations):
                self._run_iteration(data, single_step)

        return self._network

    def _run_iteration(
        self,
        data: PartitionedCollection,
        conf: MultiLayerConfiguration,
    ) -> None:
        num_partitions = data.num_partitions
        if num_partitions == 0:
            raise NumericDegeneracyError("Cannot run a round over zero partitions")
        if data.count() == 0:
            raise NumericDegeneracyError("Cannot run a round over zero examples")

        with training_phase("broadcast"):
            params_length = self._network.num_params()
            logger.info(f"Broadcasting initial parameters of length {params_length}")
            params = self.context.broadcast(self._network.params())
            updater = self.context.broadcast(self._network.get_updater())

        try:
            if self.training.accum_gradient:
                trainer = GradientAccumulationTrainer(
                    conf.to_json(), params, updater, self.best_score_accumulator
                )
            else:
                trainer = ParameterAveragingTrainer(
                    conf.to_json(), params, updater, self.best_score_accumulator
                )

            with training_phase("local train"):
                results = data.map_partitions(trainer).cache()
            logger.info("Ran iterative reduce... merging results now.")

            with training_phase("parameter merge"):
                accumulator = ParameterAccumulator(params_length)
                results.foreach(lambda result: accumulator.add(result.values))
                summed = accumulator.value
                logger.info("Accumulated parameters")

                if self.training.accum_gradient:
                    if self.training.divide_accum_gradient:
                        summed /= num_partitions
                        logger.info("Divided accumulated gradient by partitions")
                    self._network.set_parameters(self._network.params() + summed)
                else:
                    summed /= num_partitions
                    logger.info("Divided by partitions")
                    self._network.set_parameters(summed)
                logger.info("Set parameters")

            with training_phase("updater merge"):
                logger.info("Processing updaters")
                updaters = results.map(lambda result: result.updater)
                aggregator = updaters.aggregate(
                    updaters.first().get_aggregator(add_this=False),
                    element_combiner,
                    aggregate_combiner,
                )
                self._network.set_updater(aggregator.get_updater())
                logger.info("Set updater")
        finally:
            params.destroy()
            updater.destroy()

    def __repr__(self) -> str:
        mode = "accumulate" if self.training.accum_gradient else "average"
        return (
            f"DistributedMultiLayer(network={self._network!r}, mode={mode}, "
            f"average_each_iteration={self.training.average_each_iteration})"
        )
