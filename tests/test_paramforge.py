#!/usr/bin/env python3
"""
Tests for ParamForge configuration, network collaborator, aggregation,
execution substrate and the distributed training orchestrator.

Run all tests:
    python -m pytest tests/ -v --tb=short
"""

import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def small_conf(updater="sgd", iterations=1, lr=0.1, seed=3):
    """A 4-8-3 softmax classifier."""
    from paramforge.config import LayerConfig, MultiLayerConfiguration
    return MultiLayerConfiguration(
        layers=(
            LayerConfig(n_in=4, n_out=8, activation="tanh", num_iterations=iterations),
            LayerConfig(
                n_in=8, n_out=3, activation="softmax",
                num_iterations=iterations, loss="mcxent",
            ),
        ),
        updater=updater,
        learning_rate=lr,
        seed=seed,
    )


def make_dataset(n=16, seed=0):
    from paramforge.data import DataSet
    g = torch.Generator().manual_seed(seed)
    features = torch.randn(n, 4, generator=g)
    labels = torch.eye(3)[torch.randint(0, 3, (n,), generator=g)]
    return DataSet(features, labels)


def make_blobs(n=600, seed=0):
    rng = np.random.default_rng(seed)
    centers = np.array([[4, 0, 0, 0], [0, 4, 0, 0], [0, 0, 4, 0]], dtype=np.float32)
    labels = rng.integers(0, 3, size=n)
    features = centers[labels] + rng.normal(scale=0.5, size=(n, 4))
    return features.astype(np.float32), labels


@pytest.fixture
def context():
    from paramforge.distributed import LocalContext
    with LocalContext(num_workers=4) as ctx:
        yield ctx


# =============================================================================
# Config Tests
# =============================================================================

class TestConfig:
    """Tests for the configuration system."""

    def test_smoke_test_config(self):
        """Smoke test config should be valid."""
        from paramforge.config import ParamForgeConfig
        config = ParamForgeConfig.for_smoke_test()
        config.validate()
        assert config.model.num_iterations == 3
        assert config.model.output_layer.n_out == 3

    def test_default_yaml_loads(self):
        """The shipped default config should load and validate."""
        from paramforge.config import ParamForgeConfig
        path = Path(__file__).resolve().parent.parent / "configs" / "default.yaml"
        config = ParamForgeConfig.from_yaml(path)
        assert config.model.updater == "nesterovs"
        assert config.training.examples_per_fit is None

    def test_missing_output_layer(self):
        """The last layer must declare a loss."""
        from paramforge.config import LayerConfig, MultiLayerConfiguration
        from paramforge.errors import ConfigurationError
        conf = MultiLayerConfiguration(layers=(LayerConfig(n_in=4, n_out=3),))
        with pytest.raises(ConfigurationError, match="output layer"):
            conf.validate()

    def test_layer_sizes_must_chain(self):
        from paramforge.config import LayerConfig, MultiLayerConfiguration
        from paramforge.errors import ConfigurationError
        conf = MultiLayerConfiguration(layers=(
            LayerConfig(n_in=4, n_out=8),
            LayerConfig(n_in=7, n_out=3, activation="softmax", loss="mcxent"),
        ))
        with pytest.raises(ConfigurationError, match="must match"):
            conf.validate()

    def test_unknown_updater(self):
        from paramforge.errors import ConfigurationError
        conf = small_conf(updater="lbfgs")
        with pytest.raises(ConfigurationError, match="updater"):
            conf.validate()

    def test_iteration_override_returns_copy(self):
        """with_num_iterations must never mutate the original."""
        conf = small_conf(iterations=3)
        single = conf.with_num_iterations(1)
        assert conf.num_iterations == 3
        assert all(layer.num_iterations == 3 for layer in conf.layers)
        assert all(layer.num_iterations == 1 for layer in single.layers)

    def test_json_round_trip(self):
        from paramforge.config import MultiLayerConfiguration
        conf = small_conf(updater="adam", iterations=2)
        assert MultiLayerConfiguration.from_json(conf.to_json()) == conf

    def test_malformed_json(self):
        from paramforge.config import MultiLayerConfiguration
        from paramforge.errors import ConfigurationError
        with pytest.raises(ConfigurationError, match="JSON"):
            MultiLayerConfiguration.from_json("{not json")

    def test_yaml_round_trip(self, tmp_path):
        """Config should save to YAML and load back identically."""
        from paramforge.config import ParamForgeConfig
        config = ParamForgeConfig.for_smoke_test()
        config.training.average_each_iteration = True

        yaml_path = tmp_path / "test_config.yaml"
        config.to_yaml(yaml_path)

        loaded = ParamForgeConfig.from_yaml(yaml_path)
        assert loaded.model == config.model
        assert loaded.training.average_each_iteration is True

    def test_training_flags_from_env(self, monkeypatch):
        from paramforge.config import TrainingConfig
        monkeypatch.setenv("PARAMFORGE_AVERAGE_EACH_ITERATION", "1")
        monkeypatch.setenv("PARAMFORGE_ACCUM_GRADIENT", "true")
        monkeypatch.setenv("PARAMFORGE_EXAMPLES_PER_FIT", "250")
        cfg = TrainingConfig.from_env()
        assert cfg.average_each_iteration is True
        assert cfg.accum_gradient is True
        assert cfg.divide_accum_gradient is False
        assert cfg.examples_per_fit == 250

    def test_training_flags_default_off(self, monkeypatch):
        from paramforge.config import TrainingConfig
        for name in ("PARAMFORGE_AVERAGE_EACH_ITERATION", "PARAMFORGE_ACCUM_GRADIENT",
                     "PARAMFORGE_DIVIDE_ACCUM_GRADIENT"):
            monkeypatch.delenv(name, raising=False)
        cfg = TrainingConfig.from_env()
        assert not cfg.average_each_iteration
        assert not cfg.accum_gradient
        assert not cfg.divide_accum_gradient


# =============================================================================
# Network Tests
# =============================================================================

class TestMultiLayerNetwork:
    """Tests for the network collaborator."""

    def test_param_count(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf())
        assert net.num_params() == 4 * 8 + 8 + 8 * 3 + 3
        assert net.params().shape == (net.num_params(),)

    def test_seeded_init_is_reproducible(self):
        from paramforge.model import MultiLayerNetwork
        a = MultiLayerNetwork(small_conf(seed=11))
        b = MultiLayerNetwork(small_conf(seed=11))
        assert torch.equal(a.params(), b.params())

    def test_set_parameters_round_trip(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf())
        new = torch.arange(net.num_params(), dtype=torch.float32)
        net.set_parameters(new)
        assert torch.equal(net.params(), new)

    def test_set_parameters_does_not_alias(self):
        """Training must never write through to the vector passed in."""
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf())
        source = net.params().clone()
        snapshot = source.clone()
        net.set_parameters(source)
        net.fit(make_dataset())
        assert torch.equal(source, snapshot)

    def test_set_parameters_length_mismatch(self):
        from paramforge.model import MultiLayerNetwork
        from paramforge.errors import ShapeMismatchError
        net = MultiLayerNetwork(small_conf())
        with pytest.raises(ShapeMismatchError):
            net.set_parameters(torch.zeros(net.num_params() - 1))

    def test_fit_reduces_loss(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf(iterations=50, lr=0.5))
        data = make_dataset(n=32)
        before = net.score(data)
        net.fit(data)
        assert net.score(data) < before

    def test_fit_rejects_wrong_width(self):
        from paramforge.data import DataSet
        from paramforge.errors import ShapeMismatchError
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf())
        with pytest.raises(ShapeMismatchError):
            net.fit(DataSet(torch.zeros(2, 5), torch.zeros(2, 3)))

    def test_output_is_probability(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf())
        out = net.output(torch.randn(5, 4))
        assert out.shape == (5, 3)
        assert torch.allclose(out.sum(dim=1), torch.ones(5), atol=1e-5)

    def test_updater_round_trip(self):
        """An Adam snapshot installed on a fresh network reads back identically."""
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf(updater="adam", iterations=2))
        net.fit(make_dataset())
        snapshot = net.get_updater()

        other = MultiLayerNetwork(small_conf(updater="adam", iterations=2))
        other.set_updater(snapshot)
        restored = other.get_updater()

        for a, b in zip(snapshot.layer_states, restored.layer_states):
            assert a.keys() == b.keys()
            for name in a:
                for key in a[name]:
                    assert torch.equal(a[name][key], b[name][key])

    def test_set_updater_does_not_alias(self):
        """Later changes to an installed snapshot never reach the optimizer."""
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf(updater="adam"))
        net.fit(make_dataset())
        snapshot = net.get_updater()
        before = snapshot.layer_states[0]["weight"]["exp_avg"].clone()

        other = MultiLayerNetwork(small_conf(updater="adam"))
        other.set_updater(snapshot)
        snapshot.layer_states[0]["weight"]["exp_avg"].add_(1.0)

        installed = other.get_updater().layer_states[0]["weight"]["exp_avg"]
        assert torch.equal(installed, before)

    def test_updater_clone_is_deep(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf(updater="nesterovs"))
        net.fit(make_dataset())
        original = net.get_updater()
        copy = original.clone()
        assert copy.updater_type is original.updater_type
        copy.layer_states[1]["bias"]["momentum_buffer"].zero_()
        assert not torch.equal(
            copy.layer_states[1]["bias"]["momentum_buffer"],
            original.layer_states[1]["bias"]["momentum_buffer"],
        )

    def test_sgd_updater_is_empty(self):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(small_conf(updater="sgd"))
        net.fit(make_dataset())
        assert net.get_updater().is_empty()
        assert net.get_updater().num_layers == 2

    def test_set_updater_variant_mismatch(self):
        from paramforge.errors import ShapeMismatchError
        from paramforge.model import MultiLayerNetwork
        adam = MultiLayerNetwork(small_conf(updater="adam"))
        adam.fit(make_dataset())
        nesterovs = MultiLayerNetwork(small_conf(updater="nesterovs"))
        with pytest.raises(ShapeMismatchError, match="adam"):
            nesterovs.set_updater(adam.get_updater())

    def test_score_listener_logs(self, caplog):
        from paramforge.model import MultiLayerNetwork, ScoreIterationListener
        caplog.set_level(logging.INFO, logger="paramforge.model.network")
        net = MultiLayerNetwork(small_conf(iterations=4))
        net.listeners.append(ScoreIterationListener(print_every=2))
        net.fit(make_dataset())
        messages = [r.getMessage() for r in caplog.records if "Score at iteration" in r.getMessage()]
        assert len(messages) == 2
        assert net.iteration == 4


# =============================================================================
# Aggregation Tests
# =============================================================================

def _trained_updater(updater, iterations=1, data_seed=0):
    from paramforge.model import MultiLayerNetwork
    net = MultiLayerNetwork(small_conf(updater=updater, iterations=iterations))
    net.fit(make_dataset(seed=data_seed))
    return net.get_updater()


class TestUpdaterAggregator:
    """Tests for the two-phase updater-state reduce."""

    @pytest.mark.parametrize("updater", ["nesterovs", "adagrad", "rmsprop", "adam"])
    def test_single_partition_is_identity(self, updater):
        """Aggregating one updater returns it bit-for-bit."""
        state = _trained_updater(updater, iterations=2)
        aggregator = state.get_aggregator(add_this=False)
        aggregator.combine_element(state)
        merged = aggregator.get_updater()

        assert merged.updater_type is state.updater_type
        for a, b in zip(state.layer_states, merged.layer_states):
            assert a.keys() == b.keys()
            for name in a:
                assert a[name].keys() == b[name].keys()
                for key in a[name]:
                    assert torch.equal(a[name][key], b[name][key])

    def test_momentum_buffers_average(self):
        first = _trained_updater("nesterovs", data_seed=1)
        second = _trained_updater("nesterovs", data_seed=2)
        merged = first.get_aggregator().combine_element(second).get_updater()

        for i in range(2):
            for name in ("weight", "bias"):
                expected = (first.layer_states[i][name]["momentum_buffer"]
                            + second.layer_states[i][name]["momentum_buffer"]) / 2
                assert torch.allclose(
                    merged.layer_states[i][name]["momentum_buffer"], expected
                )

    def test_step_counter_takes_max(self):
        short = _trained_updater("adam", iterations=2)
        long = _trained_updater("adam", iterations=3)
        merged = short.get_aggregator().combine_element(long).get_updater()
        assert merged.layer_states[0]["weight"]["step"].item() == 3
        assert merged.layer_states[1]["bias"]["step"].item() == 3

    def test_tree_reduce_matches_linear_fold(self):
        states = [_trained_updater("adam", data_seed=s) for s in range(3)]

        linear = states[0].get_aggregator(add_this=False)
        for s in states:
            linear.combine_element(s)

        left = states[0].get_aggregator().combine_element(states[1])
        right = states[2].get_aggregator()
        tree = left.combine_aggregate(right)

        a, b = linear.get_updater(), tree.get_updater()
        for ra, rb in zip(a.layer_states, b.layer_states):
            for name in ra:
                for key in ra[name]:
                    assert torch.allclose(ra[name][key], rb[name][key], atol=1e-7)

    def test_sgd_aggregate_is_empty_marker(self):
        states = [_trained_updater("sgd", data_seed=s) for s in range(2)]
        aggregator = states[0].get_aggregator(add_this=False)
        for s in states:
            aggregator.combine_element(s)
        merged = aggregator.get_updater()
        assert merged.is_empty()
        assert merged.num_layers == 2

    def test_mixed_variants_rejected(self):
        from paramforge.errors import ShapeMismatchError
        adam = _trained_updater("adam")
        nesterovs = _trained_updater("nesterovs")
        with pytest.raises(ShapeMismatchError):
            adam.get_aggregator().combine_element(nesterovs)

    def test_empty_aggregate_fails_fast(self):
        from paramforge.errors import NumericDegeneracyError
        aggregator = _trained_updater("adam").get_aggregator(add_this=False)
        with pytest.raises(NumericDegeneracyError):
            aggregator.get_updater()

    def test_registry_covers_every_variant(self):
        from paramforge.aggregation import AGGREGATORS
        from paramforge.model import UpdaterType
        assert set(AGGREGATORS) == set(UpdaterType)
        for kind, cls in AGGREGATORS.items():
            assert cls.updater_type is kind


class TestParameterAccumulator:
    """Tests for the flat-vector accumulator."""

    def test_sum_is_order_invariant(self):
        from paramforge.aggregation import ParameterAccumulator
        g = torch.Generator().manual_seed(0)
        vectors = [torch.randn(50, generator=g) for _ in range(7)]

        forward = ParameterAccumulator(50).accumulate(vectors)
        backward = ParameterAccumulator(50).accumulate(reversed(vectors))
        shuffled = ParameterAccumulator(50).accumulate(
            [vectors[i] for i in (3, 0, 6, 1, 5, 2, 4)]
        )
        assert torch.allclose(forward, backward, atol=1e-5)
        assert torch.allclose(forward, shuffled, atol=1e-5)

    def test_length_mismatch(self):
        from paramforge.aggregation import ParameterAccumulator
        from paramforge.errors import ShapeMismatchError
        acc = ParameterAccumulator(10)
        with pytest.raises(ShapeMismatchError):
            acc.add(torch.zeros(9))

    def test_concurrent_adds_are_not_lost(self):
        from paramforge.aggregation import ParameterAccumulator
        acc = ParameterAccumulator(8)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: acc.add(torch.ones(8)), range(200)))
        assert torch.equal(acc.value, torch.full((8,), 200.0))
        assert acc.count == 200


# =============================================================================
# Execution Substrate Tests
# =============================================================================

class TestPartitionedCollection:
    """Tests for the in-process distributed collection."""

    def test_parallelize_near_equal(self, context):
        data = context.parallelize(list(range(10)), num_partitions=3)
        assert data.num_partitions == 3
        assert data.count() == 10
        assert data.collect() == list(range(10))
        sizes = context.run_job(lambda i: len(data._compute(i)), 3)
        assert sizes == [4, 3, 3]

    def test_map_is_lazy_until_action(self, context):
        calls = []
        data = context.parallelize(list(range(6)), num_partitions=2)
        doubled = data.map(lambda x: calls.append(x) or x * 2)
        assert calls == []
        assert sorted(doubled.collect()) == [0, 2, 4, 6, 8, 10]

    def test_cache_computes_once(self, context):
        lock = threading.Lock()
        calls = []

        def record(items):
            with lock:
                calls.append(1)
            return list(items)

        cached = context.parallelize(list(range(8)), 4).map_partitions(record).cache()
        cached.count()
        cached.collect()
        assert len(calls) == 4

    def test_aggregate(self, context):
        data = context.parallelize(list(range(100)), num_partitions=5)
        total = data.aggregate(0, lambda acc, x: acc + x, lambda a, b: a + b)
        assert total == sum(range(100))

    def test_random_split_sizes(self, context):
        data = context.parallelize(list(range(1000)), num_partitions=4)
        left, right = data.random_split([0.5, 0.5], seed=3)
        assert left.num_partitions == right.num_partitions == 4
        assert left.count() + right.count() == 1000
        assert 400 < left.count() < 600
        assert sorted(left.collect() + right.collect()) == list(range(1000))

    def test_random_split_drops_empty_partitions(self, context):
        data = context.parallelize(list(range(8)), num_partitions=4)
        for seed in range(10):
            subsets = data.random_split([0.5, 0.5], seed=seed)
            assert sum(s.count() for s in subsets) == 8
            for subset in subsets:
                sizes = context.run_job(
                    lambda i, s=subset: len(s._compute(i)), subset.num_partitions
                )
                assert all(size > 0 for size in sizes)

    def test_random_split_empty_subset_has_no_partitions(self, context):
        data = context.parallelize(list(range(20)), num_partitions=4)
        left, right = data.random_split([1.0, 0.0], seed=1)
        assert left.num_partitions == 4
        assert left.count() == 20
        assert right.num_partitions == 0
        assert right.count() == 0

    def test_random_split_is_seeded(self, context):
        data = context.parallelize(list(range(200)), num_partitions=2)
        a = data.random_split([0.3, 0.7], seed=9)[0].collect()
        b = data.random_split([0.3, 0.7], seed=9)[0].collect()
        assert a == b

    def test_task_failure_aborts_job(self, context):
        from paramforge.errors import PartitionTaskError

        def explode(items):
            items = list(items)
            if 5 in items:
                raise RuntimeError("bad record")
            return items

        data = context.parallelize(list(range(8)), num_partitions=4).map_partitions(explode)
        with pytest.raises(PartitionTaskError, match="bad record") as exc:
            data.collect()
        assert exc.value.partition == 2

    def test_text_file(self, context, tmp_path):
        path = tmp_path / "lines.txt"
        path.write_text("a\nb\n\nc\n", encoding="utf-8")
        assert context.text_file(path, num_partitions=2).collect() == ["a", "b", "c"]


class TestSharedVariables:
    """Tests for broadcasts and the best-score register."""

    def test_broadcast_is_a_snapshot(self, context):
        value = torch.zeros(3)
        b = context.broadcast(value)
        value.add_(1.0)
        assert torch.equal(b.value, torch.zeros(3))

    def test_broadcast_destroy(self, context):
        b = context.broadcast([1, 2, 3])
        b.destroy()
        with pytest.raises(RuntimeError, match="destroy"):
            _ = b.value

    def test_best_score_concurrent_max(self, context):
        acc = context.best_score_accumulator()
        assert acc.value == float("-inf")
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(acc.add, [float(x) for x in range(1000)]))
        assert acc.value == 999.0


# =============================================================================
# Split Scheduler Tests
# =============================================================================

class TestSplitScheduler:
    """Tests for per-round budget splitting."""

    def test_budget_equal_to_total(self):
        from paramforge.training import compute_num_splits
        assert compute_num_splits(1000, 1000) == 1

    def test_exact_divisor(self):
        from paramforge.training import compute_num_splits, split_weights
        assert compute_num_splits(1000, 500) == 2
        assert split_weights(2) == [0.5, 0.5]

    def test_rounds_up(self):
        from paramforge.training import compute_num_splits
        assert compute_num_splits(1200, 1000) == 2
        assert compute_num_splits(1001, 100) == 11

    def test_unbounded(self):
        from paramforge.training import compute_num_splits
        assert compute_num_splits(10**9, None) == 1

    def test_invalid_inputs(self):
        from paramforge.errors import ConfigurationError, NumericDegeneracyError
        from paramforge.training import compute_num_splits
        with pytest.raises(NumericDegeneracyError):
            compute_num_splits(0, 10)
        with pytest.raises(ConfigurationError):
            compute_num_splits(10, 0)


# =============================================================================
# Partition Trainer Tests
# =============================================================================

class TestPartitionTrainer:
    """Tests for per-partition local training."""

    def _trainer(self, context, cls, conf, params=None):
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(conf)
        params = net.params() if params is None else params
        return cls(
            conf.to_json(),
            context.broadcast(params),
            context.broadcast(net.get_updater()),
            context.best_score_accumulator(),
        )

    def test_exactly_one_result(self, context):
        from paramforge.training import ParameterAveragingTrainer
        conf = small_conf(updater="adam")
        trainer = self._trainer(context, ParameterAveragingTrainer, conf)
        results = list(trainer(iter([make_dataset(seed=1), make_dataset(seed=2)])))
        assert len(results) == 1
        assert results[0].num_examples == 32
        assert results[0].values.shape == trainer.params.value.shape
        assert trainer.best_score.value == results[0].score

    def test_broadcast_not_mutated(self, context):
        from paramforge.training import ParameterAveragingTrainer
        trainer = self._trainer(context, ParameterAveragingTrainer, small_conf(iterations=5))
        before = trainer.params.value.clone()
        list(trainer(iter([make_dataset()])))
        assert torch.equal(trainer.params.value, before)

    def test_gradient_trainer_emits_update(self, context):
        from paramforge.training import GradientAccumulationTrainer, ParameterAveragingTrainer
        conf = small_conf(iterations=2)
        averaging = self._trainer(context, ParameterAveragingTrainer, conf)
        accumulating = self._trainer(context, GradientAccumulationTrainer, conf)
        data = make_dataset()

        trained = list(averaging(iter([data])))[0].values
        update = list(accumulating(iter([data])))[0].values
        assert torch.allclose(accumulating.params.value + update, trained, atol=1e-6)

    def test_empty_partition_rejected(self, context):
        from paramforge.errors import EmptyPartitionError
        from paramforge.training import ParameterAveragingTrainer
        trainer = self._trainer(context, ParameterAveragingTrainer, small_conf())
        with pytest.raises(EmptyPartitionError):
            list(trainer(iter([])))

    def test_wrong_length_broadcast(self, context):
        from paramforge.errors import ShapeMismatchError
        from paramforge.training import ParameterAveragingTrainer
        trainer = self._trainer(
            context, ParameterAveragingTrainer, small_conf(), params=torch.zeros(5)
        )
        with pytest.raises(ShapeMismatchError):
            list(trainer(iter([make_dataset()])))


# =============================================================================
# Orchestrator Tests
# =============================================================================

class TestDistributedMultiLayer:
    """Tests for the distributed training orchestrator."""

    def _expected_local(self, conf, initial, data):
        """Parameters one partition reaches from ``initial`` on ``data``."""
        from paramforge.model import MultiLayerNetwork
        net = MultiLayerNetwork(conf)
        net.set_parameters(initial)
        net.fit(data)
        return net.params()

    def test_averaging_equal_replicas_is_noop(self, context):
        """Averaging P identical results returns that result."""
        from paramforge.training import DistributedMultiLayer
        conf = small_conf(iterations=3)
        master = DistributedMultiLayer(context, conf)
        initial = master.network.params()
        data = make_dataset()

        master.fit_data_set(context.parallelize([data] * 4, num_partitions=4))

        expected = self._expected_local(conf, initial, data)
        assert torch.allclose(master.network.params(), expected, atol=1e-6)

    @pytest.mark.parametrize("divide, factor", [(False, 3.0), (True, 1.0)])
    def test_gradient_accumulation(self, context, divide, factor):
        from paramforge.config import TrainingConfig
        from paramforge.training import DistributedMultiLayer
        conf = small_conf(iterations=2)
        training = TrainingConfig(accum_gradient=True, divide_accum_gradient=divide)
        master = DistributedMultiLayer(context, conf, training)
        initial = master.network.params()
        data = make_dataset()

        master.fit_data_set(context.parallelize([data] * 3, num_partitions=3))

        update = self._expected_local(conf, initial, data) - initial
        assert torch.allclose(
            master.network.params(), initial + factor * update, atol=1e-5
        )

    def test_end_averaging_runs_one_round(self, context):
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf(updater="adam", iterations=3))
        data = context.parallelize([make_dataset(seed=s) for s in range(4)], 4)

        with patch.object(master, "_run_iteration", wraps=master._run_iteration) as spy:
            master.fit_data_set(data)

        assert spy.call_count == 1
        assert spy.call_args.args[1].num_iterations == 3
        step = master.network.get_updater().layer_states[0]["weight"]["step"]
        assert step.item() == 3

    def test_average_each_iteration_runs_k_rounds(self, context):
        from paramforge.config import TrainingConfig
        from paramforge.training import DistributedMultiLayer
        conf = small_conf(updater="adam", iterations=3)
        master = DistributedMultiLayer(
            context, conf, TrainingConfig(average_each_iteration=True)
        )
        conf_before = master.conf
        data = context.parallelize([make_dataset(seed=s) for s in range(4)], 4)

        with patch.object(master, "_run_iteration", wraps=master._run_iteration) as spy:
            master.fit_data_set(data)

        assert spy.call_count == 3
        assert all(call.args[1].num_iterations == 1 for call in spy.call_args_list)
        assert master.conf == conf_before
        assert master.conf.num_iterations == 3
        assert master.network.conf.num_iterations == 3
        step = master.network.get_updater().layer_states[0]["weight"]["step"]
        assert step.item() == 3

    @pytest.mark.parametrize("budget, rounds", [(1200, 1), (600, 2), (1000, 2)])
    def test_examples_per_fit_rounds(self, context, budget, rounds):
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        examples = [make_dataset(n=1, seed=s) for s in range(1200)]
        data = context.parallelize(examples, num_partitions=4)

        with patch.object(master, "_fit_round", wraps=master._fit_round) as spy:
            master.fit_data_set(data, examples_per_fit=budget)

        assert spy.call_count == rounds
        sizes = [call.args[0].count() for call in spy.call_args_list]
        assert sum(sizes) == 1200
        if rounds == 2:
            assert all(450 < size < 750 for size in sizes)

    @pytest.mark.parametrize("seed", range(10))
    def test_budget_split_over_small_partitions(self, context, seed):
        """Empty partitions created by the budget split never fail a round."""
        from paramforge.config import TrainingConfig
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf(), TrainingConfig(split_seed=seed))
        examples = [make_dataset(n=1, seed=s) for s in range(8)]
        data = context.parallelize(examples, num_partitions=4)

        with patch.object(master, "_fit_round", wraps=master._fit_round) as spy:
            master.fit_data_set(data, examples_per_fit=4)

        assert 1 <= spy.call_count <= 2
        assert sum(call.args[0].count() for call in spy.call_args_list) == 8

    def test_empty_subset_is_skipped(self, context):
        from paramforge.distributed import PartitionedCollection
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        data = context.parallelize([make_dataset(n=1, seed=s) for s in range(8)], 4)
        empty = PartitionedCollection(context, [])

        with patch.object(data, "random_split", return_value=[empty, data]):
            with patch.object(master, "_fit_round", wraps=master._fit_round) as spy:
                master.fit_data_set(data, examples_per_fit=4)

        assert spy.call_count == 1
        assert spy.call_args.args[0] is data

    def test_network_setter_adopts_conf(self, context):
        from paramforge.config import LayerConfig, MultiLayerConfiguration
        from paramforge.model import MultiLayerNetwork
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        narrower = MultiLayerConfiguration(
            layers=(
                LayerConfig(n_in=4, n_out=5, activation="tanh"),
                LayerConfig(n_in=5, n_out=3, activation="softmax", loss="mcxent"),
            ),
            updater="sgd",
        )
        replacement = MultiLayerNetwork(narrower)

        master.network = replacement
        assert master.conf == narrower
        assert master.conf is not replacement.conf

        master.fit_data_set(context.parallelize([make_dataset()] * 2, 2))
        assert master.network.num_params() == 4 * 5 + 5 + 5 * 3 + 3

    def test_conf_is_cloned(self, context):
        from paramforge.model import MultiLayerNetwork
        from paramforge.training import DistributedMultiLayer
        net = MultiLayerNetwork(small_conf())
        master = DistributedMultiLayer(context, net)
        assert master.network is net
        assert master.conf == net.conf
        assert master.conf is not net.conf

    def test_best_score_tracked(self, context):
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        assert master.best_score == float("-inf")
        master.fit_data_set(context.parallelize([make_dataset(seed=s) for s in range(3)], 3))
        first = master.best_score
        assert np.isfinite(first)
        master.fit_data_set(context.parallelize([make_dataset(seed=s) for s in range(3)], 3))
        assert master.best_score >= first

    def test_broadcasts_destroyed_after_round(self, context, monkeypatch):
        from paramforge.training import DistributedMultiLayer
        created = []
        original = context.broadcast

        def tracking(value):
            b = original(value)
            created.append(b)
            return b

        monkeypatch.setattr(context, "broadcast", tracking)
        master = DistributedMultiLayer(context, small_conf())
        master.fit_data_set(context.parallelize([make_dataset()] * 2, 2))

        assert len(created) == 2
        for b in created:
            with pytest.raises(RuntimeError):
                _ = b.value

    def test_zero_examples_fail_fast(self, context):
        from paramforge.errors import NumericDegeneracyError
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        empty = context.parallelize([], num_partitions=2)
        with pytest.raises(NumericDegeneracyError):
            master.fit_data_set(empty)
        with pytest.raises(NumericDegeneracyError):
            master.fit_data_set(empty, examples_per_fit=10)

    def test_empty_partition_fails_round(self, context):
        from paramforge.distributed import PartitionedCollection
        from paramforge.errors import EmptyPartitionError, PartitionTaskError, TrainingPhaseError
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        initial = master.network.params()
        data = PartitionedCollection(context, [[make_dataset()], []])

        with pytest.raises(TrainingPhaseError, match="local train") as exc:
            master.fit_data_set(data)

        assert exc.value.phase == "local train"
        assert isinstance(exc.value.cause, PartitionTaskError)
        assert exc.value.cause.partition == 1
        assert isinstance(exc.value.cause.cause, EmptyPartitionError)
        assert torch.equal(master.network.params(), initial)

    def test_merge_failure_names_phase(self, context):
        from paramforge.errors import TrainingPhaseError
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        data = context.parallelize([make_dataset()] * 2, 2)
        with patch(
            "paramforge.training.orchestrator.ParameterAccumulator.add",
            side_effect=RuntimeError("boom"),
        ):
            with pytest.raises(TrainingPhaseError) as exc:
                master.fit_data_set(data)
        assert exc.value.phase == "parameter merge"

    def test_fit_labeled_points_learns_blobs(self, context):
        from paramforge.config import TrainingConfig
        from paramforge.training import DistributedMultiLayer
        features, labels = make_blobs()
        master = DistributedMultiLayer(
            context,
            small_conf(updater="adam", iterations=30, lr=0.05),
            TrainingConfig(num_partitions=4),
        )
        for _ in range(3):
            master.fit_labeled_points(features, labels, batch_size=25)

        accuracy = (master.predict(features).argmax(axis=1) == labels).mean()
        assert accuracy > 0.7

    def test_predict_single_vector(self, context):
        from paramforge.training import DistributedMultiLayer
        master = DistributedMultiLayer(context, small_conf())
        out = master.predict(np.zeros(4, dtype=np.float32))
        assert out.shape == (3,)
        assert abs(out.sum() - 1.0) < 1e-5

    def test_fit_text_file(self, context, tmp_path):
        from paramforge.config import TrainingConfig
        from paramforge.training import DistributedMultiLayer
        features, labels = make_blobs(n=40)
        path = tmp_path / "train.csv"
        path.write_text(
            "\n".join(
                ",".join(f"{v:.4f}" for v in row) + f",{label}"
                for row, label in zip(features, labels)
            ),
            encoding="utf-8",
        )

        master = DistributedMultiLayer(context, small_conf(), TrainingConfig(num_partitions=2))
        initial = master.network.params()
        master.fit_text_file(path, label_index=4, record_reader=lambda line: line.split(","))
        assert not torch.equal(master.network.params(), initial)

    def test_train_classmethod(self, context):
        from paramforge.model import MultiLayerNetwork
        from paramforge.training import DistributedMultiLayer
        features, labels = make_blobs(n=80)
        net = DistributedMultiLayer.train(context, features, labels, small_conf(), batch_size=10)
        assert isinstance(net, MultiLayerNetwork)


# =============================================================================
# Data Conversion Tests
# =============================================================================

class TestConversion:
    """Tests for labeled-point and record conversion."""

    def test_labeled_points_batches(self):
        from paramforge.data import labeled_points_to_datasets
        features, labels = make_blobs(n=70)
        batches = labeled_points_to_datasets(features, labels, num_classes=3, batch_size=32)
        assert [b.num_examples() for b in batches] == [32, 32, 6]
        assert batches[0].labels.argmax(dim=1).tolist() == labels[:32].tolist()

    def test_label_out_of_range(self):
        from paramforge.data import one_hot
        from paramforge.errors import ShapeMismatchError
        with pytest.raises(ShapeMismatchError):
            one_hot(np.array([0, 3]), num_classes=3)

    def test_record_reader_function(self):
        from paramforge.data import RecordReaderFunction
        to_ds = RecordReaderFunction(lambda line: line.split(","), label_index=0, num_classes=3)
        ds = to_ds("2,0.5,1.5,2.5,3.5")
        assert ds.features.tolist() == [[0.5, 1.5, 2.5, 3.5]]
        assert ds.labels.tolist() == [[0.0, 0.0, 1.0]]


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
