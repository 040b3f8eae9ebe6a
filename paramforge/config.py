"""
ParamForge Configuration System
================================
Centralized configuration for ParamForge using Python dataclasses.

Two kinds of configuration live here:

    1. The MODEL configuration (``MultiLayerConfiguration``): the network
       topology, per-layer iteration counts and the updater (optimizer)
       hyperparameters. It is immutable and serializes to JSON so it can
       be shipped to every partition task as plain text.

    2. The TRAINING configuration (``TrainingConfig``): how the
       orchestrator distributes work: averaging policy flags, the
       per-round example budget, partition and worker counts.

``ParamForgeConfig`` bundles both and round-trips through YAML.

Usage:
    # Load from YAML file:
    >>> config = ParamForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = ParamForgeConfig(
    ...     model=MultiLayerConfiguration(layers=(
    ...         LayerConfig(n_in=4, n_out=16, activation="relu"),
    ...         LayerConfig(n_in=16, n_out=3, activation="softmax", loss="mcxent"),
    ...     )),
    ...     training=TrainingConfig(average_each_iteration=True),
    ... )

    # Override the distribution flags from the environment:
    >>> training = TrainingConfig.from_env()
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

from paramforge.errors import ConfigurationError

logger = logging.getLogger(__name__)


ACTIVATIONS = ("relu", "tanh", "sigmoid", "identity", "softmax", "leakyrelu")
LOSSES = ("mcxent", "mse")
UPDATERS = ("sgd", "nesterovs", "adagrad", "rmsprop", "adam")


# =============================================================================
# Model Configuration
# =============================================================================

@dataclass(frozen=True)
class LayerConfig:
    """
    One fully connected layer.

    Parameters
    ----------
    n_in : int
        Number of inputs to the layer.
    n_out : int
        Number of outputs (units) of the layer.
    activation : str
        Activation applied to the layer output. One of ``ACTIVATIONS``.
    num_iterations : int
        Optimizer steps taken per ``fit`` call. Only layer 0's value
        drives training; the others are kept in step with it.
    loss : str or None
        Loss function. Set only on the output layer (``"mcxent"`` or
        ``"mse"``).
    """
    n_in: int
    n_out: int
    activation: str = "relu"
    num_iterations: int = 1
    loss: Optional[str] = None

    def validate(self) -> None:
        """Validate a single layer in isolation."""
        if self.n_in < 1 or self.n_out < 1:
            raise ConfigurationError(
                f"Layer sizes must be positive, got n_in={self.n_in}, "
                f"n_out={self.n_out}"
            )
        if self.activation not in ACTIVATIONS:
            raise ConfigurationError(
                f"Unknown activation: '{self.activation}'. "
                f"Choose from: {', '.join(ACTIVATIONS)}"
            )
        if self.num_iterations < 1:
            raise ConfigurationError(
                f"num_iterations must be >= 1, got {self.num_iterations}"
            )
        if self.loss is not None and self.loss not in LOSSES:
            raise ConfigurationError(
                f"Unknown loss: '{self.loss}'. Choose from: {', '.join(LOSSES)}"
            )


@dataclass(frozen=True)
class MultiLayerConfiguration:
    """
    Immutable description of a multilayer network and its updater.

    Parameters
    ----------
    layers : tuple[LayerConfig, ...]
        Layers from input to output. The last layer must declare a loss.
    updater : str
        Optimizer variant: "sgd", "nesterovs", "adagrad", "rmsprop", "adam".
    learning_rate : float
        Step size shared by every updater variant.
    momentum : float
        Momentum for the "nesterovs" updater.
    rms_decay : float
        Decay of the squared-gradient average for "rmsprop".
    adam_beta1, adam_beta2 : float
        Moment decay rates for "adam".
    epsilon : float
        Numerical stabilizer for the adaptive updaters.
    seed : int or None
        Seed for weight initialization. None draws from torch's global RNG.
    """
    layers: tuple[LayerConfig, ...] = ()
    updater: str = "nesterovs"
    learning_rate: float = 0.1
    momentum: float = 0.9
    rms_decay: float = 0.95
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    epsilon: float = 1e-8
    seed: Optional[int] = 42

    def validate(self) -> None:
        """
        Check every layer and the cross-layer consistency.

        Raises
        ------
        ConfigurationError
            If the configuration has no layers, no output layer, layers
            whose sizes do not chain, or invalid updater settings.
        """
        if not self.layers:
            raise ConfigurationError("Configuration has no layers")
        for layer in self.layers:
            layer.validate()
        if self.layers[-1].loss is None:
            raise ConfigurationError(
                "Missing output layer: the last layer must declare a loss "
                f"(one of {', '.join(LOSSES)})"
            )
        if self.layers[-1].loss == "mcxent" and self.layers[-1].activation != "softmax":
            raise ConfigurationError(
                "The mcxent loss requires a softmax output layer, got "
                f"activation='{self.layers[-1].activation}'"
            )
        for i, layer in enumerate(self.layers[:-1]):
            if layer.loss is not None:
                raise ConfigurationError(
                    f"Only the output layer may declare a loss, "
                    f"but layer {i} has loss='{layer.loss}'"
                )
        for i in range(1, len(self.layers)):
            prev, cur = self.layers[i - 1], self.layers[i]
            if prev.n_out != cur.n_in:
                raise ConfigurationError(
                    f"Layer {i} n_in ({cur.n_in}) must match layer {i - 1} "
                    f"n_out ({prev.n_out})"
                )
        if self.updater not in UPDATERS:
            raise ConfigurationError(
                f"Unknown updater: '{self.updater}'. "
                f"Choose from: {', '.join(UPDATERS)}"
            )
        if self.learning_rate <= 0:
            raise ConfigurationError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if not 0.0 < self.momentum < 1.0:
            raise ConfigurationError(
                f"momentum must be in (0, 1), got {self.momentum}"
            )

    @property
    def num_iterations(self) -> int:
        """Iteration count of layer 0, which drives local training."""
        return self.layers[0].num_iterations

    @property
    def output_layer(self) -> LayerConfig:
        return self.layers[-1]

    def with_num_iterations(self, num_iterations: int) -> MultiLayerConfiguration:
        """Return a copy with every layer's iteration count replaced."""
        return dataclasses.replace(
            self,
            layers=tuple(
                dataclasses.replace(layer, num_iterations=num_iterations)
                for layer in self.layers
            ),
        )

    def clone(self) -> MultiLayerConfiguration:
        return MultiLayerConfiguration.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["layers"] = [asdict(layer) for layer in self.layers]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> MultiLayerConfiguration:
        data = dict(data)
        data["layers"] = tuple(
            LayerConfig(**layer) for layer in data.get("layers", ())
        )
        return cls(**data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> MultiLayerConfiguration:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed configuration JSON: {e}") from e
        return cls.from_dict(data)


# =============================================================================
# Training Configuration
# =============================================================================

def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TrainingConfig:
    """
    Settings for distributing training across partitions.

    Parameters
    ----------
    average_each_iteration : bool
        Average after every local iteration instead of once per round.
    accum_gradient : bool
        Add summed per-partition updates to the parameters instead of
        averaging the per-partition parameters.
    divide_accum_gradient : bool
        Divide the summed updates by the partition count before adding
        them (only meaningful with ``accum_gradient``).
    examples_per_fit : int or None
        Per-round example budget. None trains on everything in one round.
    num_partitions : int
        Partitions created when the orchestrator builds collections itself.
    num_workers : int
        Worker threads running partition tasks.
    split_seed : int
        Seed for splitting the data into rounds.
    epochs : int
        Passes over the data made by ``scripts/train.py``.
    """
    average_each_iteration: bool = False
    accum_gradient: bool = False
    divide_accum_gradient: bool = False
    examples_per_fit: Optional[int] = None
    num_partitions: int = 4
    num_workers: int = 4
    split_seed: int = 42
    epochs: int = 1

    def validate(self) -> None:
        """Validate training parameters."""
        if self.examples_per_fit is not None and self.examples_per_fit < 1:
            raise ConfigurationError(
                f"examples_per_fit must be >= 1 or None, got {self.examples_per_fit}"
            )
        if self.num_partitions < 1:
            raise ConfigurationError(
                f"num_partitions must be >= 1, got {self.num_partitions}"
            )
        if self.num_workers < 1:
            raise ConfigurationError(
                f"num_workers must be >= 1, got {self.num_workers}"
            )
        if self.epochs < 1:
            raise ConfigurationError(f"epochs must be >= 1, got {self.epochs}")
        if self.divide_accum_gradient and not self.accum_gradient:
            logger.warning(
                "divide_accum_gradient is set but accum_gradient is off; "
                "the flag has no effect"
            )

    @classmethod
    def from_env(cls, base: Optional[TrainingConfig] = None) -> TrainingConfig:
        """
        Build a TrainingConfig, overriding fields from PARAMFORGE_* variables.

        Recognised variables: PARAMFORGE_AVERAGE_EACH_ITERATION,
        PARAMFORGE_ACCUM_GRADIENT, PARAMFORGE_DIVIDE_ACCUM_GRADIENT,
        PARAMFORGE_EXAMPLES_PER_FIT, PARAMFORGE_NUM_PARTITIONS,
        PARAMFORGE_NUM_WORKERS, PARAMFORGE_SPLIT_SEED.
        """
        cfg = dataclasses.replace(base) if base is not None else cls()

        cfg.average_each_iteration = _env_flag(
            "PARAMFORGE_AVERAGE_EACH_ITERATION", cfg.average_each_iteration
        )
        cfg.accum_gradient = _env_flag("PARAMFORGE_ACCUM_GRADIENT", cfg.accum_gradient)
        cfg.divide_accum_gradient = _env_flag(
            "PARAMFORGE_DIVIDE_ACCUM_GRADIENT", cfg.divide_accum_gradient
        )

        if "PARAMFORGE_EXAMPLES_PER_FIT" in os.environ:
            raw = os.environ["PARAMFORGE_EXAMPLES_PER_FIT"].strip().lower()
            cfg.examples_per_fit = None if raw in ("", "none", "all") else int(raw)
        if "PARAMFORGE_NUM_PARTITIONS" in os.environ:
            cfg.num_partitions = int(os.environ["PARAMFORGE_NUM_PARTITIONS"])
        if "PARAMFORGE_NUM_WORKERS" in os.environ:
            cfg.num_workers = int(os.environ["PARAMFORGE_NUM_WORKERS"])
        if "PARAMFORGE_SPLIT_SEED" in os.environ:
            cfg.split_seed = int(os.environ["PARAMFORGE_SPLIT_SEED"])

        cfg.validate()
        return cfg


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class ParamForgeConfig:
    """
    Master configuration combining the model and training settings.

    Usage:
        >>> config = ParamForgeConfig.from_yaml("configs/default.yaml")
        >>> config.to_yaml("configs/my_experiment.yaml")
    """
    model: MultiLayerConfiguration = field(default_factory=MultiLayerConfiguration)
    training: TrainingConfig = field(default_factory=TrainingConfig)

    def validate(self) -> None:
        self.model.validate()
        self.training.validate()

        n_params = sum(l.n_in * l.n_out + l.n_out for l in self.model.layers)
        logger.info(
            f"Config validated: {len(self.model.layers)} layers, "
            f"{n_params:,} params, updater={self.model.updater}, "
            f"partitions={self.training.num_partitions}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> ParamForgeConfig:
        """
        Load configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ConfigurationError
            If the file is empty or describes an invalid configuration.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ConfigurationError(f"Config file is empty: {path}")

        try:
            config = cls(
                model=MultiLayerConfiguration.from_dict(raw.get("model", {})),
                training=TrainingConfig(**raw.get("training", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid config in {path}: {e}") from e

        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        return {"model": self.model.to_dict(), "training": asdict(self.training)}

    @classmethod
    def for_smoke_test(cls) -> ParamForgeConfig:
        """
        Minimal configuration for quick end-to-end runs: a 4-16-3
        classifier on 2 partitions, 3 local iterations per round.
        """
        return cls(
            model=MultiLayerConfiguration(
                layers=(
                    LayerConfig(n_in=4, n_out=16, activation="tanh", num_iterations=3),
                    LayerConfig(
                        n_in=16, n_out=3, activation="softmax",
                        num_iterations=3, loss="mcxent",
                    ),
                ),
                updater="adam",
                learning_rate=1e-2,
                seed=7,
            ),
            training=TrainingConfig(
                num_partitions=2,
                num_workers=2,
                split_seed=7,
                epochs=2,
            ),
        )

    def __repr__(self) -> str:
        sizes = [self.model.layers[0].n_in] + [l.n_out for l in self.model.layers] \
            if self.model.layers else []
        mode = "accumulate" if self.training.accum_gradient else "average"
        when = "each iteration" if self.training.average_each_iteration else "end of round"
        lines = [
            "ParamForgeConfig(",
            f"  Model:    {'-'.join(str(s) for s in sizes)}, "
            f"updater={self.model.updater}, lr={self.model.learning_rate}",
            f"  Training: {mode} at {when}, "
            f"examples_per_fit={self.training.examples_per_fit}",
            f"  Workers:  {self.training.num_partitions} partitions on "
            f"{self.training.num_workers} threads",
            ")",
        ]
        return "\n".join(lines)
