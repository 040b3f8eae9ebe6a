"""
ParamForge Multilayer Network
==============================
The network the distributed core trains. It is a plain stack of fully
connected layers built from a ``MultiLayerConfiguration``, and exposes
exactly the three capabilities the orchestrator needs:

    1. Parameters as ONE flat vector (``params`` / ``set_parameters``),
       laid out layer by layer, weight then bias.
    2. Optimizer state as an ``Updater`` snapshot (``get_updater`` /
       ``set_updater``).
    3. Local training (``fit``): ``num_iterations`` optimizer steps on a
       DataSet, returning the last score (loss).

Architecture:
    features (n_in)
      → Linear → activation         (hidden layers)
      → Linear → output activation  (output layer, loss attached)
    output (n_out)

    For the "mcxent" loss the output softmax is folded into the cross
    entropy, so ``forward`` returns logits and ``output`` applies softmax.

Usage:
    >>> net = MultiLayerNetwork(conf)
    >>> net.num_params()
    131
    >>> score = net.fit(dataset)
    >>> probs = net.output(features)
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional, Protocol

import torch
import torch.nn as nn
import torch.nn.functional as F

from paramforge.config import MultiLayerConfiguration
from paramforge.data.dataset import DataSet
from paramforge.errors import ShapeMismatchError
from paramforge.model.updater import Updater, UpdaterType, build_optimizer

logger = logging.getLogger(__name__)


_ACTIVATIONS: dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "relu": F.relu,
    "tanh": torch.tanh,
    "sigmoid": torch.sigmoid,
    "identity": lambda x: x,
    "softmax": lambda x: F.softmax(x, dim=1),
    "leakyrelu": F.leaky_relu,
}


class IterationListener(Protocol):
    def iteration_done(self, network: MultiLayerNetwork, iteration: int) -> None:
        ...


class ScoreIterationListener:
    """Log the network's score every ``print_every`` iterations."""

    def __init__(self, print_every: int = 10):
        self.print_every = max(print_every, 1)

    def iteration_done(self, network: MultiLayerNetwork, iteration: int) -> None:
        if iteration % self.print_every == 0:
            logger.info(f"Score at iteration {iteration} is {network.score():.6f}")


class MultiLayerNetwork(nn.Module):
    """
    Fully connected network with a flat-parameter / updater-snapshot API.

    Parameters
    ----------
    conf : MultiLayerConfiguration
        Topology and updater settings. Validated on construction.
    """

    def __init__(self, conf: MultiLayerConfiguration):
        super().__init__()
        conf.validate()
        self.conf = conf

        self.layers = nn.ModuleList(
            nn.Linear(layer.n_in, layer.n_out) for layer in conf.layers
        )
        self.init()

        self.optimizer = build_optimizer(conf, self.parameters())
        self.listeners: list[IterationListener] = []
        self.iteration = 0
        self._score = float("nan")

    def init(self) -> None:
        """
        Initialize weights (Xavier uniform) and zero the biases.

        With ``conf.seed`` set, a private generator is used so two networks
        built from the same configuration start identical.
        """
        generator = None
        if self.conf.seed is not None:
            generator = torch.Generator().manual_seed(self.conf.seed)

        with torch.no_grad():
            for layer in self.layers:
                bound = math.sqrt(6.0 / (layer.in_features + layer.out_features))
                layer.weight.uniform_(-bound, bound, generator=generator)
                layer.bias.zero_()

    # ─── Parameters ─────────────────────────────────────────────────────

    def num_params(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def params(self) -> torch.Tensor:
        """Return a copy of all parameters as one flat vector."""
        return torch.nn.utils.parameters_to_vector(self.parameters()).detach()

    def set_parameters(self, params: torch.Tensor) -> None:
        """
        Overwrite every parameter from a flat vector.

        Raises
        ------
        ShapeMismatchError
            If ``params`` is not 1-D or its length differs from
            ``num_params()``. Vectors are never truncated or padded.
        """
        params = torch.as_tensor(params)
        expected = self.num_params()
        if params.dim() != 1 or params.numel() != expected:
            raise ShapeMismatchError(
                f"Parameter vector of shape {tuple(params.shape)} does not "
                f"match the network's {expected} parameters"
            )

        offset = 0
        with torch.no_grad():
            for p in self.parameters():
                n = p.numel()
                p.copy_(params[offset: offset + n].view_as(p))
                offset += n

    # ─── Updater ────────────────────────────────────────────────────────

    @property
    def updater_type(self) -> UpdaterType:
        return UpdaterType(self.conf.updater)

    def _named_params_by_layer(self):
        for layer in self.layers:
            yield list(layer.named_parameters())

    def get_updater(self) -> Updater:
        """Snapshot the optimizer state, one record per layer."""
        state = self.optimizer.state_dict()["state"]
        records = []
        idx = 0
        for named in self._named_params_by_layer():
            record = {}
            for name, _ in named:
                entries = {
                    key: value.detach().clone() if torch.is_tensor(value) else value
                    for key, value in state.get(idx, {}).items()
                    if value is not None
                }
                if entries:
                    record[name] = entries
                idx += 1
            records.append(record)
        return Updater(self.updater_type, tuple(records))

    def set_updater(self, updater: Updater) -> None:
        """
        Install an updater snapshot as this network's optimizer state.

        The snapshot is copied; the caller's tensors are never aliased.

        Raises
        ------
        ShapeMismatchError
            If the variant, layer count or any state tensor shape does not
            fit this network.
        """
        if updater.updater_type is not self.updater_type:
            raise ShapeMismatchError(
                f"Cannot install a {updater.updater_type.value} updater on a "
                f"network configured for {self.updater_type.value}"
            )
        if updater.num_layers != len(self.layers):
            raise ShapeMismatchError(
                f"Updater has {updater.num_layers} layer records but the "
                f"network has {len(self.layers)} layers"
            )

        # load_state_dict keeps same-dtype tensors as-is, so install a copy
        updater = updater.clone()
        new_state = {}
        idx = 0
        for record, named in zip(updater.layer_states, self._named_params_by_layer()):
            unknown = set(record) - {name for name, _ in named}
            if unknown:
                raise ShapeMismatchError(
                    f"Updater record names unknown parameters: {sorted(unknown)}"
                )
            for name, param in named:
                entries = record.get(name)
                if entries:
                    for key, value in entries.items():
                        if torch.is_tensor(value) and value.dim() > 0 \
                                and value.shape != param.shape:
                            raise ShapeMismatchError(
                                f"Updater state '{key}' for {name} has shape "
                                f"{tuple(value.shape)}, expected {tuple(param.shape)}"
                            )
                    new_state[idx] = entries
                idx += 1

        state_dict = self.optimizer.state_dict()
        state_dict["state"] = new_state
        self.optimizer.load_state_dict(state_dict)

    # ─── Forward / training ─────────────────────────────────────────────

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        x = features
        last = len(self.layers) - 1
        for i, (layer, layer_conf) in enumerate(zip(self.layers, self.conf.layers)):
            x = layer(x)
            if i == last and layer_conf.loss == "mcxent":
                # softmax is applied inside the cross entropy
                break
            x = _ACTIVATIONS[layer_conf.activation](x)
        return x

    def _loss(self, outputs: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
        if self.conf.output_layer.loss == "mcxent":
            return F.cross_entropy(outputs, labels)
        return F.mse_loss(outputs, labels)

    def _check_batch(self, data: DataSet) -> None:
        n_in = self.conf.layers[0].n_in
        n_out = self.conf.output_layer.n_out
        if data.features.shape[1] != n_in or data.labels.shape[1] != n_out:
            raise ShapeMismatchError(
                f"DataSet with {data.features.shape[1]} features and "
                f"{data.labels.shape[1]} labels does not fit a network with "
                f"n_in={n_in}, n_out={n_out}"
            )

    def fit(self, data: DataSet) -> float:
        """
        Run ``conf.num_iterations`` optimizer steps on one batch.

        Returns
        -------
        float
            The score (loss) of the last iteration.
        """
        self._check_batch(data)
        dtype = next(self.parameters()).dtype
        features = data.features.to(dtype)
        labels = data.labels.to(dtype)

        self.train()
        for _ in range(self.conf.num_iterations):
            self.optimizer.zero_grad()
            loss = self._loss(self(features), labels)
            loss.backward()
            self.optimizer.step()

            self._score = loss.item()
            self.iteration += 1
            for listener in self.listeners:
                listener.iteration_done(self, self.iteration)

        return self._score

    def score(self, data: Optional[DataSet] = None) -> float:
        """Last training score, or the loss on ``data`` when given."""
        if data is None:
            return self._score
        self._check_batch(data)
        with torch.no_grad():
            dtype = next(self.parameters()).dtype
            outputs = self(data.features.to(dtype))
            return self._loss(outputs, data.labels.to(dtype)).item()

    @torch.no_grad()
    def output(self, features: torch.Tensor) -> torch.Tensor:
        """Network output for a batch of feature rows (probabilities for mcxent)."""
        self.eval()
        dtype = next(self.parameters()).dtype
        outputs = self(torch.as_tensor(features).to(dtype))
        if self.conf.output_layer.loss == "mcxent":
            outputs = F.softmax(outputs, dim=1)
        return outputs

    def __repr__(self) -> str:
        sizes = [self.conf.layers[0].n_in] + [l.n_out for l in self.conf.layers]
        return (
            f"MultiLayerNetwork({'-'.join(str(s) for s in sizes)}, "
            f"updater={self.conf.updater}, params={self.num_params()})"
        )
