"""
ParamForge DataSet
===================
A ``DataSet`` is one labeled batch: a 2-D feature tensor and a 2-D label
tensor with one row per example. It is the element type of every
partitioned collection the orchestrator trains on. An element may hold a
single example or a whole minibatch.

Usage:
    >>> ds = DataSet(torch.randn(8, 4), torch.eye(3)[torch.randint(0, 3, (8,))])
    >>> ds.num_examples()
    8
    >>> merged = DataSet.merge([ds, ds])
    >>> merged.num_examples()
    16
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import torch

from paramforge.errors import ShapeMismatchError


@dataclass(frozen=True, eq=False)
class DataSet:
    """
    Features and labels for a batch of examples.

    Parameters
    ----------
    features : torch.Tensor
        Shape (n_examples, n_features).
    labels : torch.Tensor
        Shape (n_examples, n_labels). One-hot rows for classification.
    """
    features: torch.Tensor
    labels: torch.Tensor

    def __post_init__(self):
        if self.features.dim() != 2 or self.labels.dim() != 2:
            raise ShapeMismatchError(
                f"DataSet features and labels must be 2-D, got "
                f"{tuple(self.features.shape)} and {tuple(self.labels.shape)}"
            )
        if self.features.shape[0] != self.labels.shape[0]:
            raise ShapeMismatchError(
                f"DataSet has {self.features.shape[0]} feature rows but "
                f"{self.labels.shape[0]} label rows"
            )

    def num_examples(self) -> int:
        return self.features.shape[0]

    @staticmethod
    def merge(datasets: Sequence[DataSet]) -> DataSet:
        """Concatenate datasets row-wise into one batch."""
        if not datasets:
            raise ValueError("Cannot merge an empty list of DataSets")
        if len(datasets) == 1:
            return datasets[0]
        return DataSet(
            features=torch.cat([d.features for d in datasets], dim=0),
            labels=torch.cat([d.labels for d in datasets], dim=0),
        )

    def __repr__(self) -> str:
        return (
            f"DataSet(examples={self.num_examples()}, "
            f"features={self.features.shape[1]}, labels={self.labels.shape[1]})"
        )
