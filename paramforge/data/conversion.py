"""
ParamForge Data Conversion
===========================
Turns caller-supplied data into ``DataSet`` batches the orchestrator can
train on.

Two sources are supported:

    1. LABELED POINTS — numpy arrays of features and integer class labels.
       Labels are one-hot encoded to the output layer's arity and the rows
       are chunked into minibatches.

    2. TEXT RECORDS — one example per line. Parsing the line is the job of
       a caller-supplied record reader (any callable ``str -> sequence``);
       ``RecordReaderFunction`` only picks out the label column and
       one-hot encodes it.

Usage:
    >>> batches = labeled_points_to_datasets(x, y, num_classes=3, batch_size=32)
    >>> to_ds = RecordReaderFunction(lambda line: line.split(","), label_index=4,
    ...                              num_classes=3)
    >>> ds = to_ds("5.1,3.5,1.4,0.2,0")
"""

from __future__ import annotations

import logging
from typing import Callable, Sequence

import numpy as np
import torch

from paramforge.data.dataset import DataSet
from paramforge.errors import ShapeMismatchError

logger = logging.getLogger(__name__)

RecordReader = Callable[[str], Sequence]


def one_hot(labels: np.ndarray, num_classes: int) -> np.ndarray:
    """One-hot encode integer class labels as float32 rows."""
    labels = np.asarray(labels).astype(np.int64).reshape(-1)
    if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
        raise ShapeMismatchError(
            f"Labels must be in [0, {num_classes}), got range "
            f"[{labels.min()}, {labels.max()}]"
        )
    encoded = np.zeros((labels.size, num_classes), dtype=np.float32)
    encoded[np.arange(labels.size), labels] = 1.0
    return encoded


def labeled_points_to_datasets(
    features: np.ndarray,
    labels: np.ndarray,
    num_classes: int,
    batch_size: int,
) -> list[DataSet]:
    """
    Convert feature rows and class labels into minibatch DataSets.

    Parameters
    ----------
    features : np.ndarray
        Shape (n_examples, n_features).
    labels : np.ndarray
        Shape (n_examples,), integer class indices.
    num_classes : int
        Output arity of the network (width of the one-hot rows).
    batch_size : int
        Examples per DataSet. The last batch may be smaller.

    Returns
    -------
    list[DataSet]
        ceil(n_examples / batch_size) batches.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    features = np.asarray(features, dtype=np.float32)
    if features.ndim == 1:
        features = features.reshape(1, -1)
    targets = one_hot(labels, num_classes)
    if features.shape[0] != targets.shape[0]:
        raise ShapeMismatchError(
            f"Got {features.shape[0]} feature rows but {targets.shape[0]} labels"
        )

    batches = []
    for start in range(0, features.shape[0], batch_size):
        stop = start + batch_size
        batches.append(
            DataSet(
                features=torch.from_numpy(features[start:stop].copy()),
                labels=torch.from_numpy(targets[start:stop].copy()),
            )
        )

    logger.debug(
        f"Converted {features.shape[0]:,} labeled points into "
        f"{len(batches)} batches of up to {batch_size}"
    )
    return batches


class RecordReaderFunction:
    """
    Map one text line to a single-example DataSet.

    Parameters
    ----------
    record_reader : callable
        Parses a line into a sequence of numeric values.
    label_index : int
        Position of the class label in the parsed record. Negative
        indices count from the end.
    num_classes : int
        Output arity of the network.
    """

    def __init__(self, record_reader: RecordReader, label_index: int, num_classes: int):
        self.record_reader = record_reader
        self.label_index = label_index
        self.num_classes = num_classes

    def __call__(self, line: str) -> DataSet:
        values = [float(v) for v in self.record_reader(line)]
        if not -len(values) <= self.label_index < len(values):
            raise ShapeMismatchError(
                f"label_index {self.label_index} is out of range for a record "
                f"with {len(values)} values"
            )
        label = values.pop(self.label_index)
        features = np.asarray([values], dtype=np.float32)
        return DataSet(
            features=torch.from_numpy(features),
            labels=torch.from_numpy(one_hot(np.asarray([label]), self.num_classes)),
        )
