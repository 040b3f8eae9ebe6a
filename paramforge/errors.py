"""
ParamForge Error Types
=======================
Every failure the training core can raise. Nothing in the core retries or
recovers locally: errors propagate to the caller of the top-level
``fit_*`` entry point, wrapped in a ``TrainingPhaseError`` that names the
phase of the round that failed.

Taxonomy:
    ConfigurationError      — malformed or inconsistent configuration
    ShapeMismatchError      — parameter / updater length or shape mismatch
    NumericDegeneracyError  — zero partitions or zero examples
    EmptyPartitionError     — a single partition holds no examples
    PartitionTaskError      — a partition task raised during a job
    TrainingPhaseError      — wraps any of the above with the round phase
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional


class ParamForgeError(Exception):
    """Base class for all ParamForge errors."""


class ConfigurationError(ParamForgeError, ValueError):
    """Raised when a configuration is malformed or inconsistent."""


class ShapeMismatchError(ParamForgeError, ValueError):
    """Raised when a parameter vector or updater state does not fit the model."""


class NumericDegeneracyError(ParamForgeError, ArithmeticError):
    """Raised instead of dividing by a zero partition or example count."""


class EmptyPartitionError(NumericDegeneracyError):
    """Raised by a partition trainer whose partition holds no examples."""


class PartitionTaskError(ParamForgeError, RuntimeError):
    """
    A partition task failed, aborting the whole job.

    Parameters
    ----------
    partition : int
        Index of the partition whose task raised.
    cause : BaseException
        The exception raised inside the task.
    """

    def __init__(self, partition: int, cause: BaseException):
        self.partition = partition
        self.cause = cause
        super().__init__(
            f"Task for partition {partition} failed: "
            f"{type(cause).__name__}: {cause}"
        )


class TrainingPhaseError(ParamForgeError, RuntimeError):
    """
    A round of distributed training failed.

    Parameters
    ----------
    phase : str
        Which phase failed: "broadcast", "local train", "parameter merge"
        or "updater merge".
    cause : BaseException or None
        The underlying error (also chained as ``__cause__``).
    """

    def __init__(self, phase: str, cause: Optional[BaseException] = None):
        self.phase = phase
        self.cause = cause
        message = f"Distributed training failed during {phase}"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)


@contextmanager
def training_phase(phase: str) -> Iterator[None]:
    """Re-raise any failure inside the block as a ``TrainingPhaseError``."""
    try:
        yield
    except TrainingPhaseError:
        raise
    except Exception as exc:
        raise TrainingPhaseError(phase, exc) from exc
