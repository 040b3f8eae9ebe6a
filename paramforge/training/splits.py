"""
ParamForge Split Scheduler
===========================
Decides how many sequential rounds a dataset is trained in when a
per-round example budget is set.

The split count rounds UP: 1200 examples with a budget of 1000 gives two
rounds of roughly 600 examples each, not one round of 1000 and a dropped
remainder.
"""

from __future__ import annotations

from typing import Optional

from paramforge.errors import ConfigurationError, NumericDegeneracyError


def compute_num_splits(total_examples: int, examples_per_fit: Optional[int]) -> int:
    """
    Number of rounds needed to train ``total_examples`` within the budget.

    Parameters
    ----------
    total_examples : int
        Element count of the full dataset.
    examples_per_fit : int or None
        Per-round budget. None means unbounded (one round).

    Raises
    ------
    ConfigurationError
        If the budget is not positive.
    NumericDegeneracyError
        If there are no examples.
    """
    if examples_per_fit is not None and examples_per_fit < 1:
        raise ConfigurationError(
            f"examples_per_fit must be >= 1 or None, got {examples_per_fit}"
        )
    if total_examples <= 0:
        raise NumericDegeneracyError(
            f"Cannot schedule training over {total_examples} examples"
        )
    if examples_per_fit is None:
        return 1
    return -(-total_examples // examples_per_fit)


def split_weights(num_splits: int) -> list[float]:
    """Equal weights ``1 / num_splits`` for a random split."""
    if num_splits < 1:
        raise NumericDegeneracyError(f"num_splits must be >= 1, got {num_splits}")
    return [1.0 / num_splits] * num_splits
