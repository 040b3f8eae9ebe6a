"""
paramforge.training — Distributed Training Core
================================================
Training happens in rounds, like a committee drafting one document:

    1. The chair hands every member a copy of the current draft
       (broadcast parameters + updater state)
    2. Each member edits their copy using only their own notes
       (partition trainer on one partition)
    3. The chair merges all edited copies into the next draft
       (parameter accumulator + updater aggregator)

Components:
    - orchestrator.py      — DistributedMultiLayer: owns the canonical
                             network, runs rounds, chooses the averaging
                             policy
    - partition_trainer.py — per-partition local training, one
                             TrainingResult per partition
    - splits.py            — how many rounds a per-round example budget
                             needs

Information Flow:
    PartitionedCollection[DataSet]
        → (optional) random_split into ceil(count / budget) subsets
        → per subset: broadcast → partition trainers → merge → install
"""

from paramforge.training.orchestrator import DistributedMultiLayer
from paramforge.training.partition_trainer import (
    GradientAccumulationTrainer,
    ParameterAveragingTrainer,
    PartitionTrainer,
    TrainingResult,
)
from paramforge.training.splits import compute_num_splits, split_weights
