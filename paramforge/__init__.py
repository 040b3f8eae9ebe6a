"""
ParamForge
==========
Data-parallel training of multilayer neural networks by parameter
averaging.

The dataset is split into partitions. Each round, every partition trains
its own replica of the network, starting from a broadcast snapshot of the
canonical parameters and optimizer state. The replicas are then merged
back into one network. Parameters are averaged (or local updates
summed), and optimizer state is merged by per-variant combine rules.

Quick Start:
    >>> from paramforge.config import ParamForgeConfig
    >>> from paramforge.distributed import LocalContext
    >>> from paramforge.training import DistributedMultiLayer
    >>> config = ParamForgeConfig.from_yaml("configs/default.yaml")
    >>> with LocalContext(config.training.num_workers) as context:
    ...     master = DistributedMultiLayer(context, config.model, config.training)
    ...     network = master.fit_labeled_points(x, y, batch_size=32)

Subpackages:
    - paramforge.training    — Orchestrator, partition trainers, split scheduler
    - paramforge.aggregation — Parameter accumulator and updater-state aggregators
    - paramforge.model       — MultiLayerNetwork and Updater snapshots
    - paramforge.distributed — In-process partitioned collections and broadcasts
    - paramforge.data        — DataSet batches and input conversion
"""

__version__ = "0.1.0"
