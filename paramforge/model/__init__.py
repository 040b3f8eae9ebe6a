"""
paramforge.model — Network Collaborator
========================================
The network the distributed core trains, reduced to what the core needs:

    - network.py — MultiLayerNetwork: flat parameter vector in/out,
                   updater snapshot in/out, local ``fit`` on a DataSet
    - updater.py — UpdaterType (closed set of optimizer variants),
                   Updater snapshot, torch optimizer construction

Information Flow (one partition, one round):
    conf JSON → MultiLayerNetwork → set_parameters(broadcast params)
              → set_updater(broadcast updater) → fit(local data)
              → params() + get_updater() → TrainingResult
"""

from paramforge.model.updater import Updater, UpdaterType, build_optimizer
from paramforge.model.network import MultiLayerNetwork, ScoreIterationListener
