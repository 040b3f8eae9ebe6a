"""
paramforge.data — Training Data
================================
The element type of every partitioned collection and the helpers that
build it from caller data:

    1. **DataSet** (`dataset.py`):
       One labeled batch — features and one-hot labels, one row per
       example. Partition trainers merge their local DataSets into one
       batch before training.

    2. **Conversion** (`conversion.py`):
       numpy labeled points → minibatch DataSets, and text lines →
       single-example DataSets via a caller-supplied record reader.
"""

from paramforge.data.dataset import DataSet
from paramforge.data.conversion import (
    RecordReaderFunction,
    labeled_points_to_datasets,
    one_hot,
)
