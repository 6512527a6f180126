"""Drug response data wrangling utilities."""

from .dataset import TrainingSet
from .splits import SplitManager
from .training_data import make_training_data, write_training_files

__all__ = [
    "TrainingSet",
    "SplitManager",
    "make_training_data",
    "write_training_files",
]
