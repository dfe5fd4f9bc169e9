from .batch import BatchStats
from .batch import CorpusBatch
from .batch import SyntheticBatchFactory
