"""
Distributed strategies for replica-train.

Key components:
- devices: replica device resolution and backend selection
- collectives: scatter/gather/distribute/barrier strategies, local and process-group
"""

from replica_train.distributed.collectives import LocalGather
from replica_train.distributed.collectives import LocalParameterDistributor
from replica_train.distributed.collectives import LocalScatter
from replica_train.distributed.collectives import NoOpBarrier
from replica_train.distributed.collectives import ProcessGroupBarrier
from replica_train.distributed.collectives import ProcessGroupGather
from replica_train.distributed.collectives import ProcessGroupParameterDistributor
from replica_train.distributed.collectives import ProcessGroupScatter
from replica_train.distributed.devices import get_backend
from replica_train.distributed.devices import init_distributed
from replica_train.distributed.devices import resolve_devices

__all__ = [
    "LocalGather",
    "LocalParameterDistributor",
    "LocalScatter",
    "NoOpBarrier",
    "ProcessGroupBarrier",
    "ProcessGroupGather",
    "ProcessGroupParameterDistributor",
    "ProcessGroupScatter",
    "get_backend",
    "init_distributed",
    "resolve_devices",
]
