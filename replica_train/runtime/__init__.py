"""Training-coordination runtime.

The package uses lazy exports to avoid import cycles between the item I/O layer and
runtime contracts.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "BatchFitProber": ("replica_train.runtime.batch_fit", "BatchFitProber"),
    "number_of_input_streams": ("replica_train.runtime.batch_fit", "number_of_input_streams"),
    "CheckpointCoordinator": ("replica_train.runtime.checkpoint", "CheckpointCoordinator"),
    "Barrier": ("replica_train.runtime.contracts", "Barrier"),
    "BatchFactory": ("replica_train.runtime.contracts", "BatchFactory"),
    "CriterionModel": ("replica_train.runtime.contracts", "CriterionModel"),
    "FatalTrainingError": ("replica_train.runtime.contracts", "FatalTrainingError"),
    "GatherStrategy": ("replica_train.runtime.contracts", "GatherStrategy"),
    "GradientNormStats": ("replica_train.runtime.contracts", "GradientNormStats"),
    "ModelPersistence": ("replica_train.runtime.contracts", "ModelPersistence"),
    "OptimizerShard": ("replica_train.runtime.contracts", "OptimizerShard"),
    "ParameterDistributor": ("replica_train.runtime.contracts", "ParameterDistributor"),
    "Replica": ("replica_train.runtime.contracts", "Replica"),
    "ScatterStrategy": ("replica_train.runtime.contracts", "ScatterStrategy"),
    "TrainingScheduler": ("replica_train.runtime.contracts", "TrainingScheduler"),
    "CostScaleController": ("replica_train.runtime.cost_scaling", "CostScaleController"),
    "CostScaleEvent": ("replica_train.runtime.cost_scaling", "CostScaleEvent"),
    "CostScaleState": ("replica_train.runtime.cost_scaling", "CostScaleState"),
    "TrainingGroup": ("replica_train.runtime.group", "TrainingGroup"),
    "GradientNormOutlierDetector": (
        "replica_train.runtime.normalization",
        "GradientNormOutlierDetector",
    ),
    "NormalizationFactorComputer": (
        "replica_train.runtime.normalization",
        "NormalizationFactorComputer",
    ),
    "GraphReplica": ("replica_train.runtime.replica", "GraphReplica"),
    "Workspace": ("replica_train.runtime.replica", "Workspace"),
    "shard_range": ("replica_train.runtime.replica", "shard_range"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily resolve runtime exports to avoid import-time dependency cycles."""
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
