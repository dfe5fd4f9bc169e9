"""
replica-train package entrypoint.

Coordinates one model replicated over several devices: cost scaling, gradient
normalization, checkpointing and batch-size fitting. Exports resolve lazily so that
importing a leaf module never pulls in torch.distributed or TensorBoard.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any


_EXPORTS: dict[str, tuple[str, str]] = {
    "TrainingOptions": ("replica_train.config", "TrainingOptions"),
    "load_options": ("replica_train.config", "load_options"),
    "FatalTrainingError": ("replica_train.runtime.contracts", "FatalTrainingError"),
    "TrainingGroup": ("replica_train.runtime.group", "TrainingGroup"),
    "TrainingScheduler": ("replica_train.training.scheduler", "TrainingScheduler"),
    "setup_logging": ("replica_train.logging", "setup_logging"),
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    target = _EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    module_name, attr_name = target
    value = getattr(import_module(module_name), attr_name)
    globals()[name] = value
    return value
