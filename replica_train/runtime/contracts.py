"""Collaborator contracts and shared value objects for the coordination layer."""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Optional
from typing import Protocol
from typing import Sequence
from typing import TYPE_CHECKING

import numpy as np
import torch

if TYPE_CHECKING:
    from replica_train.io.items import Item


class FatalTrainingError(RuntimeError):
    """Unrecoverable coordination failure; the training process must stop."""


@dataclass(frozen=True)
class GradientNormStats:
    """Running statistics of (optionally log-transformed) gradient norms."""

    window: int
    average: float
    variance: float
    use_log_transform: bool = False


class Replica(Protocol):
    """One per-device copy of the model as seen by the coordination layer."""

    device: torch.device
    throw_nan: bool

    @property
    def parameter_shape(self) -> tuple[int, ...]:
        ...

    @property
    def parameter_dtype(self) -> torch.dtype:
        ...

    def forward(self) -> None:
        """Run the name-ordered initialization pass that allocates every parameter."""
        ...

    def parameter_values(self) -> torch.Tensor:
        ...

    def set_parameter_values(self, values: torch.Tensor) -> None:
        ...

    def clear(self) -> None:
        ...

    def track_workspace(self) -> AbstractContextManager[Any]:
        ...

    def fits(self) -> bool:
        ...


class ModelPersistence(Protocol):
    """Load and save model weights for one replica."""

    def load(self, replica: Replica, path: str, mark_reloaded: bool = True) -> None:
        ...

    def save(self, replica: Replica, path: str, save_translator_config: bool = False) -> None:
        ...


class ScatterStrategy(Protocol):
    """Distribute one globally-shaped item over the local optimizer shards."""

    def scatter(
        self,
        item: "Item",
        set_shard: Callable[[int, np.ndarray], None],
        num_shards: int,
    ) -> None:
        ...


class GatherStrategy(Protocol):
    """Collect per-shard arrays into one globally-shaped array."""

    def gather(self, get_shard: Callable[[int], np.ndarray], num_shards: int) -> np.ndarray:
        ...


class ParameterDistributor(Protocol):
    """Propagate each shard owner's parameter slice to every replica."""

    def distribute(self) -> None:
        ...


class Barrier(Protocol):
    """Collective synchronization point across all workers."""

    def wait(self) -> None:
        ...


class OptimizerShard(Protocol):
    """Per-replica partition of optimizer state and smoothed parameters."""

    def load(
        self,
        items: Sequence["Item"],
        shards: Sequence["OptimizerShard"],
        backends: Sequence[torch.device],
        scatter: ScatterStrategy,
    ) -> None:
        ...

    def save(
        self,
        items: list["Item"],
        shards: Sequence["OptimizerShard"],
        gather: GatherStrategy,
    ) -> None:
        ...

    def swap_with_smoothed(self, replica: Replica, index: int, total: int, swap_avg: bool) -> None:
        ...

    def step(
        self,
        replica: Replica,
        index: int,
        total: int,
        normalization_factor: float = 1.0,
    ) -> None:
        """Update the owned parameter slice with gradients divided by the factor."""
        ...


class TrainingScheduler(Protocol):
    """Progress, gradient-norm statistics and validation owner."""

    def load(self, path: str) -> None:
        ...

    def save(self, path: str) -> None:
        ...

    def number_of_batches(self) -> int:
        ...

    def gradient_norm_stats(self) -> GradientNormStats:
        ...

    def log_gradient_norm_stats(self) -> GradientNormStats:
        ...

    def validate(self, replicas: Sequence[Replica], is_final: bool = False) -> None:
        ...


class CriterionModel(Protocol):
    """Builds the forward graph and loss for a batch on a replica."""

    def build(self, replica: Replica, batch: Any) -> Any:
        ...


class BatchFactory(Protocol):
    """Creates synthetic batches of given per-stream lengths."""

    def fake_batch(
        self,
        lengths: Sequence[int],
        vocab_sizes: Sequence[int],
        size: int,
        options: Optional[object] = None,
    ) -> Any:
        ...


class SummaryWriterLike(Protocol):
    def add_scalar(self, tag: str, scalar_value: float, global_step: Optional[int] = None) -> None:
        ...
