"""Per-device model replicas, flat parameter views and workspace accounting."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable
from typing import Iterator
from typing import Optional

import torch
import torch.nn as nn
from torch.nn.parameter import is_lazy
from torch.nn.utils import parameters_to_vector
from torch.nn.utils import vector_to_parameters

from replica_train.logging import get_logger
from replica_train.runtime.contracts import FatalTrainingError


logger = get_logger(__name__)


def _ceil_div(n: int, d: int) -> int:
    return (n + d - 1) // d


def shard_range(numel: int, index: int, total: int) -> tuple[int, int]:
    """
    Return `[begin, end)` of shard `index` out of `total` over a flat vector.

    Ceil-div chunks give every shard deterministic bounds even when `numel` is not
    divisible by `total`; trailing shards may be short or empty.
    """
    if total < 1:
        raise ValueError("total must be >= 1")
    if not (0 <= index < total):
        raise ValueError(f"shard index {index} out of range for {total} shards")
    chunk_size = _ceil_div(numel, total)
    begin = min(index * chunk_size, numel)
    end = min(begin + chunk_size, numel)
    return begin, end


class Workspace:
    """
    Fixed per-device memory budget for one training step.

    `track()` measures the peak memory of one graph construction: CUDA allocator
    peak statistics on GPUs, otherwise the bytes of all tensors saved for backward.
    """

    def __init__(self, capacity_mb: int, device: torch.device) -> None:
        if capacity_mb < 0:
            raise ValueError("workspace must be >= 0 MB")
        self.capacity_bytes = int(capacity_mb) * 1024 * 1024
        self.device = torch.device(device)
        self.last_peak_bytes = 0

    @contextmanager
    def track(self) -> Iterator["Workspace"]:
        self.last_peak_bytes = 0
        if self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
            torch.cuda.reset_peak_memory_stats(self.device)
            baseline = torch.cuda.memory_allocated(self.device)
            try:
                yield self
            finally:
                torch.cuda.synchronize(self.device)
                peak = torch.cuda.max_memory_allocated(self.device)
                self.last_peak_bytes = max(0, int(peak - baseline))
            return

        saved_bytes = 0

        def _pack(tensor: torch.Tensor) -> torch.Tensor:
            nonlocal saved_bytes
            saved_bytes += tensor.numel() * tensor.element_size()
            return tensor

        try:
            with torch.autograd.graph.saved_tensors_hooks(_pack, lambda tensor: tensor):
                yield self
        finally:
            self.last_peak_bytes = saved_bytes

    def fits(self) -> bool:
        if self.capacity_bytes == 0:
            return True
        return self.last_peak_bytes <= self.capacity_bytes

    def reset(self) -> None:
        self.last_peak_bytes = 0


class GraphReplica:
    """
    One copy of the model on one device.

    Parameters are always addressed in name order; the flat parameter vector is that
    order concatenated. Checkpoint master copies, optimizer shards and parameter
    distribution all rely on this ordering.
    """

    def __init__(
        self,
        module: nn.Module,
        device: torch.device | str,
        *,
        element_type: torch.dtype = torch.float32,
        initializer: Optional[Callable[[nn.Module], None]] = None,
        workspace_mb: int = 0,
        throw_nan: bool = False,
    ) -> None:
        self.device = torch.device(device)
        self.element_type = element_type
        self.module = module.to(device=self.device)
        self.initializer = initializer
        self.workspace = Workspace(workspace_mb, self.device)
        self.throw_nan = throw_nan
        self._allocated = False

    def forward(self) -> None:
        """
        Run the initialization pass that allocates every parameter in name order.

        Lazy modules only get their parameters on a real forward, so merely moving the
        module is not enough before values are copied into the flat parameter vector.
        """
        if self.initializer is not None:
            with torch.no_grad():
                self.initializer(self.module)
        lazy = [name for name, param in self.module.named_parameters() if is_lazy(param)]
        if lazy:
            raise FatalTrainingError(
                f"Parameters still uninitialized after forward pass: {lazy[:5]}"
            )
        if not self._allocated:
            self.module.to(device=self.device, dtype=self.element_type)
            self._allocated = True

    def ordered_parameters(self) -> list[tuple[str, nn.Parameter]]:
        return sorted(self.module.named_parameters(), key=lambda pair: pair[0])

    def _ensure_allocated(self) -> None:
        if not self._allocated:
            self.forward()

    @property
    def parameter_shape(self) -> tuple[int, ...]:
        self._ensure_allocated()
        return (sum(param.numel() for _, param in self.ordered_parameters()),)

    @property
    def parameter_dtype(self) -> torch.dtype:
        return self.element_type

    def parameter_values(self) -> torch.Tensor:
        """Return a detached copy of the flat parameter vector."""
        self._ensure_allocated()
        params = [param for _, param in self.ordered_parameters()]
        return parameters_to_vector(params).detach().clone()

    def set_parameter_values(self, values: torch.Tensor) -> None:
        self._ensure_allocated()
        expected = self.parameter_shape
        if tuple(values.shape) != expected:
            raise FatalTrainingError(
                f"Parameter vector shape {tuple(values.shape)} does not match replica shape {expected}"
            )
        params = [param for _, param in self.ordered_parameters()]
        with torch.no_grad():
            vector_to_parameters(values.to(device=self.device, dtype=self.element_type), params)

    def parameter_slice(self, begin: int, end: int) -> torch.Tensor:
        return self.parameter_values()[begin:end]

    def set_parameter_slice(self, begin: int, end: int, values: torch.Tensor) -> None:
        if end <= begin:
            return
        flat = self.parameter_values()
        flat[begin:end] = values.to(device=flat.device, dtype=flat.dtype)
        self.set_parameter_values(flat)

    def parameter_gradients(self) -> torch.Tensor:
        """Return the flat gradient vector; parameters without gradients contribute zeros."""
        self._ensure_allocated()
        grads = []
        for _, param in self.ordered_parameters():
            grad = param.grad
            grads.append(
                torch.zeros(param.numel(), dtype=param.dtype, device=param.device)
                if grad is None
                else grad.detach().reshape(-1)
            )
        if not grads:
            return torch.zeros(0, dtype=self.element_type, device=self.device)
        return torch.cat(grads)

    def clear(self) -> None:
        """Drop per-step transient state: gradients and workspace measurements."""
        self.module.zero_grad(set_to_none=True)
        self.workspace.reset()

    @contextmanager
    def track_workspace(self) -> Iterator[Workspace]:
        with self.workspace.track() as workspace:
            yield workspace

    def fits(self) -> bool:
        return self.workspace.fits()
