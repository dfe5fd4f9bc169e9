"""
Scatter/gather/distribute/barrier strategies used at checkpoint and swap boundaries.

Local strategies cover several replicas inside one process. Process-group strategies
extend them over `torch.distributed`, where every rank owns `num_shards` consecutive
shards of a flat vector split into `world_size * num_shards` ceil-div chunks.
"""

from __future__ import annotations

from typing import Callable
from typing import Sequence

import numpy as np
import torch
import torch.distributed as dist

from replica_train.io.items import Item
from replica_train.logging import get_logger
from replica_train.runtime.replica import GraphReplica
from replica_train.runtime.replica import shard_range


logger = get_logger(__name__)


def _is_distributed() -> bool:
    return dist.is_available() and dist.is_initialized()


def _world_size() -> int:
    return int(dist.get_world_size()) if _is_distributed() else 1


def _rank() -> int:
    return int(dist.get_rank()) if _is_distributed() else 0


class NoOpBarrier:
    """Barrier for single-process runs."""

    def wait(self) -> None:
        return None


class ProcessGroupBarrier:
    """`dist.barrier()` when a process group is up, otherwise a no-op."""

    def wait(self) -> None:
        if _is_distributed():
            dist.barrier()


class LocalScatter:
    """Split a flat item over the shards of this process."""

    def __init__(self, rank: int = 0, world_size: int = 1) -> None:
        self.rank = rank
        self.world_size = world_size

    def scatter(
        self,
        item: Item,
        set_shard: Callable[[int, np.ndarray], None],
        num_shards: int,
    ) -> None:
        flat = item.data.reshape(-1)
        total = self.world_size * num_shards
        for index in range(num_shards):
            begin, end = shard_range(flat.size, self.rank * num_shards + index, total)
            set_shard(index, flat[begin:end].copy())


class ProcessGroupScatter(LocalScatter):
    """
    Every rank reads the full item from shared storage and keeps its own portion.

    No bytes move over the network; the global layout comes from the process group.
    """

    def __init__(self) -> None:
        super().__init__(rank=_rank(), world_size=_world_size())


class LocalGather:
    """Concatenate the shards of this process in index order."""

    def gather(self, get_shard: Callable[[int], np.ndarray], num_shards: int) -> np.ndarray:
        pieces = [np.asarray(get_shard(index)).reshape(-1) for index in range(num_shards)]
        if not pieces:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(pieces)


class ProcessGroupGather(LocalGather):
    """Gather local shards, then all ranks' portions in rank order."""

    def gather(self, get_shard: Callable[[int], np.ndarray], num_shards: int) -> np.ndarray:
        local = super().gather(get_shard, num_shards)
        if not _is_distributed():
            return local
        portions: list[object] = [None] * _world_size()
        dist.all_gather_object(portions, local)
        return np.concatenate([np.asarray(portion).reshape(-1) for portion in portions])


class LocalParameterDistributor:
    """
    Copy each shard owner's parameter slice into every local replica.

    Replica `i` owns shard `i`; after a swap or update only that slice is current on
    replica `i`, so the slices are assembled and written back to all replicas.
    """

    def __init__(
        self,
        replicas: Sequence[GraphReplica],
        *,
        rank: int = 0,
        world_size: int = 1,
    ) -> None:
        self.replicas = list(replicas)
        self.rank = rank
        self.world_size = world_size

    def _owned_region(self, numel: int) -> tuple[int, int]:
        num_shards = len(self.replicas)
        total = self.world_size * num_shards
        begin, _ = shard_range(numel, self.rank * num_shards, total)
        _, end = shard_range(numel, self.rank * num_shards + num_shards - 1, total)
        return begin, end

    def _assemble_local(self) -> torch.Tensor:
        num_shards = len(self.replicas)
        total = self.world_size * num_shards
        flat = self.replicas[0].parameter_values()
        for index, replica in enumerate(self.replicas):
            begin, end = shard_range(flat.numel(), self.rank * num_shards + index, total)
            if end > begin:
                flat[begin:end] = replica.parameter_slice(begin, end).to(
                    device=flat.device, dtype=flat.dtype
                )
        return flat

    def distribute(self) -> None:
        if not self.replicas:
            return
        flat = self._assemble_local()
        for replica in self.replicas:
            replica.set_parameter_values(flat)


class ProcessGroupParameterDistributor(LocalParameterDistributor):
    """Local distribution followed by an all-gather of every rank's owned region."""

    def __init__(self, replicas: Sequence[GraphReplica]) -> None:
        super().__init__(replicas, rank=_rank(), world_size=_world_size())

    def distribute(self) -> None:
        if not self.replicas:
            return
        flat = self._assemble_local()
        if self.world_size > 1:
            flat = self._all_gather_regions(flat)
        for replica in self.replicas:
            replica.set_parameter_values(flat)

    def _all_gather_regions(self, flat: torch.Tensor) -> torch.Tensor:
        numel = flat.numel()
        num_shards = len(self.replicas)
        total = self.world_size * num_shards
        chunk_size = (numel + total - 1) // total
        region_size = chunk_size * num_shards

        # all_gather needs equal sizes, so pad each rank's region.
        begin, end = self._owned_region(numel)
        send = torch.zeros(region_size, dtype=flat.dtype, device=flat.device)
        if end > begin:
            send[: end - begin].copy_(flat[begin:end])
        gather_list = [torch.empty_like(send) for _ in range(self.world_size)]
        dist.all_gather(gather_list, send)
        return torch.cat(gather_list, dim=0)[:numel]
