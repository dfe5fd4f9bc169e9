"""
Device resolution for replicas.

The same configuration runs on CPU during development (gloo) and on GPUs in
production (nccl); only the resolved devices and backend differ.
"""

from __future__ import annotations

import os
from typing import Literal
from typing import Optional
from typing import Sequence

import torch
import torch.distributed as dist


def get_backend(
    backend: Optional[Literal["gloo", "nccl", "auto"]] = None,
) -> Literal["gloo", "nccl"]:
    """
    Get the distributed backend for `torch.distributed.init_process_group`.

    Args:
        backend: Backend to use. If 'auto' or None, detect based on CUDA availability.

    Returns:
        Backend string ('gloo' or 'nccl')
    """
    if backend == "auto" or backend is None:
        return "nccl" if torch.cuda.is_available() else "gloo"

    if backend not in ("gloo", "nccl"):
        raise ValueError(f"Unknown backend: {backend}")

    if backend == "nccl" and not torch.cuda.is_available():
        raise RuntimeError(
            "Requested 'nccl' backend but CUDA is not available. "
            "Use backend='gloo' for CPU distributed training."
        )

    return backend


def resolve_devices(devices: Sequence[str]) -> list[torch.device]:
    """
    Map configured device names to one `torch.device` per replica.

    Accepts `"cpu"`, `"cuda"`/`"cuda:N"`, bare GPU ordinals such as `"0"`, and
    `"auto"`, which expands to every visible GPU or a single CPU replica.

    Examples:
        >>> resolve_devices(["cpu", "cpu"])
        [device(type='cpu'), device(type='cpu')]
    """
    resolved: list[torch.device] = []
    for name in devices:
        name = str(name).strip()
        if name == "auto":
            count = torch.cuda.device_count() if torch.cuda.is_available() else 0
            if count == 0:
                resolved.append(torch.device("cpu"))
            else:
                resolved.extend(torch.device(f"cuda:{index}") for index in range(count))
        elif name.isdigit():
            resolved.append(torch.device(f"cuda:{int(name)}"))
        else:
            resolved.append(torch.device(name))

    gpus = [device for device in resolved if device.type == "cuda"]
    if len(set(gpus)) != len(gpus):
        raise ValueError(f"GPU devices must not repeat: {[str(device) for device in resolved]}")
    if not resolved:
        raise ValueError("at least one device must be configured")
    return resolved


def init_distributed(
    backend: Optional[Literal["gloo", "nccl", "auto"]] = None,
) -> tuple[int, int]:
    """
    Join the process group described by the launcher environment.

    Reads `WORLD_SIZE` (and, through the `env://` init method, `RANK`, `MASTER_ADDR`
    and `MASTER_PORT`) as set by `torchrun` or a spawning test. Single-process runs
    skip initialization.

    Returns:
        `(rank, world_size)` of this worker.
    """
    world_size = int(os.environ.get("WORLD_SIZE", "1"))
    if world_size <= 1:
        return 0, 1
    if not dist.is_initialized():
        dist.init_process_group(backend=get_backend(backend))
    return int(dist.get_rank()), int(dist.get_world_size())
