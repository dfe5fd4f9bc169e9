"""Per-replica AdamW shard with optional fp32 master copy and exponential smoothing."""

from __future__ import annotations

from typing import Optional
from typing import Sequence

import numpy as np
import torch

from replica_train.io.items import Item
from replica_train.io.items import MASTER_PARAMETERS
from replica_train.io.items import find_item
from replica_train.logging import get_logger
from replica_train.runtime.contracts import GatherStrategy
from replica_train.runtime.contracts import ScatterStrategy
from replica_train.runtime.replica import GraphReplica
from replica_train.runtime.replica import shard_range


logger = get_logger(__name__)

ADAM_MT = "adam_mt"
ADAM_VT = "adam_vt"
ADAM_STEP = "adam_step"
EXP_SMOOTHING = "exp_smoothing"


class ShardedAdam:
    """
    AdamW state for one slice of the flat parameter vector.

    Shard `index` of `total` owns `shard_range(numel, rank * total + index,
    world_size * total)`; the shard keeps moments, an optional fp32 master copy and
    an optional smoothed (EMA) copy of that slice only.
    """

    def __init__(
        self,
        *,
        lr: float = 1e-3,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
        weight_decay: float = 0.0,
        smoothing: float = 0.0,
        keep_master_copy: bool = False,
        rank: int = 0,
        world_size: int = 1,
    ) -> None:
        if not (0.0 <= smoothing < 1.0):
            raise ValueError("smoothing must be in [0, 1)")
        self.lr = float(lr)
        self.betas = tuple(betas)
        self.eps = float(eps)
        self.weight_decay = float(weight_decay)
        self.smoothing = float(smoothing)
        self.keep_master_copy = keep_master_copy
        self.rank = rank
        self.world_size = world_size

        self.step_count = 0
        self.exp_avg: Optional[torch.Tensor] = None
        self.exp_avg_sq: Optional[torch.Tensor] = None
        self.main_param: Optional[torch.Tensor] = None
        self.smoothed: Optional[torch.Tensor] = None
        self.swapped = False

    def shard_bounds(self, numel: int, index: int, total: int) -> tuple[int, int]:
        return shard_range(numel, self.rank * total + index, self.world_size * total)

    def _init_state(self, values: torch.Tensor) -> None:
        values = values.detach().float()
        if self.exp_avg is None or self.exp_avg.numel() != values.numel():
            self.exp_avg = torch.zeros_like(values)
            self.exp_avg_sq = torch.zeros_like(values)
            self.main_param = None
            self.smoothed = None
        # Restored checkpoints may lack the optional copies.
        if self.keep_master_copy and self.main_param is None:
            self.main_param = values.clone()
        if self.smoothing > 0.0 and self.smoothed is None:
            self.smoothed = values.clone()

    @torch.no_grad()
    def step(
        self,
        replica: GraphReplica,
        index: int,
        total: int,
        normalization_factor: float = 1.0,
    ) -> None:
        """Apply one AdamW step to the owned slice with `grad / normalization_factor`."""
        numel = replica.parameter_shape[0]
        begin, end = self.shard_bounds(numel, index, total)
        if end <= begin:
            return
        if self.swapped:
            raise RuntimeError("cannot step while smoothed parameters are swapped in")

        live = replica.parameter_slice(begin, end)
        self._init_state(live)
        assert self.exp_avg is not None and self.exp_avg_sq is not None

        beta1, beta2 = self.betas
        self.step_count += 1
        step = self.step_count

        grad = replica.parameter_gradients()[begin:end].float().div_(float(normalization_factor))
        param = self.main_param if self.main_param is not None else live.float()

        self.exp_avg.mul_(beta1).add_(grad, alpha=1.0 - beta1)
        self.exp_avg_sq.mul_(beta2).addcmul_(grad, grad, value=1.0 - beta2)

        bias_correction1 = 1.0 - float(beta1) ** step
        bias_correction2 = 1.0 - float(beta2) ** step
        denom = self.exp_avg_sq.sqrt().div_(bias_correction2**0.5).add_(self.eps)
        step_size = self.lr / bias_correction1

        param.mul_(1.0 - self.lr * self.weight_decay)
        param.addcdiv_(self.exp_avg, denom, value=-step_size)

        if self.smoothed is not None:
            self.smoothed.mul_(1.0 - self.smoothing).add_(param, alpha=self.smoothing)

        replica.set_parameter_slice(begin, end, param)

    def swap_with_smoothed(
        self,
        replica: GraphReplica,
        index: int,
        total: int,
        swap_avg: bool,
    ) -> None:
        """
        Exchange the owned live slice with the smoothed copy.

        `swap_avg=True` puts smoothed values into the replica, `False` puts the
        originals back; repeating the current direction does nothing.
        """
        if self.smoothed is None or swap_avg == self.swapped:
            return
        numel = replica.parameter_shape[0]
        begin, end = self.shard_bounds(numel, index, total)
        live = replica.parameter_slice(begin, end).float()
        replica.set_parameter_slice(begin, end, self.smoothed)
        self.smoothed = live
        self.swapped = swap_avg

    def save(
        self,
        items: list[Item],
        shards: Sequence["ShardedAdam"],
        gather: GatherStrategy,
    ) -> None:
        """Append gathered state of all `shards` to `items`; called on shard 0 only."""
        if any(shard.exp_avg is None for shard in shards):
            logger.warning("Optimizer state not initialized yet, nothing to save")
            return

        def _gather(attr: str) -> np.ndarray:
            return gather.gather(
                lambda index: getattr(shards[index], attr).detach().float().cpu().numpy(),
                len(shards),
            )

        items.append(Item.from_array(ADAM_MT, _gather("exp_avg")))
        items.append(Item.from_array(ADAM_VT, _gather("exp_avg_sq")))
        items.append(Item.from_array(ADAM_STEP, np.asarray([self.step_count], dtype=np.int64)))
        if self.smoothing > 0.0:
            items.append(Item.from_array(EXP_SMOOTHING, _gather("smoothed")))
        if self.keep_master_copy:
            items.append(Item.from_array(MASTER_PARAMETERS, _gather("main_param")))

    def load(
        self,
        items: Sequence[Item],
        shards: Sequence["ShardedAdam"],
        backends: Sequence[torch.device],
        scatter: ScatterStrategy,
    ) -> None:
        """Scatter saved state into every shard, on that shard's backend device."""
        if len(backends) != len(shards):
            raise ValueError(f"got {len(backends)} backends for {len(shards)} shards")

        def _setter(attr: str):
            def _set(index: int, values: np.ndarray) -> None:
                tensor = torch.from_numpy(np.array(values, dtype=np.float32, copy=True))
                setattr(shards[index], attr, tensor.to(device=backends[index]))

            return _set

        for name, attr in (
            (ADAM_MT, "exp_avg"),
            (ADAM_VT, "exp_avg_sq"),
            (EXP_SMOOTHING, "smoothed"),
            (MASTER_PARAMETERS, "main_param"),
        ):
            item = find_item(items, name)
            if item is None:
                continue
            if attr == "smoothed" and self.smoothing <= 0.0:
                continue
            if attr == "main_param" and not self.keep_master_copy:
                continue
            scatter.scatter(item, _setter(attr), len(shards))

        step_item = find_item(items, ADAM_STEP)
        if step_item is not None:
            step = int(step_item.data.reshape(-1)[0])
            for shard in shards:
                shard.step_count = step
                shard.swapped = False
        logger.info("Loaded optimizer state into %d shards", len(shards))
