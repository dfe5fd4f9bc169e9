"""
Checkpoint load/save coordination across replicas and optimizer shards.

A training checkpoint is two files next to each other: the model file (inference
weights, possibly smoothed) and `<model>.optimizer<ext>` holding optimizer shard state
plus the `master_parameters` snapshot of the unsmoothed parameters.
"""

from __future__ import annotations

import os
from typing import Optional
from typing import Sequence

from replica_train.config import TrainingOptions
from replica_train.io.items import MASTER_PARAMETERS
from replica_train.io.items import Item
from replica_train.io.items import checkpoint_path
from replica_train.io.items import find_item
from replica_train.io.items import iteration_model_path
from replica_train.io.items import load_items
from replica_train.io.items import save_items
from replica_train.logging import get_logger
from replica_train.runtime.contracts import Barrier
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.contracts import GatherStrategy
from replica_train.runtime.contracts import ModelPersistence
from replica_train.runtime.contracts import OptimizerShard
from replica_train.runtime.contracts import ParameterDistributor
from replica_train.runtime.contracts import ScatterStrategy
from replica_train.runtime.contracts import SummaryWriterLike
from replica_train.runtime.contracts import TrainingScheduler
from replica_train.runtime.replica import GraphReplica


logger = get_logger(__name__)


class CheckpointCoordinator:
    """Collective load/save of model weights, optimizer shards and master parameters."""

    def __init__(
        self,
        options: TrainingOptions,
        replicas: Sequence[GraphReplica],
        shards: Sequence[OptimizerShard],
        models: Sequence[ModelPersistence],
        scheduler: Optional[TrainingScheduler],
        barrier: Barrier,
        writer: Optional[SummaryWriterLike] = None,
    ) -> None:
        if len(models) != len(replicas):
            raise ValueError(f"got {len(models)} model services for {len(replicas)} replicas")
        self.options = options
        self.replicas = list(replicas)
        self.shards = list(shards)
        self.models = list(models)
        self.scheduler = scheduler
        self.barrier = barrier
        self.writer = writer

    @property
    def model_path(self) -> str:
        return self.options.model

    @property
    def checkpoint_path(self) -> str:
        return checkpoint_path(self.options.model)

    def load(self, scatter: ScatterStrategy) -> bool:
        """
        Reload model, scheduler and checkpoint state, or initialize from a pretrained model.

        A pretrained model only seeds weights (no optimizer or scheduler state); it is
        used when reloading is disabled or when there is no model file to resume from.
        Returns True when training state was resumed from an existing model file.
        """
        path = self.model_path
        if not self.options.no_reload and os.path.exists(path):
            if self.scheduler is not None:
                self.scheduler.load(path)
            # Same file N times; the OS cache serves every read after the first.
            for replica, model in zip(self.replicas, self.models):
                model.load(replica, path)
            self.restore_from_checkpoint(scatter)
            return True

        if self.options.pretrained_model:
            logger.info(
                "[training] Initializing model weights with pre-trained model %s",
                self.options.pretrained_model,
            )
            for replica, model in zip(self.replicas, self.models):
                model.load(replica, self.options.pretrained_model, mark_reloaded=False)
        elif self.options.no_reload:
            logger.info("[training] Reloading disabled, starting from fresh parameters")
        return False

    def restore_from_checkpoint(self, scatter: ScatterStrategy) -> bool:
        """
        Restore optimizer shards and master parameters from the optimizer checkpoint.

        Precondition: each replica's `forward()` allocates its parameters in name order,
        so the flat master vector maps onto the same parameters it was saved from. All
        replica shapes are verified before any replica or shard is touched.
        """
        target = self.checkpoint_path
        if not os.path.exists(target):
            logger.warning("No checkpoint found, parameters reloaded from last inference model")
            return False

        items = load_items(target)
        master = find_item(items, MASTER_PARAMETERS)

        if master is not None:
            for index, replica in enumerate(self.replicas):
                replica.forward()
                live_shape = tuple(replica.parameter_shape)
                if live_shape != tuple(master.shape):
                    raise FatalTrainingError(
                        "Graph parameter sizes and master copy parameter sizes in checkpoint "
                        f"do not match: replica {index} has {live_shape}, checkpoint has "
                        f"{tuple(master.shape)}"
                    )

        backends = [replica.device for replica in self.replicas]
        self.shards[0].load(items, self.shards, backends, scatter)

        if master is None:
            logger.warning(
                "No master parameters found in checkpoint, parameters reloaded from last "
                "inference model"
            )
            return False

        for replica in self.replicas:
            master.convert(replica.parameter_dtype)
            replica.set_parameter_values(
                master.to_tensor(device=replica.device, dtype=replica.parameter_dtype).reshape(-1)
            )
            replica.clear()

        logger.info(
            "[training] Master parameters and optimizers restored from training checkpoint "
            "%s and %s",
            self.model_path,
            target,
        )
        return True

    def save(
        self,
        is_final: bool,
        distributor: ParameterDistributor,
        gather: GatherStrategy,
        is_main_process: bool = True,
    ) -> None:
        """
        Collective save; every worker must call it even though only the main one writes.

        Swaps, distribution and the optimizer-state gather run on every worker, since
        process-group strategies are collectives. Validation and disk I/O happen on the
        main worker only. Smoothed parameters are swapped in for validation and the model
        file, the originals are swapped back before the optimizer checkpoint is written.
        """
        self.barrier.wait()
        step = self.scheduler.number_of_batches() if self.scheduler is not None else 0
        try:
            self.swap_with_smoothed(distributor)
            if is_main_process and is_final and self.scheduler is not None:
                self.scheduler.validate(self.replicas, is_final)
            self.barrier.wait()
            if is_main_process:
                self.save_model(is_final)
            self.swap_with_original(distributor)
            self.save_checkpoint(gather, write=is_main_process)
        except BaseException:
            if is_main_process:
                self._record_checkpoint(False, step)
            raise
        if is_main_process:
            self._record_checkpoint(True, step)
        self.barrier.wait()

    def save_model(self, is_final: bool) -> None:
        path = self.model_path
        model, replica = self.models[0], self.replicas[0]
        if not self.options.overwrite and not is_final:
            batches = self.scheduler.number_of_batches() if self.scheduler is not None else "unknown"
            model.save(replica, iteration_model_path(path, batches))

        model.save(replica, path, save_translator_config=True)
        if self.scheduler is not None:
            self.scheduler.save(path)

    def checkpoint_items(self, gather: GatherStrategy) -> list[Item]:
        """Optimizer state of all shards plus the master parameters; a collective under a process group."""
        items: list[Item] = []
        self.shards[0].save(items, self.shards, gather)

        if find_item(items, MASTER_PARAMETERS) is None:
            # Full-precision optimizers keep no master copy; the originals are live here.
            items.append(Item.from_tensor(MASTER_PARAMETERS, self.replicas[0].parameter_values()))
        return items

    def save_checkpoint(self, gather: GatherStrategy, write: bool = True) -> None:
        items = self.checkpoint_items(gather)
        if not write:
            return
        target = self.checkpoint_path
        logger.info("[training] Saving training checkpoint to %s and %s", self.model_path, target)
        save_items(target, items)

    def _check_counts(self) -> None:
        if len(self.replicas) != len(self.shards):
            raise FatalTrainingError(
                "Number of graphs and optimizers has to be equal "
                f"({len(self.replicas)} != {len(self.shards)})"
            )

    def swap_with_smoothed(self, distributor: ParameterDistributor) -> None:
        self._check_counts()
        total = len(self.replicas)
        for index, (replica, shard) in enumerate(zip(self.replicas, self.shards)):
            shard.swap_with_smoothed(replica, index, total, True)
        distributor.distribute()

    def swap_with_original(self, distributor: ParameterDistributor) -> None:
        self._check_counts()
        total = len(self.replicas)
        for index, (replica, shard) in enumerate(zip(self.replicas, self.shards)):
            shard.swap_with_smoothed(replica, index, total, False)
        distributor.distribute()

    def _record_checkpoint(self, ok: bool, step: int) -> None:
        if self.writer is not None:
            self.writer.add_scalar("Checkpoint/ok", 1.0 if ok else 0.0, step)
