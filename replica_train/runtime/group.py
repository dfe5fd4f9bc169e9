"""
Training group: one model replicated over the configured devices.

The group owns the replicas and their optimizer shards and dispatches to cost
scaling, gradient normalization, checkpointing and batch-size fitting at the right
points of a training step and at save/load boundaries.
"""

from __future__ import annotations

import logging
import math
from typing import Callable
from typing import Optional
from typing import Sequence

import torch.nn as nn

from replica_train.config import CostScalingConfig
from replica_train.config import DynamicScalingConfig
from replica_train.config import TrainingOptions
from replica_train.config import dtype_alias_to_torch
from replica_train.data.batch import BatchStats
from replica_train.data.batch import SyntheticBatchFactory
from replica_train.distributed.collectives import LocalGather
from replica_train.distributed.collectives import LocalParameterDistributor
from replica_train.distributed.collectives import LocalScatter
from replica_train.distributed.collectives import NoOpBarrier
from replica_train.distributed.devices import resolve_devices
from replica_train.logging import get_logger
from replica_train.logging import log_once
from replica_train.models.persistence import NpzModelPersistence
from replica_train.optimizers.sharded_adam import ShardedAdam
from replica_train.runtime.batch_fit import BatchFitProber
from replica_train.runtime.checkpoint import CheckpointCoordinator
from replica_train.runtime.contracts import Barrier
from replica_train.runtime.contracts import BatchFactory
from replica_train.runtime.contracts import CriterionModel
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.contracts import GatherStrategy
from replica_train.runtime.contracts import ModelPersistence
from replica_train.runtime.contracts import OptimizerShard
from replica_train.runtime.contracts import ParameterDistributor
from replica_train.runtime.contracts import ScatterStrategy
from replica_train.runtime.contracts import SummaryWriterLike
from replica_train.runtime.contracts import TrainingScheduler
from replica_train.runtime.cost_scaling import CostScaleController
from replica_train.runtime.cost_scaling import CostScaleEvent
from replica_train.runtime.normalization import GradientNormOutlierDetector
from replica_train.runtime.normalization import NormalizationFactorComputer
from replica_train.runtime.normalization import check_nan_or_norm
from replica_train.runtime.replica import GraphReplica
from replica_train.runtime.replica import shard_range


logger = get_logger(__name__)

COST_SCALE_STATE_KEY = "cost_scale"


class TrainingGroup:
    """Replicas, optimizer shards and the controllers shared by all of them."""

    def __init__(
        self,
        options: TrainingOptions,
        model_factory: Callable[[], nn.Module],
        *,
        initializer: Optional[Callable[[nn.Module], None]] = None,
        models: Optional[Sequence[ModelPersistence]] = None,
        shard_factory: Optional[Callable[[], OptimizerShard]] = None,
        scheduler: Optional[TrainingScheduler] = None,
        barrier: Optional[Barrier] = None,
        writer: Optional[SummaryWriterLike] = None,
        batch_factory: Optional[BatchFactory] = None,
        show_progress: bool = True,
    ) -> None:
        self.options = options
        self.model_factory = model_factory
        self.initializer = initializer
        self.shard_factory = shard_factory or ShardedAdam
        self.scheduler = scheduler
        self.barrier = barrier or NoOpBarrier()
        self.writer = writer
        self._model_services = list(models) if models is not None else None

        self.replicas: list[GraphReplica] = []
        self.shards: list[OptimizerShard] = []
        self.models: list[ModelPersistence] = []
        self.checkpoints: Optional[CheckpointCoordinator] = None
        self.finalized = False
        self.mb_round_up = options.mini_batch_round_up
        self._typical_trg_batch_words = 0.0

        cost_config = CostScalingConfig.from_options(options.cost_scaling)
        self.cost_scaler = (
            CostScaleController(cost_config, writer=writer) if cost_config is not None else None
        )

        dynamic_config = DynamicScalingConfig.from_options(options.dynamic_gradient_scaling)
        self.outlier_detector = (
            GradientNormOutlierDetector.from_config(dynamic_config)
            if dynamic_config is not None
            else None
        )

        self.check_gradient_nan = options.check_gradient_nan
        if self.check_gradient_nan:
            log_once(logger, logging.INFO, "Checking gradient for NaN")

        self.normalizer = NormalizationFactorComputer(
            cost_scaling=self.cost_scaler is not None,
            normalize_gradient=options.normalize_gradient,
            detector=self.outlier_detector,
            scheduler=scheduler,
        )
        self.batch_fit = BatchFitProber(
            options,
            batch_factory or SyntheticBatchFactory(),
            show_progress=show_progress,
        )

    # Replicas

    def init_graphs(self) -> None:
        """Create exactly one replica and one optimizer shard per configured device."""
        if self.replicas:
            raise FatalTrainingError(
                f"Replicas are already initialized ({len(self.replicas)} devices); "
                "the replica count is fixed for the whole run"
            )
        element_type = dtype_alias_to_torch(self.options.precision[0])
        for device in resolve_devices(self.options.devices):
            self.replicas.append(
                GraphReplica(
                    self.model_factory(),
                    device,
                    element_type=element_type,
                    initializer=self.initializer,
                    workspace_mb=self.options.workspace,
                    throw_nan=self.options.check_nan,
                )
            )
        self.shards = [self.shard_factory() for _ in self.replicas]

        if self._model_services is None:
            self.models = [NpzModelPersistence() for _ in self.replicas]
        elif len(self._model_services) != len(self.replicas):
            raise ValueError(
                f"got {len(self._model_services)} model services for {len(self.replicas)} devices"
            )
        else:
            self.models = list(self._model_services)

        self.checkpoints = CheckpointCoordinator(
            self.options,
            self.replicas,
            self.shards,
            self.models,
            self.scheduler,
            self.barrier,
            writer=self.writer,
        )
        logger.info(
            "[training] Initialized %d replicas on %s (%s parameters)",
            len(self.replicas),
            ", ".join(str(replica.device) for replica in self.replicas),
            self.options.precision[0],
        )

    def _coordinator(self) -> CheckpointCoordinator:
        if self.checkpoints is None:
            raise RuntimeError("init_graphs() must be called first")
        return self.checkpoints

    @property
    def num_replicas(self) -> int:
        return len(self.replicas)

    # Step helpers

    def check_nan_or_norm(self, index: int, begin: int = 0, end: Optional[int] = None) -> float:
        """NaN for a NaN/Inf gradient, its L2 norm under dynamic scaling, else 0."""
        grads = self.replicas[index].parameter_gradients()[begin:end]
        return check_nan_or_norm(
            grads,
            check_nan=self.check_gradient_nan or self.cost_scaler is not None,
            dynamic_scaling=self.outlier_detector is not None,
        )

    @property
    def cost_scale_factor(self) -> float:
        return self.cost_scaler.current_factor() if self.cost_scaler is not None else 1.0

    def increase_cost_scale_factor(self) -> CostScaleEvent:
        if self.cost_scaler is None:
            return CostScaleEvent.NONE
        return self.cost_scaler.on_step_result(False)

    def decrease_cost_scale_factor(self) -> CostScaleEvent:
        if self.cost_scaler is None:
            return CostScaleEvent.NONE
        return self.cost_scaler.on_step_result(True)

    def update_cost_scale(self, has_nan: bool) -> CostScaleEvent:
        if has_nan:
            return self.decrease_cost_scale_factor()
        return self.increase_cost_scale_factor()

    def compute_normalization_factor(self, grad_norm: float, token_count: int) -> float:
        return self.normalizer.compute(grad_norm, token_count, self.cost_scale_factor)

    def update(
        self,
        token_count: int,
        distributor: Optional[ParameterDistributor] = None,
    ) -> float:
        """
        Apply one sharded update from the replicas' (already reduced) gradients.

        Returns the gradient norm with the cost scale removed and divided by
        `token_count`, the unit `TrainingScheduler.update` keeps its statistics in. It is
        0 when no norm is tracked; NaN means the update was skipped and the cost scale
        was lowered.
        """
        total = len(self.replicas)
        sum_sq = 0.0
        for index, replica in enumerate(self.replicas):
            begin, end = shard_range(replica.parameter_shape[0], index, total)
            if end <= begin:
                continue
            value = self.check_nan_or_norm(index, begin, end)
            if math.isnan(value):
                sum_sq = math.nan
                break
            sum_sq += value * value
        grad_norm = math.sqrt(sum_sq) if math.isfinite(sum_sq) else math.nan
        # The factor the gradients were scaled with, before this step adjusts it.
        cost_scale_factor = self.cost_scale_factor

        if math.isfinite(grad_norm):
            factor = self.compute_normalization_factor(grad_norm, token_count)
            for index, (replica, shard) in enumerate(zip(self.replicas, self.shards)):
                shard.step(replica, index, total, factor)
            (distributor or LocalParameterDistributor(self.replicas)).distribute()
        else:
            logger.debug("Skipping update with non-finite gradient")

        self.update_cost_scale(not math.isfinite(grad_norm))
        for replica in self.replicas:
            replica.clear()
        return self.normalizer.statistics_norm(grad_norm, token_count, cost_scale_factor)

    # Save/load boundaries

    def load(self, scatter: Optional[ScatterStrategy] = None) -> bool:
        resumed = self._coordinator().load(scatter or LocalScatter())
        if not resumed and len(self.replicas) > 1:
            # Fresh or pretrained start: every replica begins from replica 0's values.
            values = self.replicas[0].parameter_values()
            for replica in self.replicas[1:]:
                replica.set_parameter_values(values)
        extra = getattr(self.scheduler, "extra_state", None)
        if resumed and self.cost_scaler is not None and extra and COST_SCALE_STATE_KEY in extra:
            self.cost_scaler.load_state_dict(extra[COST_SCALE_STATE_KEY])
            logger.info(
                "[training] Restored cost-scaling factor %s", self.cost_scaler.current_factor()
            )
        return resumed

    def save(
        self,
        is_final: bool = False,
        distributor: Optional[ParameterDistributor] = None,
        gather: Optional[GatherStrategy] = None,
        is_main_process: bool = True,
    ) -> None:
        if self.finalized:
            raise FatalTrainingError("Training has already finished.")
        extra = getattr(self.scheduler, "extra_state", None)
        if self.cost_scaler is not None and extra is not None:
            extra[COST_SCALE_STATE_KEY] = self.cost_scaler.state_dict()
        self._coordinator().save(
            is_final,
            distributor or LocalParameterDistributor(self.replicas),
            gather or LocalGather(),
            is_main_process,
        )

    def collect_stats(
        self,
        criterion: CriterionModel,
        vocab_sizes: Sequence[int],
        multiplier: float = 1.0,
    ) -> BatchStats:
        """Probe batch sizes on the first replica; `multiplier` is usually the device count."""
        if not self.replicas:
            raise RuntimeError("init_graphs() must be called first")
        return self.batch_fit.probe(self.replicas[0], criterion, vocab_sizes, multiplier)

    def validate(self) -> None:
        if self.finalized:
            raise FatalTrainingError("Training has already finished.")
        if self.scheduler is not None:
            self.scheduler.validate(self.replicas, False)

    def finalize(self) -> None:
        self.finalized = True

    # Dynamic mini-batch scaling

    def set_typical_trg_batch_words(self, words: float) -> None:
        self._typical_trg_batch_words = float(words)

    def typical_trg_batch_words(self) -> float:
        return self._typical_trg_batch_words

    def update_average_trg_batch_words(self, words: int) -> None:
        # Empirical smoothing factors.
        self._typical_trg_batch_words = 0.99 * self._typical_trg_batch_words + 0.01 * float(words)
