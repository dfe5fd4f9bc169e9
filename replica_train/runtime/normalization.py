"""Gradient sanity checks, norm outlier detection and the pre-update gradient divisor."""

from __future__ import annotations

import logging
import math
from typing import Optional

import torch

from replica_train.config import DynamicScalingConfig
from replica_train.logging import get_logger
from replica_train.logging import log_once
from replica_train.runtime.contracts import GradientNormStats
from replica_train.runtime.contracts import TrainingScheduler


logger = get_logger(__name__)


def check_nan_or_norm(
    grad: torch.Tensor,
    *,
    check_nan: bool,
    dynamic_scaling: bool,
) -> float:
    """
    Inspect one gradient (sub)tensor.

    Returns NaN when NaN/Inf was found (only checked when `check_nan`), the L2 norm
    when dynamic scaling needs it (NaN if that norm is non-finite or zero), else 0.
    """
    if check_nan:
        has_nan = bool(torch.isnan(grad).any().item())
        has_inf = bool(torch.isinf(grad).any().item())
        if has_nan or has_inf:
            logger.debug("Found Nan (%s) or Inf (%s)", has_nan, has_inf)
            return math.nan

    if dynamic_scaling:
        g_norm = float(torch.linalg.vector_norm(grad.detach().float()).item())
        if math.isfinite(g_norm) and g_norm > 0.0:
            return g_norm
        return math.nan

    return 0.0


class GradientNormOutlierDetector:
    """Flag gradient norms that exceed the running average by `sigma_factor` deviations."""

    def __init__(self, sigma_factor: float = 2.0, use_logs: bool = False) -> None:
        self.sigma_factor = float(sigma_factor)
        self.use_logs = bool(use_logs)
        log_once(
            logger,
            logging.INFO,
            "Re-scaling gradient to have average gradient norm if (log=%s) gradient norm "
            "diverges from average by %s sigmas",
            self.use_logs,
            self.sigma_factor,
        )

    @classmethod
    def from_config(cls, config: DynamicScalingConfig) -> "GradientNormOutlierDetector":
        return cls(config.sigma_factor, config.use_logs)

    def statistics(self, scheduler: TrainingScheduler) -> GradientNormStats:
        if self.use_logs:
            return scheduler.log_gradient_norm_stats()
        return scheduler.gradient_norm_stats()

    def transform(self, g_norm: float) -> float:
        return math.log(g_norm) if self.use_logs else g_norm

    def average_original(self, average_transform: float) -> float:
        # avg(log(norm)) is taken as log(avg(norm)).
        return math.exp(average_transform) if self.use_logs else average_transform

    def is_outlier(
        self,
        g_norm: float,
        stats: GradientNormStats,
        number_of_batches: int,
    ) -> bool:
        if number_of_batches < stats.window:
            return False
        delta = self.transform(g_norm) - stats.average
        std = math.sqrt(max(stats.variance, 0.0))
        outlier = delta > self.sigma_factor * std
        if outlier:
            logger.debug(
                "log gradient norms: %s :: %.4f - %.4f = %.4f > %.4f * %.4f",
                self.use_logs,
                self.transform(g_norm),
                stats.average,
                delta,
                self.sigma_factor,
                std,
            )
        return outlier


class NormalizationFactorComputer:
    """
    Combine cost scaling, token normalization and outlier rescaling into one divisor.

    The gradient is divided by the returned factor right before the optimizer update.
    """

    def __init__(
        self,
        *,
        cost_scaling: bool,
        normalize_gradient: bool,
        detector: Optional[GradientNormOutlierDetector] = None,
        scheduler: Optional[TrainingScheduler] = None,
    ) -> None:
        if detector is not None and scheduler is None:
            raise ValueError("dynamic gradient scaling requires a scheduler for norm statistics")
        self.cost_scaling = cost_scaling
        self.normalize_gradient = normalize_gradient
        self.detector = detector
        self.scheduler = scheduler

    def statistics_norm(self, grad_norm: float, token_count: int, cost_scale_factor: float = 1.0) -> float:
        """
        Express a raw gradient norm in the unit the norm statistics are kept in.

        norm(c * g) = c * norm(g), so dividing by the cost scale makes the statistics
        invariant to it; dividing by the label count makes them per token.
        """
        if not math.isfinite(grad_norm):
            return grad_norm
        if self.cost_scaling:
            grad_norm = grad_norm / cost_scale_factor
        if token_count > 0:
            grad_norm = grad_norm / token_count
        return grad_norm

    def compute(self, grad_norm: float, token_count: int, cost_scale_factor: float = 1.0) -> float:
        normalizer = 1.0

        if self.cost_scaling:
            normalizer *= cost_scale_factor

        # No labels in the update: nothing to average over and no per-token norm.
        if token_count <= 0:
            logger.debug("Update without target labels, skipping gradient normalization")
            return normalizer

        if self.normalize_gradient:
            normalizer *= token_count

        if not math.isfinite(grad_norm):
            return normalizer

        if self.detector is not None and grad_norm > 0.0:
            assert self.scheduler is not None
            grad_norm = self.statistics_norm(grad_norm, token_count, cost_scale_factor)

            stats = self.detector.statistics(self.scheduler)
            if self.detector.is_outlier(grad_norm, stats, self.scheduler.number_of_batches()):
                normalizer *= grad_norm / self.detector.average_original(stats.average)

        return normalizer
