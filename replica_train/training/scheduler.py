"""
Training progress scheduler.

Tracks update counts and running gradient-norm statistics, persists progress next to
the model file, and runs validators at save boundaries.
"""

from __future__ import annotations

from dataclasses import asdict
from dataclasses import dataclass
import math
import os
from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import yaml

from replica_train.io.items import progress_path
from replica_train.logging import get_logger
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.contracts import GradientNormStats
from replica_train.runtime.contracts import Replica


logger = get_logger(__name__)

Validator = Callable[[Sequence[Replica], bool], Optional[float]]


@dataclass
class RunningMoments:
    """Exponentially weighted mean and variance of one scalar series."""

    average: float = 0.0
    variance: float = 0.0

    def update(self, value: float, alpha: float) -> None:
        delta = value - self.average
        self.average += alpha * delta
        self.variance = (1.0 - alpha) * (self.variance + alpha * delta * delta)


class GradientNormTracker:
    """
    Running statistics of gradient norms and of their logarithms.

    The smoothing weight is `2 / (n + 1)` with `n = min(window, observed)`, so early
    updates behave like a plain average and later ones like a `window`-sized EMA.
    """

    def __init__(self, window: int = 100) -> None:
        if window < 1:
            raise ValueError("gradient norm average window must be >= 1")
        self.window = int(window)
        self.observed = 0
        self.norms = RunningMoments()
        self.log_norms = RunningMoments()

    def update(self, g_norm: float) -> bool:
        """Fold one norm into the statistics; non-finite or non-positive norms are ignored."""
        if not math.isfinite(g_norm) or g_norm <= 0.0:
            return False
        self.observed += 1
        alpha = 2.0 / float(min(self.window, self.observed) + 1)
        self.norms.update(g_norm, alpha)
        self.log_norms.update(math.log(g_norm), alpha)
        return True

    def stats(self) -> GradientNormStats:
        return GradientNormStats(self.window, self.norms.average, self.norms.variance, False)

    def log_stats(self) -> GradientNormStats:
        return GradientNormStats(self.window, self.log_norms.average, self.log_norms.variance, True)

    def state_dict(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "observed": self.observed,
            "norms": asdict(self.norms),
            "log_norms": asdict(self.log_norms),
        }

    def load_state_dict(self, state: dict[str, Any]) -> None:
        self.window = int(state.get("window", self.window))
        self.observed = int(state.get("observed", 0))
        self.norms = RunningMoments(**state.get("norms", {}))
        self.log_norms = RunningMoments(**state.get("log_norms", {}))


@dataclass
class TrainingProgress:
    """Counters persisted in the progress file."""

    epochs: int = 1
    batches: int = 0
    updates_in_epoch: int = 0
    labels_total: int = 0
    last_validation: Optional[float] = None


class TrainingScheduler:
    """Reference scheduler service consumed by the training group."""

    def __init__(
        self,
        *,
        window: int = 100,
        validators: Sequence[Validator] = (),
    ) -> None:
        self.progress = TrainingProgress()
        self.tracker = GradientNormTracker(window)
        self.validators = list(validators)
        self.extra_state: dict[str, Any] = {}

    def number_of_batches(self) -> int:
        return self.progress.batches

    def update(self, g_norm: float = math.nan, labels: int = 0) -> None:
        """Record one completed update."""
        self.progress.batches += 1
        self.progress.updates_in_epoch += 1
        self.progress.labels_total += int(labels)
        self.tracker.update(g_norm)

    def new_epoch(self) -> None:
        self.progress.epochs += 1
        self.progress.updates_in_epoch = 0

    def gradient_norm_stats(self) -> GradientNormStats:
        return self.tracker.stats()

    def log_gradient_norm_stats(self) -> GradientNormStats:
        return self.tracker.log_stats()

    def validate(self, replicas: Sequence[Replica], is_final: bool = False) -> None:
        for validator in self.validators:
            score = validator(replicas, is_final)
            if score is not None:
                self.progress.last_validation = float(score)
                logger.info(
                    "[valid] Ep. %d : Up. %d : %s : %.6f",
                    self.progress.epochs,
                    self.progress.batches,
                    getattr(validator, "__name__", type(validator).__name__),
                    float(score),
                )

    def save(self, path: str) -> None:
        target = progress_path(path)
        payload = {
            "progress": asdict(self.progress),
            "gradient_norms": self.tracker.state_dict(),
            "extra": self.extra_state,
        }
        try:
            with open(target, "w") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
        except OSError as exc:
            raise FatalTrainingError(f"File '{target}' can't be opened for writing: {exc}") from exc

    def load(self, path: str) -> None:
        source = progress_path(path)
        if not os.path.exists(source):
            logger.warning("No training progress found at %s, starting from scratch", source)
            return
        try:
            with open(source) as handle:
                payload = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise FatalTrainingError(f"File '{source}' can't be opened: {exc}") from exc

        self.progress = TrainingProgress(**payload.get("progress", {}))
        self.tracker.load_state_dict(payload.get("gradient_norms", {}))
        self.extra_state = dict(payload.get("extra", {}) or {})
        logger.info(
            "[training] Resumed progress from %s: epoch %d, %d updates",
            source,
            self.progress.epochs,
            self.progress.batches,
        )
