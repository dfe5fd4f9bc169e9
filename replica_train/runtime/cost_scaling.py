"""Dynamic cost (loss) scaling driven by NaN/Inf observations in scaled gradients."""

from __future__ import annotations

from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import replace
from enum import Enum
import logging
from typing import Any
from typing import Optional

from replica_train.config import CostScalingConfig
from replica_train.logging import get_logger
from replica_train.logging import log_once
from replica_train.runtime.contracts import SummaryWriterLike


logger = get_logger(__name__)


class CostScaleEvent(str, Enum):
    """Outcome of one cost-scale transition."""

    NONE = "none"
    INCREASED = "increased"
    DECREASED = "decreased"
    AT_MINIMUM = "at_minimum"


@dataclass(frozen=True)
class CostScaleState:
    """
    Cost-scaling factor plus the NaN/no-NaN counters that drive it.

    `factor` never drops below `minimum_factor`, and both counters are only ever
    reset together.
    """

    factor: float
    frequency: int
    multiplier: float
    nan_tolerance: float
    nan_range: int
    minimum_factor: float
    nan_seen: int = 0
    no_nan_seen: int = 0

    @classmethod
    def from_config(cls, config: CostScalingConfig) -> "CostScaleState":
        return cls(
            factor=config.initial_factor,
            frequency=config.frequency,
            multiplier=config.multiplier,
            nan_tolerance=config.nan_tolerance,
            nan_range=config.nan_range,
            minimum_factor=config.factor_minimum,
        )

    @property
    def total(self) -> int:
        return self.nan_seen + self.no_nan_seen

    @property
    def nan_percent(self) -> float:
        total = self.total
        return float(self.nan_seen) / float(total) if total else 0.0


def on_no_nan(state: CostScaleState) -> tuple[CostScaleState, CostScaleEvent]:
    """Grow the factor after `frequency` clean updates since the last reset."""
    state = replace(state, no_nan_seen=state.no_nan_seen + 1)
    if state.no_nan_seen % state.frequency != 0:
        return state, CostScaleEvent.NONE
    return (
        replace(state, factor=state.factor * state.multiplier, nan_seen=0, no_nan_seen=0),
        CostScaleEvent.INCREASED,
    )


def on_nan(state: CostScaleState) -> tuple[CostScaleState, CostScaleEvent]:
    """
    Shrink the factor once enough updates were seen and too many of them overflowed.

    Below the threshold the counters keep accumulating across calls.
    """
    state = replace(state, nan_seen=state.nan_seen + 1)
    if state.total < state.nan_range or state.nan_percent <= state.nan_tolerance:
        return state, CostScaleEvent.NONE

    if state.factor > state.minimum_factor:
        factor = max(state.factor / state.multiplier, state.minimum_factor)
        return replace(state, factor=factor, nan_seen=0, no_nan_seen=0), CostScaleEvent.DECREASED
    return replace(state, nan_seen=0, no_nan_seen=0), CostScaleEvent.AT_MINIMUM


class CostScaleController:
    """Own the single cost-scale state of a training run and report its changes."""

    def __init__(
        self,
        config: CostScalingConfig,
        *,
        writer: Optional[SummaryWriterLike] = None,
    ) -> None:
        self.config = config
        self.state = CostScaleState.from_config(config)
        self.writer = writer
        self.updates = 0
        log_once(
            logger,
            logging.INFO,
            "Training with cost scaling - factor: 2^%s = %s, frequency: %d, multiplier: %s, "
            "tolerance: %s, range: %d, minimum: %s",
            config.exponent,
            self.state.factor,
            config.frequency,
            config.multiplier,
            config.nan_tolerance,
            config.nan_range,
            config.factor_minimum,
        )

    def current_factor(self) -> float:
        return self.state.factor

    def on_step_result(self, has_nan_or_inf: bool) -> CostScaleEvent:
        """Apply one step outcome; NaN/Inf only ever adjusts scaling, it never aborts."""
        before = self.state
        if has_nan_or_inf:
            self.state, event = on_nan(before)
        else:
            self.state, event = on_no_nan(before)
        self.updates += 1
        self._report(before, event)
        return event

    def _report(self, before: CostScaleState, event: CostScaleEvent) -> None:
        if event is CostScaleEvent.NONE:
            return
        # Counters are already reset; report what triggered the transition.
        total = before.total + 1
        nan_seen = before.nan_seen + (0 if event is CostScaleEvent.INCREASED else 1)
        nan_percent = nan_seen / total
        if event is CostScaleEvent.INCREASED:
            logger.info(
                "NaN/Inf percentage %.2f after %d gradient updates. "
                "Increasing cost-scaling factor to %s",
                nan_percent,
                total,
                self.state.factor,
            )
        elif event is CostScaleEvent.DECREASED:
            logger.warning(
                "NaN/Inf percentage %.2f in %d gradient updates, "
                "reducing cost-scaling factor to %s",
                nan_percent,
                total,
                self.state.factor,
            )
        else:
            logger.warning(
                "NaN/Inf percentage %.2f in %d gradient updates, "
                "but cost-scaling factor %s is already at minimum",
                nan_percent,
                total,
                self.state.factor,
            )
        if self.writer is not None:
            self.writer.add_scalar("CostScale/factor", float(self.state.factor), self.updates)

    def state_dict(self) -> dict[str, Any]:
        return asdict(self.state)

    def load_state_dict(self, state: dict[str, Any]) -> None:
        self.state = CostScaleState(**state)
