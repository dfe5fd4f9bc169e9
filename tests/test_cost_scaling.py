"""Unit tests for cost-scale state transitions and the controller."""

from __future__ import annotations

import logging
import random

import pytest

from replica_train.config import CostScalingConfig
from replica_train.runtime.cost_scaling import CostScaleController
from replica_train.runtime.cost_scaling import CostScaleEvent
from replica_train.runtime.cost_scaling import CostScaleState
from replica_train.runtime.cost_scaling import on_nan
from replica_train.runtime.cost_scaling import on_no_nan


def _state(**overrides) -> CostScaleState:
    values = dict(
        factor=8.0,
        frequency=2,
        multiplier=2.0,
        nan_tolerance=0.0,
        nan_range=4,
        minimum_factor=1.0,
    )
    values.update(overrides)
    return CostScaleState(**values)


def test_two_clean_steps_double_factor_then_single_nan_waits_for_range() -> None:
    state = _state()

    state, event = on_no_nan(state)
    assert event is CostScaleEvent.NONE
    assert state.factor == 8.0
    assert state.no_nan_seen == 1

    state, event = on_no_nan(state)
    assert event is CostScaleEvent.INCREASED
    assert state.factor == 16.0
    assert (state.nan_seen, state.no_nan_seen) == (0, 0)

    state, event = on_nan(state)
    assert event is CostScaleEvent.NONE
    assert state.factor == 16.0
    assert (state.nan_seen, state.no_nan_seen) == (1, 0)


def test_nan_counters_accumulate_until_range_reached() -> None:
    state = _state(frequency=100)
    for _ in range(3):
        state, event = on_nan(state)
        assert event is CostScaleEvent.NONE
    assert state.nan_seen == 3

    state, event = on_nan(state)
    assert event is CostScaleEvent.DECREASED
    assert state.factor == 4.0
    assert (state.nan_seen, state.no_nan_seen) == (0, 0)


def test_nan_within_tolerance_does_not_decrease() -> None:
    state = _state(frequency=100, nan_tolerance=0.5, nan_range=2)
    state, _ = on_no_nan(state)
    state, _ = on_no_nan(state)
    state, event = on_nan(state)
    # 1 of 3 updates overflowed, below the 50% tolerance.
    assert event is CostScaleEvent.NONE
    assert state.total == 3


def test_decrease_at_minimum_keeps_factor_and_resets() -> None:
    state = _state(factor=1.0, nan_range=1)
    state, event = on_nan(state)
    assert event is CostScaleEvent.AT_MINIMUM
    assert state.factor == 1.0
    assert (state.nan_seen, state.no_nan_seen) == (0, 0)


def test_decrease_is_clamped_to_minimum() -> None:
    state = _state(factor=3.0, minimum_factor=2.0, nan_range=1)
    state, event = on_nan(state)
    assert event is CostScaleEvent.DECREASED
    assert state.factor == 2.0


@pytest.mark.parametrize("seed", [0, 1, 2, 3])
def test_factor_never_below_minimum_and_counters_reset_on_change(seed: int) -> None:
    rng = random.Random(seed)
    state = _state(factor=4.0, frequency=3, multiplier=3.0, nan_range=2, minimum_factor=0.5)
    for _ in range(500):
        if rng.random() < 0.6:
            state, event = on_nan(state)
        else:
            state, event = on_no_nan(state)
        assert state.factor >= state.minimum_factor
        if event is not CostScaleEvent.NONE:
            assert state.nan_seen == 0
            assert state.no_nan_seen == 0


def test_controller_reports_changes(writer, caplog) -> None:
    config = CostScalingConfig(exponent=3.0, frequency=2, multiplier=2.0, nan_range=1)
    controller = CostScaleController(config, writer=writer)
    assert controller.current_factor() == 8.0

    with caplog.at_level(logging.INFO, logger="replica_train.runtime.cost_scaling"):
        assert controller.on_step_result(False) is CostScaleEvent.NONE
        assert controller.on_step_result(False) is CostScaleEvent.INCREASED
        assert controller.on_step_result(True) is CostScaleEvent.DECREASED

    assert controller.current_factor() == 8.0
    assert writer.values("CostScale/factor") == [16.0, 8.0]
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "reducing cost-scaling factor to 8.0" in warnings[0].getMessage()


def test_controller_at_minimum_warns_and_continues(caplog) -> None:
    controller = CostScaleController(CostScalingConfig(exponent=0.0, nan_range=1))
    with caplog.at_level(logging.WARNING, logger="replica_train.runtime.cost_scaling"):
        event = controller.on_step_result(True)
    assert event is CostScaleEvent.AT_MINIMUM
    assert controller.current_factor() == 1.0
    assert "already at minimum" in caplog.text


def test_controller_state_dict_round_trip() -> None:
    config = CostScalingConfig(exponent=4.0, frequency=10, nan_range=5)
    controller = CostScaleController(config)
    controller.on_step_result(True)
    controller.on_step_result(False)

    restored = CostScaleController(config)
    restored.load_state_dict(controller.state_dict())
    assert restored.state == controller.state
