"""
Pytest fixtures and shared test helpers.

Some test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than only under `tests/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Optional

import pytest
import torch

from replica_train.config import TrainingOptions


@dataclass(frozen=True)
class Tolerances:
    """Numerical tolerances for tensor comparisons."""

    RTOL: float = 1e-5
    ATOL: float = 1e-6


@dataclass
class RecordingWriter:
    """Stand-in for a TensorBoard writer that keeps every scalar."""

    scalars: list[tuple[str, float, Optional[int]]] = field(default_factory=list)

    def add_scalar(self, tag: str, scalar_value: float, global_step: Optional[int] = None) -> None:
        self.scalars.append((tag, float(scalar_value), global_step))

    def values(self, tag: str) -> list[float]:
        return [value for name, value, _ in self.scalars if name == tag]


@pytest.fixture(params=["cpu"])
def device(request) -> torch.device:
    """Device fixture used by unit tests."""
    return torch.device(request.param)


@pytest.fixture()
def tolerances() -> Tolerances:
    """Default numerical tolerances used by accuracy tests."""
    return Tolerances()


@pytest.fixture()
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture()
def options(tmp_path) -> TrainingOptions:
    """Options pointing the model file into a per-test directory."""
    return TrainingOptions(model=str(tmp_path / "model.npz"), devices=["cpu", "cpu"])


def assert_tensor_close(
    actual: torch.Tensor,
    expected: torch.Tensor,
    rtol: float = 1e-5,
    atol: float = 1e-8,
    msg: Optional[str] = None,
) -> None:
    """
    Assert two tensors are close within tolerances.

    Args:
        actual: Tensor under test.
        expected: Reference tensor.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        msg: Optional message prefix on failure.
    """
    if actual.shape != expected.shape:
        raise AssertionError(f"Shape mismatch: {actual.shape} vs {expected.shape}")

    if not torch.allclose(actual, expected, rtol=rtol, atol=atol):
        diff = (actual - expected).abs()
        max_diff = float(diff.max().item()) if diff.numel() > 0 else 0.0
        raise AssertionError(f"{msg or 'Tensors not close'}: max diff = {max_diff}")
