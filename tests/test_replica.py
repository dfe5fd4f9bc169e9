"""Unit tests for shard ranges, workspace accounting and graph replicas."""

from __future__ import annotations

import pytest
import torch
import torch.nn as nn

from conftest import assert_tensor_close
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.replica import GraphReplica
from replica_train.runtime.replica import Workspace
from replica_train.runtime.replica import shard_range


class _TinyModel(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.zeta = nn.Linear(2, 2, bias=False)
        self.alpha = nn.Linear(2, 1, bias=True)


class _LazyModel(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.proj = nn.LazyLinear(3)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.proj(x)


def test_shard_ranges_cover_without_overlap() -> None:
    numel, total = 11, 4
    covered = []
    for index in range(total):
        begin, end = shard_range(numel, index, total)
        covered.extend(range(begin, end))
    assert covered == list(range(numel))


def test_shard_range_rejects_bad_index() -> None:
    with pytest.raises(ValueError, match="out of range"):
        shard_range(10, 3, 3)


def test_parameters_flatten_in_name_order(device) -> None:
    model = _TinyModel()
    replica = GraphReplica(model, device)
    expected = torch.cat(
        [model.alpha.bias.detach(), model.alpha.weight.detach().reshape(-1), model.zeta.weight.detach().reshape(-1)]
    )
    assert replica.parameter_shape == (7,)
    assert_tensor_close(replica.parameter_values(), expected)


def test_set_parameter_values_and_slices(device) -> None:
    replica = GraphReplica(_TinyModel(), device)
    replica.set_parameter_values(torch.arange(7, dtype=torch.float32))
    replica.set_parameter_slice(2, 4, torch.tensor([-1.0, -2.0]))
    assert replica.parameter_values().tolist() == [0.0, 1.0, -1.0, -2.0, 4.0, 5.0, 6.0]
    assert replica.parameter_slice(4, 6).tolist() == [4.0, 5.0]

    with pytest.raises(FatalTrainingError, match="does not match"):
        replica.set_parameter_values(torch.zeros(5))


def test_lazy_parameters_need_initializer(device) -> None:
    with pytest.raises(FatalTrainingError, match="uninitialized"):
        GraphReplica(_LazyModel(), device).forward()

    replica = GraphReplica(_LazyModel(), device, initializer=lambda module: module(torch.zeros(1, 4)))
    replica.forward()
    assert replica.parameter_shape == (15,)


def test_element_type_applied_on_forward(device) -> None:
    replica = GraphReplica(_TinyModel(), device, element_type=torch.float16)
    replica.forward()
    assert replica.parameter_values().dtype == torch.float16
    assert replica.parameter_dtype == torch.float16


def test_gradients_and_clear(device) -> None:
    model = _TinyModel()
    replica = GraphReplica(model, device)
    model.zeta(torch.ones(1, 2)).sum().backward()
    grads = replica.parameter_gradients()
    assert grads.shape == (7,)
    # alpha received no gradient and contributes zeros.
    assert grads[:3].tolist() == [0.0, 0.0, 0.0]
    assert grads[3:].tolist() == [1.0, 1.0, 1.0, 1.0]

    replica.clear()
    assert model.zeta.weight.grad is None


def test_workspace_measures_saved_tensors() -> None:
    workspace = Workspace(capacity_mb=1, device=torch.device("cpu"))
    weight = torch.ones(256, 256, requires_grad=True)
    with workspace.track():
        (torch.ones(8, 256) @ weight).sum()
    assert workspace.last_peak_bytes > 0
    assert workspace.fits()

    with workspace.track():
        (torch.ones(2048, 256) @ weight).sum()
    assert workspace.last_peak_bytes >= 2048 * 256 * 4
    assert not workspace.fits()


def test_unbounded_workspace_always_fits() -> None:
    workspace = Workspace(capacity_mb=0, device=torch.device("cpu"))
    workspace.last_peak_bytes = 10**12
    assert workspace.fits()
