"""Unit tests for npz model weight persistence."""

from __future__ import annotations

import pytest
import torch
import torch.nn as nn

from conftest import assert_tensor_close
from replica_train.io.items import load_items
from replica_train.models.persistence import MODEL_CONFIG_ITEM
from replica_train.models.persistence import NpzModelPersistence
from replica_train.runtime.contracts import FatalTrainingError
from replica_train.runtime.replica import GraphReplica


class _Encoder(nn.Module):
    def __init__(self, hidden: int = 4, with_head: bool = False) -> None:
        super().__init__()
        self.embed = nn.Linear(3, hidden)
        if with_head:
            self.head = nn.Linear(hidden, 2)


def test_save_then_reload(tmp_path, device) -> None:
    path = str(tmp_path / "model.npz")
    source = GraphReplica(_Encoder(), device)
    persistence = NpzModelPersistence({"dim": 4, "type": "encoder"})
    persistence.save(source, path, save_translator_config=True)

    names = [item.name for item in load_items(path)]
    assert names == ["embed.bias", "embed.weight", MODEL_CONFIG_ITEM]
    assert persistence.read_model_config(path) == {"dim": 4, "type": "encoder"}

    target = GraphReplica(_Encoder(), device)
    persistence.load(target, path)
    assert_tensor_close(target.parameter_values(), source.parameter_values())


def test_reload_requires_every_parameter(tmp_path, device) -> None:
    path = str(tmp_path / "model.npz")
    NpzModelPersistence().save(GraphReplica(_Encoder(), device), path)
    with pytest.raises(FatalTrainingError, match="missing 2 parameters"):
        NpzModelPersistence().load(GraphReplica(_Encoder(with_head=True), device), path)


def test_pretrained_loads_matching_names_only(tmp_path, device) -> None:
    path = str(tmp_path / "pretrained.npz")
    source = GraphReplica(_Encoder(), device)
    NpzModelPersistence().save(source, path)

    target = GraphReplica(_Encoder(with_head=True), device)
    head_before = target.module.head.weight.detach().clone()
    NpzModelPersistence().load(target, path, mark_reloaded=False)

    assert_tensor_close(target.module.embed.weight.detach(), source.module.embed.weight.detach())
    assert torch.equal(target.module.head.weight.detach(), head_before)


def test_named_shape_mismatch_is_fatal(tmp_path, device) -> None:
    path = str(tmp_path / "model.npz")
    NpzModelPersistence().save(GraphReplica(_Encoder(hidden=4), device), path)
    with pytest.raises(FatalTrainingError, match="embed.bias"):
        NpzModelPersistence().load(GraphReplica(_Encoder(hidden=5), device), path, mark_reloaded=False)
