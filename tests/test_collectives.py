"""Unit tests for scatter/gather/distribute strategies, locally and over a gloo process group."""

from __future__ import annotations

import os
import socket

import numpy as np
import pytest
import torch
import torch.distributed as dist
import torch.multiprocessing as mp
import torch.nn as nn

from replica_train.config import TrainingOptions
from replica_train.distributed.collectives import LocalGather
from replica_train.distributed.collectives import LocalParameterDistributor
from replica_train.distributed.collectives import LocalScatter
from replica_train.distributed.collectives import NoOpBarrier
from replica_train.distributed.collectives import ProcessGroupBarrier
from replica_train.distributed.collectives import ProcessGroupGather
from replica_train.distributed.collectives import ProcessGroupParameterDistributor
from replica_train.distributed.collectives import ProcessGroupScatter
from replica_train.distributed.devices import get_backend
from replica_train.distributed.devices import init_distributed
from replica_train.distributed.devices import resolve_devices
from replica_train.io.items import MASTER_PARAMETERS
from replica_train.io.items import Item
from replica_train.io.items import checkpoint_path
from replica_train.io.items import find_item
from replica_train.io.items import load_items
from replica_train.optimizers.sharded_adam import ShardedAdam
from replica_train.runtime.group import TrainingGroup
from replica_train.runtime.replica import GraphReplica
from replica_train.training.scheduler import TrainingScheduler


def _scatter_into(strategy, values: np.ndarray, num_shards: int) -> dict[int, np.ndarray]:
    received: dict[int, np.ndarray] = {}
    strategy.scatter(Item.from_array("v", values), received.__setitem__, num_shards)
    return received


def test_scatter_splits_ceil_div_chunks() -> None:
    received = _scatter_into(LocalScatter(), np.arange(7, dtype=np.float32), 3)
    assert [received[i].tolist() for i in range(3)] == [[0.0, 1.0, 2.0], [3.0, 4.0, 5.0], [6.0]]


def test_scatter_uses_rank_offset() -> None:
    received = _scatter_into(LocalScatter(rank=1, world_size=2), np.arange(8, dtype=np.float32), 2)
    assert [received[i].tolist() for i in range(2)] == [[4.0, 5.0], [6.0, 7.0]]


def test_gather_inverts_scatter() -> None:
    values = np.random.default_rng(0).normal(size=13).astype(np.float32)
    received = _scatter_into(LocalScatter(), values, 4)
    np.testing.assert_array_equal(LocalGather().gather(received.__getitem__, 4), values)


def test_process_group_strategies_fall_back_to_local_without_group() -> None:
    values = np.arange(5, dtype=np.float32)
    received = _scatter_into(ProcessGroupScatter(), values, 2)
    np.testing.assert_array_equal(ProcessGroupGather().gather(received.__getitem__, 2), values)
    ProcessGroupBarrier().wait()
    NoOpBarrier().wait()


@pytest.mark.parametrize("distributor_cls", [LocalParameterDistributor, ProcessGroupParameterDistributor])
def test_distributor_copies_owned_slices(device, distributor_cls) -> None:
    replicas = [GraphReplica(nn.Linear(3, 2), device) for _ in range(3)]
    numel = replicas[0].parameter_shape[0]
    assert numel == 8
    for index, replica in enumerate(replicas):
        replica.set_parameter_values(torch.full((numel,), float(index)))

    distributor_cls(replicas).distribute()

    # ceil(8 / 3) = 3: replica 0 owns [0, 3), replica 1 [3, 6), replica 2 [6, 8).
    expected = torch.tensor([0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 2.0, 2.0])
    for replica in replicas:
        assert torch.equal(replica.parameter_values(), expected)


def test_resolve_devices() -> None:
    assert resolve_devices(["cpu", "cpu"]) == [torch.device("cpu"), torch.device("cpu")]
    assert resolve_devices(["1"]) == [torch.device("cuda:1")]
    assert resolve_devices(["cuda:0", "cpu", "cpu"]) == [
        torch.device("cuda:0"),
        torch.device("cpu"),
        torch.device("cpu"),
    ]
    with pytest.raises(ValueError, match="must not repeat"):
        resolve_devices(["cuda:0", "0"])
    with pytest.raises(ValueError, match="at least one device"):
        resolve_devices([])


def test_get_backend_rejects_unknown() -> None:
    assert get_backend("gloo") == "gloo"
    with pytest.raises(ValueError, match="Unknown backend"):
        get_backend("mpi")  # type: ignore[arg-type]


def test_init_distributed_single_process(monkeypatch) -> None:
    monkeypatch.delenv("WORLD_SIZE", raising=False)
    assert init_distributed("gloo") == (0, 1)
    assert not dist.is_initialized()


def _free_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = int(sock.getsockname()[1])
    sock.close()
    return port


def _setup_env(rank: int, world_size: int, port: int) -> None:
    os.environ["MASTER_ADDR"] = "127.0.0.1"
    os.environ["MASTER_PORT"] = str(port)
    os.environ["RANK"] = str(rank)
    os.environ["WORLD_SIZE"] = str(world_size)
    os.environ["LOCAL_RANK"] = str(rank)


def _worker_strategies(rank: int, world_size: int, port: int) -> None:
    _setup_env(rank=rank, world_size=world_size, port=port)
    assert init_distributed("gloo") == (rank, world_size)

    # 10 values over 2 ranks x 2 shards: ceil(10 / 4) = 3 per shard.
    received = _scatter_into(ProcessGroupScatter(), np.arange(10, dtype=np.float32), 2)
    expected = [[[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]], [[6.0, 7.0, 8.0], [9.0]]][rank]
    assert [received[i].tolist() for i in range(2)] == expected
    gathered = ProcessGroupGather().gather(received.__getitem__, 2)
    np.testing.assert_array_equal(gathered, np.arange(10, dtype=np.float32))

    # 8 parameters over 4 global shards: rank r replica i owns [2 * (2r + i), +2).
    replicas = [GraphReplica(nn.Linear(3, 2), "cpu") for _ in range(2)]
    for index, replica in enumerate(replicas):
        replica.set_parameter_values(torch.full((8,), float(rank * 2 + index)))
    ProcessGroupParameterDistributor(replicas).distribute()
    expected_values = torch.tensor([0.0, 0.0, 1.0, 1.0, 2.0, 2.0, 3.0, 3.0])
    for replica in replicas:
        assert torch.equal(replica.parameter_values(), expected_values)

    ProcessGroupBarrier().wait()
    dist.destroy_process_group()


class _Net(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.fc = nn.Linear(3, 3)


def _distributed_group(rank: int, world_size: int, model_path: str) -> TrainingGroup:
    torch.manual_seed(0)
    group = TrainingGroup(
        TrainingOptions(model=model_path, devices=["cpu"]),
        _Net,
        shard_factory=lambda: ShardedAdam(lr=0.1, smoothing=0.5, rank=rank, world_size=world_size),
        scheduler=TrainingScheduler(),
        barrier=ProcessGroupBarrier(),
        show_progress=False,
    )
    group.init_graphs()
    return group


def _worker_group_save(rank: int, world_size: int, port: int, model_path: str) -> None:
    _setup_env(rank=rank, world_size=world_size, port=port)
    init_distributed("gloo")

    group = _distributed_group(rank, world_size, model_path)
    assert not group.load(ProcessGroupScatter())
    replica = group.replicas[0]
    replica.module.fc(torch.ones(2, 3)).pow(2).sum().backward()
    group.update(token_count=2, distributor=ProcessGroupParameterDistributor(group.replicas))
    group.scheduler.update(1.0, labels=2)
    live = replica.parameter_values()

    group.save(
        distributor=ProcessGroupParameterDistributor(group.replicas),
        gather=ProcessGroupGather(),
        is_main_process=rank == 0,
    )
    assert torch.equal(replica.parameter_values(), live)
    if rank == 0:
        master = find_item(load_items(checkpoint_path(model_path)), MASTER_PARAMETERS)
        np.testing.assert_array_equal(master.data, live.numpy())

    restored = _distributed_group(rank, world_size, model_path)
    assert restored.load(ProcessGroupScatter())
    assert torch.equal(restored.replicas[0].parameter_values(), live)
    original_shard, restored_shard = group.shards[0], restored.shards[0]
    assert restored_shard.step_count == 1
    assert torch.equal(restored_shard.exp_avg, original_shard.exp_avg)
    assert torch.equal(restored_shard.smoothed, original_shard.smoothed)

    ProcessGroupBarrier().wait()
    dist.destroy_process_group()


def test_process_group_strategies_world2() -> None:
    """Scatter, gather and distribute agree across two gloo ranks."""
    world_size = 2
    mp.spawn(_worker_strategies, args=(world_size, _free_port()), nprocs=world_size, join=True)


def test_group_save_and_restore_world2(tmp_path) -> None:
    """Only rank 0 writes, yet every rank takes part in the save and restores its own shard."""
    world_size = 2
    model_path = str(tmp_path / "model.npz")
    mp.spawn(
        _worker_group_save,
        args=(world_size, _free_port(), model_path),
        nprocs=world_size,
        join=True,
    )
    assert os.path.exists(model_path)
    assert os.path.exists(checkpoint_path(model_path))
