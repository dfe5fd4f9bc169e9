"""Named tensor item collections persisted as ordered `.npz` archives."""

from __future__ import annotations

from dataclasses import dataclass
import os
import tempfile
from typing import Iterable
from typing import Optional
from typing import Sequence

import numpy as np
import torch

from replica_train.runtime.contracts import FatalTrainingError


MASTER_PARAMETERS = "master_parameters"

_TORCH_TO_NUMPY: dict[torch.dtype, np.dtype] = {
    torch.float32: np.dtype(np.float32),
    torch.float16: np.dtype(np.float16),
    # numpy has no bfloat16; widen losslessly.
    torch.bfloat16: np.dtype(np.float32),
    torch.float64: np.dtype(np.float64),
    torch.int64: np.dtype(np.int64),
    torch.int32: np.dtype(np.int32),
    torch.uint8: np.dtype(np.uint8),
}


def numpy_dtype_for(dtype: torch.dtype) -> np.dtype:
    """Return the numpy element type used to store tensors of `dtype`."""
    try:
        return _TORCH_TO_NUMPY[dtype]
    except KeyError as exc:
        raise ValueError(f"Unsupported item element type: {dtype}") from exc


@dataclass
class Item:
    """One named, shaped array inside a checkpoint collection."""

    name: str
    shape: tuple[int, ...]
    dtype: np.dtype
    data: np.ndarray

    @classmethod
    def from_array(cls, name: str, data: np.ndarray) -> "Item":
        data = np.ascontiguousarray(data)
        return cls(name=name, shape=tuple(data.shape), dtype=data.dtype, data=data)

    @classmethod
    def from_tensor(cls, name: str, tensor: torch.Tensor) -> "Item":
        host = tensor.detach().to(device="cpu")
        if host.dtype == torch.bfloat16:
            host = host.float()
        return cls.from_array(name, host.numpy().astype(numpy_dtype_for(tensor.dtype), copy=True))

    @classmethod
    def from_text(cls, name: str, text: str) -> "Item":
        return cls.from_array(name, np.frombuffer(text.encode("utf-8"), dtype=np.uint8).copy())

    def text(self) -> str:
        return self.data.astype(np.uint8).tobytes().decode("utf-8")

    def convert(self, dtype: torch.dtype | np.dtype) -> "Item":
        """Convert the stored element type in place and return self."""
        target = numpy_dtype_for(dtype) if isinstance(dtype, torch.dtype) else np.dtype(dtype)
        if self.data.dtype != target:
            self.data = self.data.astype(target)
        self.dtype = target
        return self

    def to_tensor(
        self,
        *,
        device: torch.device | str = "cpu",
        dtype: Optional[torch.dtype] = None,
    ) -> torch.Tensor:
        tensor = torch.from_numpy(np.array(self.data, copy=True)).reshape(self.shape)
        return tensor.to(device=device, dtype=dtype if dtype is not None else tensor.dtype)

    @property
    def numel(self) -> int:
        return int(self.data.size)


def find_item(items: Iterable[Item], name: str) -> Optional[Item]:
    """Return the first item called `name`, or None."""
    for item in items:
        if item.name == name:
            return item
    return None


def load_items(path: str) -> list[Item]:
    """Load an ordered item collection; an unreadable file is fatal."""
    if not os.path.exists(path):
        raise FatalTrainingError(f"File '{path}' does not exist")
    try:
        with np.load(path, allow_pickle=False) as archive:
            return [Item.from_array(name, archive[name]) for name in archive.files]
    except (OSError, ValueError) as exc:
        raise FatalTrainingError(f"File '{path}' can't be opened: {exc}") from exc


def save_items(path: str, items: Sequence[Item]) -> None:
    """
    Write an item collection atomically.

    The archive is written next to `path` and moved into place with `os.replace`, so
    readers see either the previous file or the complete new one.
    """
    names = [item.name for item in items]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Duplicate item names in collection: {duplicates}")

    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".npz", dir=directory)
    except OSError as exc:
        raise FatalTrainingError(f"File '{path}' can't be opened for writing: {exc}") from exc

    try:
        with os.fdopen(fd, "wb") as handle:
            np.savez(handle, **{item.name: item.data.reshape(item.shape) for item in items})
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def iteration_model_path(path: str, number_of_batches: object) -> str:
    """`model.npz` -> `model.iter<N>.npz`."""
    root, ext = os.path.splitext(path)
    return f"{root}.iter{number_of_batches}{ext}"


def checkpoint_path(path: str) -> str:
    """`model.npz` -> `model.npz.optimizer.npz`."""
    _, ext = os.path.splitext(path)
    return f"{path}.optimizer{ext or '.npz'}"


def progress_path(path: str) -> str:
    """`model.npz` -> `model.npz.progress.yml`."""
    return f"{path}.progress.yml"
