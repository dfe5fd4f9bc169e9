"""
Corpus batches, the synthetic batch factory used for memory probing, and batch stats.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator
from typing import Optional
from typing import Sequence

import torch

from replica_train.config import TrainingOptions


@dataclass
class CorpusBatch:
    """Token ids per input stream, each shaped `(size, length)`."""

    streams: list[torch.Tensor]
    pad_id: int = 0

    def size(self) -> int:
        return int(self.streams[0].shape[0]) if self.streams else 0

    def widths(self) -> tuple[int, ...]:
        return tuple(int(stream.shape[1]) for stream in self.streams)

    def words(self, stream: int = -1) -> int:
        """Non-padding tokens in `stream` (the target stream by default)."""
        return int((self.streams[stream] != self.pad_id).sum().item())

    def to(self, device: torch.device | str) -> "CorpusBatch":
        return CorpusBatch([stream.to(device) for stream in self.streams], self.pad_id)


class SyntheticBatchFactory:
    """Random batches of exact per-stream lengths; no padding is ever generated."""

    def __init__(self, seed: int = 1234, pad_id: int = 0) -> None:
        self.seed = seed
        self.pad_id = pad_id

    def fake_batch(
        self,
        lengths: Sequence[int],
        vocab_sizes: Sequence[int],
        size: int,
        options: Optional[TrainingOptions] = None,
    ) -> CorpusBatch:
        if len(lengths) != len(vocab_sizes):
            raise ValueError(f"{len(lengths)} stream lengths for {len(vocab_sizes)} vocabularies")
        input_types = list(options.input_types) if options is not None else []
        generator = torch.Generator().manual_seed(self.seed)
        streams = []
        for position, (length, vocab_size) in enumerate(zip(lengths, vocab_sizes)):
            if position < len(input_types) and input_types[position] == "class":
                length = 1
            low = 0 if self.pad_id != 0 else 1
            high = max(int(vocab_size), low + 1)
            streams.append(torch.randint(low, high, (int(size), int(length)), generator=generator))
        return CorpusBatch(streams, pad_id=self.pad_id)


class BatchStats:
    """
    Largest feasible batch size per tuple of stream widths.

    Built once before training; a dynamic batching scheduler looks up the entry for
    the smallest recorded widths that cover a candidate batch.
    """

    def __init__(self) -> None:
        self._sizes: dict[tuple[int, ...], int] = {}

    def add(self, batch: CorpusBatch, multiplier: float = 1.0) -> None:
        self._sizes[batch.widths()] = int(batch.size() * multiplier)

    def find_batch_size(self, lengths: Sequence[int]) -> Optional[int]:
        wanted = tuple(int(length) for length in lengths)
        for widths, size in sorted(self._sizes.items()):
            if len(widths) == len(wanted) and all(w >= l for w, l in zip(widths, wanted)):
                return size
        return None

    def items(self) -> list[tuple[tuple[int, ...], int]]:
        return sorted(self._sizes.items())

    def __iter__(self) -> Iterator[tuple[tuple[int, ...], int]]:
        return iter(self.items())

    def __len__(self) -> int:
        return len(self._sizes)
