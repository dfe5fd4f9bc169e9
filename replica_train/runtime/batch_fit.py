"""
Batch-size fitting against a fixed workspace.

For every length bucket the prober finds the largest synthetic batch whose graph
construction still fits the replica's workspace. The result feeds dynamic batching.
"""

from __future__ import annotations

import math
from typing import Any
from typing import Sequence

from tqdm import tqdm

from replica_train.config import TrainingOptions
from replica_train.data.batch import BatchStats
from replica_train.logging import get_logger
from replica_train.runtime.contracts import BatchFactory
from replica_train.runtime.contracts import CriterionModel
from replica_train.runtime.contracts import Replica


logger = get_logger(__name__)

# Upper limit for the doubling search when the workspace is unbounded.
MAX_PROBE_BATCH = 1 << 24


def number_of_input_streams(options: TrainingOptions) -> int:
    """Count input streams: TSV fields minus alignment/weighting columns, else train sets."""
    if options.tsv:
        count = int(options.tsv_fields)
        if count > 0 and options.guided_alignment != "none":
            count -= 1
        if count > 0 and options.data_weighting:
            count -= 1
        return count
    return len(options.train_sets)


def rounded_max_length(max_length: int, step: int) -> int:
    return int(math.ceil(max_length / float(step)) * step)


class BatchFitProber:
    """Exponential upper-bound search followed by a per-bucket binary search."""

    def __init__(
        self,
        options: TrainingOptions,
        batch_factory: BatchFactory,
        show_progress: bool = True,
    ) -> None:
        if options.mini_batch_fit_step < 1:
            raise ValueError("mini_batch_fit_step must be >= 1")
        if options.mini_batch_fit_initial < 1:
            raise ValueError("mini_batch_fit_initial must be >= 1")
        self.options = options
        self.batch_factory = batch_factory
        self.show_progress = show_progress

    def _stream_caps(self, num_streams: int, max_length: int) -> list[int]:
        caps = [max_length] * num_streams
        for position, input_type in enumerate(self.options.input_types[:num_streams]):
            if input_type == "class":
                caps[position] = 1
        return caps

    def _fits(
        self,
        replica: Replica,
        criterion: CriterionModel,
        vocab_sizes: Sequence[int],
        lengths: Sequence[int],
        size: int,
    ) -> tuple[Any, bool]:
        batch = self.batch_factory.fake_batch(lengths, vocab_sizes, size, self.options)
        with replica.track_workspace():
            loss = criterion.build(replica, batch)
        fits = replica.fits()
        del loss
        replica.clear()
        return batch, fits

    def probe(
        self,
        replica: Replica,
        criterion: CriterionModel,
        vocab_sizes: Sequence[int],
        multiplier: float = 1.0,
    ) -> BatchStats:
        """Build the batch-stat table; the replica's NaN setting is restored afterwards."""
        step = int(self.options.mini_batch_fit_step)
        max_length = rounded_max_length(int(self.options.max_length), step)
        num_streams = number_of_input_streams(self.options)
        if num_streams < 1:
            raise ValueError("cannot probe batch sizes without input streams")
        caps = self._stream_caps(num_streams, max_length)
        stats = BatchStats()

        throw_nan = replica.throw_nan
        replica.throw_nan = False
        try:
            max_batch = int(self.options.mini_batch_fit_initial)
            lengths = [min(step, cap) for cap in caps]
            while max_batch < MAX_PROBE_BATCH:
                _, fits = self._fits(replica, criterion, vocab_sizes, lengths, max_batch)
                if not fits:
                    break
                max_batch *= 2
            logger.info("[batching] Upper bound for batch size: %d", max_batch)

            buckets = range(step, max_length + 1, step)
            for length in tqdm(buckets, desc="Fitting batch sizes", disable=not self.show_progress):
                lengths = [min(length, cap) for cap in caps]
                start, end = 1, max_batch
                best = 0
                while True:
                    current = (start + end) // 2
                    batch, fits = self._fits(replica, criterion, vocab_sizes, lengths, current)
                    logger.debug(
                        "[batching] length: %d - size: %d - fits: %s", lengths[0], current, fits
                    )
                    if fits:
                        stats.add(batch, multiplier)
                        best = current
                        start = current + 1
                    else:
                        end = current - 1
                    if end - start <= step:
                        break
                # Longer sequences never admit larger batches.
                max_batch = best if best > 0 else start
        finally:
            replica.throw_nan = throw_nan

        logger.info("[batching] Collected batch statistics for %d buckets", len(stats))
        return stats
