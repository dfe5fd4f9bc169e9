"""
Train a toy translation model with a replicated training group on synthetic batches.

Runs in one process, or under `torchrun --nproc_per_node N` with one process group.
"""

from __future__ import annotations

import argparse
import os
import sys

import torch
import torch.distributed as dist
import torch.nn as nn
import torch.nn.functional as F

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from replica_train.config import load_options
from replica_train.data.batch import CorpusBatch
from replica_train.data.batch import SyntheticBatchFactory
from replica_train.distributed.collectives import ProcessGroupBarrier
from replica_train.distributed.collectives import ProcessGroupGather
from replica_train.distributed.collectives import ProcessGroupParameterDistributor
from replica_train.distributed.collectives import ProcessGroupScatter
from replica_train.distributed.devices import init_distributed
from replica_train.logging import get_logger
from replica_train.logging import setup_logging
from replica_train.monitoring import create_summary_writer
from replica_train.optimizers.sharded_adam import ShardedAdam
from replica_train.runtime.group import TrainingGroup
from replica_train.training.scheduler import TrainingScheduler


setup_logging(log_level="INFO")
logger = get_logger(__name__)


class TinyTranslator(nn.Module):
    """Bag-of-source-words encoder feeding a per-position target decoder."""

    def __init__(self, vocab_size: int, hidden_size: int) -> None:
        super().__init__()
        self.src_embed = nn.Embedding(vocab_size, hidden_size)
        self.trg_embed = nn.Embedding(vocab_size, hidden_size)
        self.output = nn.Linear(hidden_size, vocab_size)

    def forward(self, source: torch.Tensor, target_in: torch.Tensor) -> torch.Tensor:
        context = self.src_embed(source).mean(dim=1, keepdim=True)
        return self.output(torch.tanh(self.trg_embed(target_in) + context))


class CrossEntropyCriterion:
    """Summed next-token cross entropy, so the group normalizes by label count."""

    def build(self, replica, batch: CorpusBatch) -> torch.Tensor:
        batch = batch.to(replica.device)
        source, target = batch.streams[0], batch.streams[-1]
        logits = replica.module(source, target[:, :-1])
        return F.cross_entropy(
            logits.float().reshape(-1, logits.size(-1)),
            target[:, 1:].reshape(-1),
            ignore_index=batch.pad_id,
            reduction="sum",
        )


def sum_gradients(replicas, world_size: int) -> None:
    """Give every replica the sum of all replicas' gradients on all ranks."""
    grads = [replica.parameter_gradients() for replica in replicas]
    total = torch.stack([grad.to(replicas[0].device).float() for grad in grads]).sum(dim=0)
    if world_size > 1:
        dist.all_reduce(total, op=dist.ReduceOp.SUM)
    for replica in replicas:
        offset = 0
        for _, param in replica.ordered_parameters():
            numel = param.numel()
            param.grad = total[offset:offset + numel].view_as(param).to(param.device, param.dtype)
            offset += numel


def sum_labels(labels: int, world_size: int) -> int:
    if world_size <= 1:
        return labels
    total = torch.tensor([labels], dtype=torch.int64)
    dist.all_reduce(total, op=dist.ReduceOp.SUM)
    return int(total.item())


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a toy model with a replica training group")
    parser.add_argument("--config", type=str, default=None, help="YAML options file")
    parser.add_argument("--steps", type=int, default=50, help="Number of updates")
    parser.add_argument("--save-freq", type=int, default=20, help="Save every N updates")
    parser.add_argument("--vocab-size", type=int, default=64)
    parser.add_argument("--hidden-size", type=int, default=32)
    parser.add_argument("--batch-size", type=int, default=16, help="Sequences per replica")
    parser.add_argument("--length", type=int, default=12)
    parser.add_argument("--seed", type=int, default=1234)
    parser.add_argument("--backend", type=str, default=None, help="gloo, nccl or auto")
    parser.add_argument("--log-dir", type=str, default=None, help="TensorBoard directory")
    parser.add_argument("overrides", nargs="*", help="Option overrides such as cost_scaling=[8,100]")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    rank, world_size = init_distributed(args.backend)
    is_main = rank == 0
    setup_logging(log_level="INFO", rank=rank if world_size > 1 else None)

    options = load_options(args.config, args.overrides)
    writer = create_summary_writer(args.log_dir, enabled=is_main and args.log_dir is not None)
    scheduler = TrainingScheduler(window=options.gradient_norm_average_window)

    # Every rank starts from the same weights.
    torch.manual_seed(args.seed)
    group = TrainingGroup(
        options,
        lambda: TinyTranslator(args.vocab_size, args.hidden_size),
        shard_factory=lambda: ShardedAdam(rank=rank, world_size=world_size),
        scheduler=scheduler,
        barrier=ProcessGroupBarrier(),
        writer=writer,
    )
    group.init_graphs()
    resumed = group.load(ProcessGroupScatter())
    logger.info("Starting %s at update %d", "resumed run" if resumed else "new run", scheduler.number_of_batches())

    criterion = CrossEntropyCriterion()
    vocab_sizes = [args.vocab_size, args.vocab_size]
    if options.workspace > 0:
        stats = group.collect_stats(criterion, vocab_sizes, multiplier=group.num_replicas * world_size)
        for widths, size in stats:
            logger.info("  widths %s -> batch size %d", widths, size)

    def save(is_final: bool = False) -> None:
        group.save(
            is_final,
            distributor=ProcessGroupParameterDistributor(group.replicas),
            gather=ProcessGroupGather(),
            is_main_process=is_main,
        )

    lengths = [args.length, args.length]
    while scheduler.number_of_batches() < args.steps:
        step = scheduler.number_of_batches()
        labels = 0
        for index, replica in enumerate(group.replicas):
            replica.forward()
            # A distinct batch per replica on every rank.
            seed = args.seed + (step * world_size + rank) * group.num_replicas + index
            factory = SyntheticBatchFactory(seed=seed)
            batch = factory.fake_batch(lengths, vocab_sizes, args.batch_size, options)
            labels += batch.size() * (args.length - 1)
            loss = criterion.build(replica, batch)
            (loss * group.cost_scale_factor).backward()
        sum_gradients(group.replicas, world_size)
        labels = sum_labels(labels, world_size)

        grad_norm = group.update(labels, ProcessGroupParameterDistributor(group.replicas))
        scheduler.update(grad_norm, labels)
        group.update_average_trg_batch_words(labels)

        step = scheduler.number_of_batches()
        if writer is not None:
            writer.add_scalar("Loss/train", float(loss.item()) / max(batch.words(), 1), step)
        if step % args.save_freq == 0:
            save()
            logger.info("Saved %s after %d updates", options.model, step)

    save(is_final=True)
    group.finalize()
    if writer is not None:
        writer.close()
    logger.info("Training finished after %d updates", scheduler.number_of_batches())
    if world_size > 1:
        dist.destroy_process_group()


if __name__ == "__main__":
    main()
