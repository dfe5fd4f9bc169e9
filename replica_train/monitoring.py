"""
Monitoring helpers.

Controllers only need `add_scalar`, so tests can pass any recorder object while
training runs use a TensorBoard `SummaryWriter`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from torch.utils.tensorboard import SummaryWriter

from replica_train.logging import get_logger


logger = get_logger(__name__)


def create_summary_writer(log_dir: str, enabled: bool = True) -> Optional[SummaryWriter]:
    """Return a TensorBoard writer for `log_dir`, or None when monitoring is disabled."""
    if not enabled:
        return None
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    logger.info("TensorBoard logs: %s", path)
    return SummaryWriter(str(path))
