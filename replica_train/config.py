"""
Configuration system for replica-train.

Options are plain dataclasses; YAML files and dotlist overrides are merged on top of
the structured schema with OmegaConf.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
import math
from typing import List
from typing import Optional
from typing import Sequence

import torch
from omegaconf import OmegaConf


_DTYPE_ALIAS_TO_TORCH: dict[str, torch.dtype] = {
    "float32": torch.float32,
    "fp32": torch.float32,
    "float16": torch.float16,
    "fp16": torch.float16,
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
}


def dtype_alias_to_torch(dtype_alias: str) -> torch.dtype:
    """Map a precision alias (`float32`, `fp16`, `bf16`, ...) to a torch dtype."""
    try:
        return _DTYPE_ALIAS_TO_TORCH[str(dtype_alias).lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported precision dtype alias: {dtype_alias}") from exc


@dataclass
class TrainingOptions:
    """Options recognized by the training-coordination layer."""

    # Model file; checkpoints and progress files are derived from it.
    model: str = "model.npz"
    no_reload: bool = False
    pretrained_model: Optional[str] = None
    overwrite: bool = False

    # Positional: exponent, frequency, multiplier, nan tolerance, nan range, minimum factor.
    cost_scaling: List[str] = field(default_factory=list)
    # Positional: sigma factor, optional "log".
    dynamic_gradient_scaling: List[str] = field(default_factory=list)
    check_gradient_nan: bool = False
    normalize_gradient: bool = False
    gradient_norm_average_window: int = 100

    # Batch-size fitting.
    mini_batch_fit_step: int = 10
    mini_batch_fit_initial: int = 512
    mini_batch_round_up: bool = True
    max_length: int = 50
    input_types: List[str] = field(default_factory=list)
    tsv: bool = False
    tsv_fields: int = 0
    guided_alignment: str = "none"
    data_weighting: Optional[str] = None
    train_sets: List[str] = field(default_factory=list)

    # Replica construction.
    devices: List[str] = field(default_factory=lambda: ["cpu"])
    precision: List[str] = field(default_factory=lambda: ["float32", "float32"])
    check_nan: bool = False
    workspace: int = 0


@dataclass
class CostScalingConfig:
    """Parsed `cost-scaling` option."""

    exponent: float = 0.0
    frequency: int = 2000
    multiplier: float = 2.0
    nan_tolerance: float = 0.0
    nan_range: int = 1
    factor_minimum: float = 1.0

    @property
    def initial_factor(self) -> float:
        return math.pow(2.0, self.exponent)

    def __post_init__(self) -> None:
        if self.frequency < 1:
            raise ValueError("cost-scaling frequency must be >= 1")
        if self.multiplier <= 1.0:
            raise ValueError("cost-scaling multiplier must be > 1")
        if not (0.0 <= self.nan_tolerance <= 1.0):
            raise ValueError("cost-scaling nan tolerance must be in [0, 1]")
        if self.nan_range < 1:
            raise ValueError("cost-scaling nan range must be >= 1")
        if self.factor_minimum <= 0.0:
            raise ValueError("cost-scaling minimum factor must be > 0")
        if self.initial_factor < self.factor_minimum:
            raise ValueError(
                f"cost-scaling initial factor 2^{self.exponent} = {self.initial_factor} "
                f"is below the minimum factor {self.factor_minimum}"
            )

    @classmethod
    def from_options(cls, values: Sequence[str]) -> Optional["CostScalingConfig"]:
        """Parse the positional option list; empty means cost scaling is disabled."""
        values = [str(value) for value in values or ()]
        if not values:
            return None
        kwargs: dict[str, object] = {"exponent": float(values[0])}
        if len(values) > 1:
            kwargs["frequency"] = int(values[1])
        if len(values) > 2:
            kwargs["multiplier"] = float(values[2])
        if len(values) > 3:
            kwargs["nan_tolerance"] = float(values[3])
        if len(values) > 4:
            kwargs["nan_range"] = int(values[4])
        if len(values) > 5:
            kwargs["factor_minimum"] = float(values[5])
        return cls(**kwargs)  # type: ignore[arg-type]


@dataclass
class DynamicScalingConfig:
    """Parsed `dynamic-gradient-scaling` option."""

    sigma_factor: float = 2.0
    use_logs: bool = False

    @classmethod
    def from_options(cls, values: Sequence[str]) -> Optional["DynamicScalingConfig"]:
        values = [str(value) for value in values or ()]
        if not values:
            return None
        sigma_factor = float(values[0])
        if sigma_factor <= 0.0:
            raise ValueError("dynamic-gradient-scaling factor must be > 0")
        use_logs = len(values) > 1 and values[1] == "log"
        return cls(sigma_factor=sigma_factor, use_logs=use_logs)


def _normalize_keys(raw: object) -> object:
    """Accept `cost-scaling` style keys by mapping hyphens to underscores."""
    if isinstance(raw, dict):
        return {str(key).replace("-", "_"): _normalize_keys(value) for key, value in raw.items()}
    return raw


def load_options(
    path: Optional[str] = None,
    overrides: Sequence[str] = (),
) -> TrainingOptions:
    """
    Build `TrainingOptions` from defaults, an optional YAML file and dotlist overrides.

    Args:
        path: YAML config file; hyphenated keys are accepted.
        overrides: OmegaConf dotlist entries such as `"overwrite=true"`.

    Returns:
        A validated `TrainingOptions` instance.
    """
    schema = OmegaConf.structured(TrainingOptions)
    layers = [schema]
    if path is not None:
        loaded = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
        layers.append(OmegaConf.create(_normalize_keys(loaded or {})))
    if overrides:
        layers.append(OmegaConf.from_dotlist(list(overrides)))

    merged = OmegaConf.merge(*layers)
    options = OmegaConf.to_object(merged)
    assert isinstance(options, TrainingOptions)

    if options.mini_batch_fit_step < 1:
        raise ValueError("mini-batch-fit-step must be >= 1")
    if options.mini_batch_fit_initial < 1:
        raise ValueError("mini-batch-fit-initial must be >= 1")
    if options.max_length < 1:
        raise ValueError("max-length must be >= 1")
    if not options.devices:
        raise ValueError("at least one device must be configured")
    if not options.precision:
        raise ValueError("precision must name at least the parameter type")
    dtype_alias_to_torch(options.precision[0])
    CostScalingConfig.from_options(options.cost_scaling)
    DynamicScalingConfig.from_options(options.dynamic_gradient_scaling)
    return options
