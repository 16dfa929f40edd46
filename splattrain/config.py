"""Training hyperparameters and their command-line mapping."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field, fields
from typing import Dict, Optional, Tuple

from splattrain.optim import DEFAULT_LEARNING_RATES


@dataclass
class TrainConfig:
    """Hyperparameters of a training run."""

    iterations: int = 30000
    # coarse-to-fine resolution: 2^num_downscales smaller at step 0
    num_downscales: int = 2
    resolution_schedule: int = 3000
    # progressive spherical harmonics
    sh_degree: int = 3
    sh_degree_interval: int = 1000
    # density control schedule
    refine_every: int = 100
    warmup_length: int = 500
    reset_alpha_every: int = 30
    stop_split_at: int = 15000
    # loss
    ssim_weight: float = 0.2
    # rendering
    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    z_near: float = 0.001
    z_far: float = 1000.0
    tile_size: int = 16
    # optimization
    learning_rates: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_LEARNING_RATES))
    means_lr_final: Optional[float] = 0.0000016
    # bookkeeping
    log_every: int = 100
    seed: Optional[int] = 42
    device: str = "cuda"

    def validate(self) -> "TrainConfig":
        positive = (
            "iterations",
            "resolution_schedule",
            "sh_degree_interval",
            "refine_every",
            "reset_alpha_every",
            "tile_size",
            "log_every",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.num_downscales < 0:
            raise ValueError(f"num_downscales must be >= 0, got {self.num_downscales}")
        if not 0 <= self.sh_degree <= 4:
            raise ValueError(f"sh_degree must be in [0, 4], got {self.sh_degree}")
        if not 0.0 < self.z_near < self.z_far:
            raise ValueError(f"need 0 < z_near < z_far, got {self.z_near}, {self.z_far}")
        if not 0.0 <= self.ssim_weight <= 1.0:
            raise ValueError(f"ssim_weight must be in [0, 1], got {self.ssim_weight}")
        if len(self.background) != 3:
            raise ValueError(f"background must have 3 values, got {self.background}")
        unknown = set(self.learning_rates) - set(DEFAULT_LEARNING_RATES)
        if unknown:
            raise ValueError(f"Unknown parameter groups in learning_rates: {sorted(unknown)}")
        return self


def _flag(name: str) -> str:
    return "--" + name.replace("_", "-")


# Fields whose argparse mapping is not a plain scalar.
_SPECIAL = {"background", "learning_rates", "means_lr_final", "seed"}


def add_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Register one command-line option per `TrainConfig` field."""
    defaults = TrainConfig()
    for f in fields(TrainConfig):
        if f.name in _SPECIAL:
            continue
        default = getattr(defaults, f.name)
        parser.add_argument(
            _flag(f.name), type=type(default), default=default, help=f"(default: {default})"
        )

    parser.add_argument(
        "--background",
        type=float,
        nargs=3,
        default=list(defaults.background),
        metavar=("R", "G", "B"),
        help="Background color in [0, 1].",
    )
    for group, lr in DEFAULT_LEARNING_RATES.items():
        parser.add_argument(
            _flag(f"{group}_lr"), type=float, default=lr, help=f"Adam learning rate for {group}."
        )
    parser.add_argument(
        "--means-lr-final",
        type=float,
        default=defaults.means_lr_final,
        help="Final position learning rate of the exponential decay; <= 0 disables the decay.",
    )
    parser.add_argument(
        "--seed", type=int, default=defaults.seed, help="Random seed; negative for none."
    )
    return parser


def from_args(args: argparse.Namespace) -> TrainConfig:
    """Build a validated `TrainConfig` from parsed arguments."""
    values = {
        f.name: getattr(args, f.name) for f in fields(TrainConfig) if f.name not in _SPECIAL
    }
    means_lr_final = args.means_lr_final
    config = TrainConfig(
        background=tuple(float(c) for c in args.background),
        learning_rates={
            group: getattr(args, f"{group}_lr") for group in DEFAULT_LEARNING_RATES
        },
        means_lr_final=means_lr_final if means_lr_final and means_lr_final > 0 else None,
        seed=args.seed if args.seed is not None and args.seed >= 0 else None,
        **values,
    )
    return config.validate()
