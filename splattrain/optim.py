"""
Per-group Adam optimizers and their moment buffers, which follow the
primitive set through structural mutations.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Dict, Iterator, Mapping, Optional, Tuple

import torch

from splattrain.scene import Mutation, PrimitiveSet

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATES: Dict[str, float] = {
    "means": 0.00016,
    "scales": 0.005,
    "quats": 0.001,
    "features_dc": 0.0025,
    "features_rest": 0.0025 / 20.0,
    "opacities": 0.05,
}

# Adam moment buffers that are laid out per primitive.
_PER_ROW_STATE = ("exp_avg", "exp_avg_sq")


def exponential_lr(step: int, lr_init: float, lr_final: float, max_steps: int) -> float:
    """Log-linear interpolation from `lr_init` at step 0 to `lr_final` at `max_steps`."""
    if max_steps <= 0:
        return lr_final
    t = min(max(step / max_steps, 0.0), 1.0)
    return math.exp(math.log(lr_init) * (1 - t) + math.log(lr_final) * t)


class OptimizerSet:
    """
    One Adam optimizer per parameter group, driven uniformly.

    Groups do not share optimizer state; `zero_grad` and `step` simply visit
    every group in order.
    """

    def __init__(
        self,
        scene: PrimitiveSet,
        learning_rates: Optional[Mapping[str, float]] = None,
        eps: float = 1e-15,
        means_lr_final: Optional[float] = None,
        max_steps: int = 30000,
    ):
        lrs = dict(DEFAULT_LEARNING_RATES)
        if learning_rates:
            unknown = set(learning_rates) - set(lrs)
            if unknown:
                raise ValueError(f"Unknown parameter groups: {sorted(unknown)}")
            lrs.update(learning_rates)

        self.learning_rates = lrs
        self.means_lr_final = means_lr_final
        self.max_steps = int(max_steps)
        self.optimizers: "OrderedDict[str, torch.optim.Adam]" = OrderedDict(
            (name, torch.optim.Adam([param], lr=lrs[name], eps=eps))
            for name, param in scene.params().items()
        )

    def __iter__(self) -> Iterator[Tuple[str, torch.optim.Adam]]:
        return iter(self.optimizers.items())

    def __len__(self) -> int:
        return len(self.optimizers)

    def __getitem__(self, name: str) -> torch.optim.Adam:
        return self.optimizers[name]

    def zero_grad(self) -> None:
        for optimizer in self.optimizers.values():
            optimizer.zero_grad()

    def step(self) -> None:
        for optimizer in self.optimizers.values():
            optimizer.step()

    def update_learning_rate(self, step: int) -> float:
        """Decay the position learning rate; returns the value now in effect."""
        lr = self.learning_rates["means"]
        if self.means_lr_final is not None:
            lr = exponential_lr(step, lr, self.means_lr_final, self.max_steps)
        for group in self.optimizers["means"].param_groups:
            group["lr"] = lr
        return lr

    def remap(
        self,
        old_params: Mapping[str, torch.nn.Parameter],
        new_params: Mapping[str, torch.nn.Parameter],
        mutation: Mutation,
    ) -> None:
        """
        Point every optimizer at its group's new Parameter after a mutation.

        Moment buffers of kept rows carry over; appended rows start from zero.
        """
        for name, optimizer in self.optimizers.items():
            old, new = old_params[name], new_params[name]
            state = optimizer.state.pop(old, None)
            if state is not None:
                keep = mutation.keep.to(old.device)
                for key in _PER_ROW_STATE:
                    if key not in state:
                        continue
                    kept = state[key][keep]
                    extra = torch.zeros(
                        (mutation.num_appended,) + tuple(kept.shape[1:]),
                        dtype=kept.dtype,
                        device=kept.device,
                    )
                    state[key] = torch.cat([kept, extra], dim=0)
                optimizer.state[new] = state
            optimizer.param_groups[0]["params"] = [new]
        logger.debug("Remapped %d optimizers to %d rows", len(self), new_params["means"].shape[0])
