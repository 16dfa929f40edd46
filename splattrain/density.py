"""
Adaptive density control: per-primitive screen-space statistics and the
refinement schedule that decides when the primitive set may change shape.

Statistics are fed from each step's `RenderResult` after the backward pass.
What to split, clone or prune is delegated to a `RefinementPolicy`; the
default policy never mutates the scene.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import torch

from splattrain.optim import OptimizerSet
from splattrain.render_pipeline import RenderResult
from splattrain.scene import Mutation, PrimitiveSet

logger = logging.getLogger(__name__)


class RefinePhase(enum.Enum):
    WARMUP = "warmup"
    ACCUMULATING = "accumulating"
    FROZEN = "frozen"


@dataclass
class DensityStatistics:
    """
    Running per-primitive statistics, created lazily on the first update.

    xys_grad_norm / vis_counts is the mean screen-space gradient magnitude
    over the steps in which the primitive was visible.
    """

    xys_grad_norm: Optional[torch.Tensor] = None  # (N,)
    vis_counts: Optional[torch.Tensor] = None  # (N,)
    max_2d_size: Optional[torch.Tensor] = None  # (N,)

    @property
    def initialized(self) -> bool:
        return self.xys_grad_norm is not None

    def __len__(self) -> int:
        return 0 if self.xys_grad_norm is None else int(self.xys_grad_norm.shape[0])

    def average_grad_norm(self) -> torch.Tensor:
        if not self.initialized:
            raise RuntimeError("Density statistics have not been accumulated yet")
        return self.xys_grad_norm / self.vis_counts.clamp_min(1.0)

    def reset(self) -> None:
        self.xys_grad_norm = None
        self.vis_counts = None
        self.max_2d_size = None

    @torch.no_grad()
    def update(self, grads: torch.Tensor, radii: torch.Tensor, max_dim: int) -> None:
        """
        Fold one step into the statistics.

        Args:
            grads:   (N,) screen-space gradient magnitudes for this step.
            radii:   (N,) projected radii for this step, 0 = not visible.
            max_dim: max(height, width) of the rendered image.
        """
        if self.initialized and len(self) != grads.shape[0]:
            raise RuntimeError(
                f"Density statistics track {len(self)} primitives but the step "
                f"produced {grads.shape[0]}; commit mutations through commit_mutation"
            )

        visible = (radii > 0).flatten()

        if self.xys_grad_norm is None:
            self.xys_grad_norm = grads.clone()
            self.vis_counts = torch.ones_like(self.xys_grad_norm)
        else:
            self.vis_counts[visible] += 1
            self.xys_grad_norm[visible] += grads[visible]

        if self.max_2d_size is None:
            self.max_2d_size = torch.zeros_like(radii, dtype=torch.float32)

        new_radii = radii[visible].float()
        self.max_2d_size[visible] = torch.maximum(
            self.max_2d_size[visible], new_radii / float(max_dim)
        )

    @torch.no_grad()
    def remap(self, mutation: Mutation) -> None:
        """Keep the surviving rows and add zeroed rows for appended primitives."""
        if not self.initialized:
            return
        keep = mutation.keep.to(self.xys_grad_norm.device)
        for name in ("xys_grad_norm", "vis_counts", "max_2d_size"):
            kept = getattr(self, name)[keep]
            extra = kept.new_zeros(mutation.num_appended)
            setattr(self, name, torch.cat([kept, extra]))


class RefinementPolicy(ABC):
    """Chooses the structural change to make when densification is eligible."""

    @abstractmethod
    def propose(
        self, scene: PrimitiveSet, statistics: DensityStatistics, step: int
    ) -> Optional[Mutation]:
        ...


class NoRefinement(RefinementPolicy):
    """Keeps the primitive set as it is."""

    def propose(self, scene, statistics, step) -> Optional[Mutation]:
        return None


def commit_mutation(
    scene: PrimitiveSet,
    optimizers: OptimizerSet,
    statistics: DensityStatistics,
    mutation: Mutation,
) -> None:
    """
    Apply `mutation` to the parameters, the optimizer moments and the density
    statistics together, so all per-primitive arrays stay the same length.
    """
    before = scene.num_gaussians
    old_params = scene.params()
    scene.apply_mutation(mutation)
    optimizers.remap(old_params, scene.params(), mutation)
    statistics.remap(mutation)

    if statistics.initialized and len(statistics) != scene.num_gaussians:
        raise RuntimeError(
            f"statistics length {len(statistics)} != primitive count {scene.num_gaussians}"
        )
    logger.info(
        "Primitive set mutated: %d -> %d (%d removed, %d added)",
        before,
        scene.num_gaussians,
        before - int(mutation.keep.sum()),
        mutation.num_appended,
    )


class DensityController:
    """
    Tracks visibility, screen-space gradients and projected size per primitive
    and evaluates the refinement schedule.

    Statistics accumulate on every step before `stop_split_at`. Every
    `refine_every` steps past `warmup_length` the densification gate is
    evaluated; it stays closed for a window after each opacity-reset period
    long enough for every training camera to be seen once.
    """

    def __init__(
        self,
        stop_split_at: int = 15000,
        refine_every: int = 100,
        warmup_length: int = 500,
        reset_alpha_every: int = 30,
        num_cameras: int = 1,
        policy: Optional[RefinementPolicy] = None,
    ):
        if refine_every <= 0 or reset_alpha_every <= 0:
            raise ValueError("refine_every and reset_alpha_every must be positive")
        self.stop_split_at = int(stop_split_at)
        self.refine_every = int(refine_every)
        self.warmup_length = int(warmup_length)
        self.reset_alpha_every = int(reset_alpha_every)
        self.num_cameras = int(num_cameras)
        self.policy = policy if policy is not None else NoRefinement()
        self.statistics = DensityStatistics()

    def phase(self, step: int) -> RefinePhase:
        if step >= self.stop_split_at:
            return RefinePhase.FROZEN
        if step <= self.warmup_length:
            return RefinePhase.WARMUP
        return RefinePhase.ACCUMULATING

    def is_refine_step(self, step: int) -> bool:
        return step % self.refine_every == 0 and step > self.warmup_length

    def densification_eligible(self, step: int) -> bool:
        reset_interval = self.reset_alpha_every * self.refine_every
        return (
            step < self.stop_split_at
            and step % reset_interval > self.num_cameras + self.refine_every
        )

    def update_statistics(self, result: RenderResult) -> None:
        """Accumulate one step's statistics; call after the backward pass."""
        if result.degenerate:
            return
        if result.xys is None or result.xys.grad is None:
            raise RuntimeError(
                "Screen-space gradients are missing; run backward() on the rendered "
                "image before updating density statistics"
            )
        grads = torch.linalg.vector_norm(result.xys.grad.detach(), ord=2, dim=-1)
        self.statistics.update(grads, result.radii.detach(), max(result.height, result.width))

    def after_train(
        self,
        step: int,
        result: RenderResult,
        scene: PrimitiveSet,
        optimizers: OptimizerSet,
    ) -> Optional[Mutation]:
        """
        Post-step hook: update statistics and, on refine steps, run the policy.

        Returns the committed mutation, if any.
        """
        if step < self.stop_split_at:
            self.update_statistics(result)

        if not self.is_refine_step(step):
            return None

        eligible = self.densification_eligible(step)
        logger.debug("step %d: refine gate %s", step, "open" if eligible else "closed")
        if not eligible:
            return None

        mutation = self.policy.propose(scene, self.statistics, step)
        if mutation is None:
            return None
        commit_mutation(scene, optimizers, self.statistics, mutation)
        return mutation
