"""Training-loop driver: one optimization step and a multi-view run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn.functional as F

from splattrain.backends import GsplatBackend, RasterBackend
from splattrain.camera import Camera
from splattrain.config import TrainConfig
from splattrain.density import DensityController, RefinementPolicy
from splattrain.losses import photometric_loss, psnr
from splattrain.optim import OptimizerSet
from splattrain.render_pipeline import RenderPipeline, RenderResult
from splattrain.scene import Mutation, PrimitiveSet

logger = logging.getLogger(__name__)

View = Tuple[Camera, torch.Tensor]


@dataclass
class StepOutput:
    step: int
    loss: float
    psnr: float
    num_gaussians: int
    render: RenderResult
    mutation: Optional[Mutation] = None


def resize_image(image: torch.Tensor, height: int, width: int) -> torch.Tensor:
    """Area-resample an (H, W, C) image to (height, width, C)."""
    if image.shape[0] == height and image.shape[1] == width:
        return image
    resized = F.interpolate(image.permute(2, 0, 1)[None], size=(height, width), mode="area")
    return resized[0].permute(1, 2, 0)


class Trainer:
    """
    Runs training iterations: zero grads, render, photometric loss, backward,
    optimizer step, then density statistics for the step.
    """

    def __init__(
        self,
        scene: PrimitiveSet,
        config: Optional[TrainConfig] = None,
        backend: Optional[RasterBackend] = None,
        num_cameras: int = 1,
        policy: Optional[RefinementPolicy] = None,
    ):
        self.config = (config or TrainConfig()).validate()
        self.scene = scene
        if backend is None:
            backend = GsplatBackend(tile_size=self.config.tile_size)

        cfg = self.config
        self.pipeline = RenderPipeline(
            backend,
            num_downscales=cfg.num_downscales,
            resolution_schedule=cfg.resolution_schedule,
            sh_degree=cfg.sh_degree,
            sh_degree_interval=cfg.sh_degree_interval,
            z_near=cfg.z_near,
            z_far=cfg.z_far,
            tile_size=cfg.tile_size,
        )
        self.optimizers = OptimizerSet(
            scene,
            learning_rates=cfg.learning_rates,
            means_lr_final=cfg.means_lr_final,
            max_steps=cfg.iterations,
        )
        self.density = DensityController(
            stop_split_at=cfg.stop_split_at,
            refine_every=cfg.refine_every,
            warmup_length=cfg.warmup_length,
            reset_alpha_every=cfg.reset_alpha_every,
            num_cameras=num_cameras,
            policy=policy,
        )
        self.background = torch.tensor(cfg.background, dtype=torch.float32, device=scene.device)

    def train_step(self, camera: Camera, gt_image: torch.Tensor, step: int) -> StepOutput:
        """One optimization iteration against a ground-truth (H, W, 3) image."""
        self.optimizers.update_learning_rate(step)
        self.optimizers.zero_grad()

        result = self.pipeline.render(camera, self.scene, step, self.background)
        gt = resize_image(gt_image.to(self.scene.device), result.height, result.width)
        loss = photometric_loss(result.image, gt, self.config.ssim_weight)

        if loss.requires_grad:
            loss.backward()
        else:
            logger.debug("step %d: nothing visible from camera %d, no gradients", step, camera.camera_id)
        self.optimizers.step()

        mutation = self.density.after_train(step, result, self.scene, self.optimizers)

        with torch.no_grad():
            step_psnr = float(psnr(result.image, gt))
        return StepOutput(
            step=step,
            loss=float(loss.detach()),
            psnr=step_psnr,
            num_gaussians=self.scene.num_gaussians,
            render=result,
            mutation=mutation,
        )

    def fit(
        self,
        views: Sequence[View],
        iterations: Optional[int] = None,
        start_step: int = 1,
    ) -> List[StepOutput]:
        """
        Train over `views`, visiting them in a fresh random order every epoch.

        Returns the outputs of the logged steps (every `log_every` and the last).
        """
        if not views:
            raise ValueError("At least one (camera, image) view is required")
        iterations = self.config.iterations if iterations is None else int(iterations)

        generator = torch.Generator()
        if self.config.seed is not None:
            generator.manual_seed(self.config.seed)

        history: List[StepOutput] = []
        order: List[int] = []
        for step in range(start_step, iterations + 1):
            if not order:
                order = torch.randperm(len(views), generator=generator).tolist()
            camera, image = views[order.pop()]

            out = self.train_step(camera, image, step)
            if step % self.config.log_every == 0 or step == iterations:
                logger.info(
                    "step %d/%d loss=%.5f psnr=%.2f gaussians=%d",
                    step,
                    iterations,
                    out.loss,
                    out.psnr,
                    out.num_gaussians,
                )
                history.append(out)
        return history
