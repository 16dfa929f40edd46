"""
Per-step rendering through a `RasterBackend`, on a coarse-to-fine resolution
schedule with progressively enabled spherical-harmonic bands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import torch

from splattrain.backends import RasterBackend
from splattrain.camera import Camera, build_view_matrix, projection_matrix
from splattrain.scene import PrimitiveSet

logger = logging.getLogger(__name__)


@dataclass
class RenderResult:
    """
    One rendered view plus the projection byproducts the density statistics
    consume after the backward pass.
    """

    image: torch.Tensor  # (H, W, 3)
    xys: Optional[torch.Tensor]  # (N, 2), grad retained; None when degenerate
    radii: torch.Tensor  # (N,), 0 = culled
    height: int
    width: int
    sh_degree: int = 0
    downscale: int = 1
    degenerate: bool = False


def downscale_factor(step: int, num_downscales: int, resolution_schedule: int) -> int:
    """Coarse-to-fine factor: halves the downscale every `resolution_schedule` steps."""
    return 2 ** max(num_downscales - step // resolution_schedule, 0)


def sh_degree_for_step(step: int, sh_degree_interval: int, max_degree: int) -> int:
    """Active SH degree; one more band every `sh_degree_interval` steps."""
    return min(step // sh_degree_interval, max_degree)


def tile_bounds(width: int, height: int, tile_size: int = 16) -> tuple[int, int, int]:
    return (
        (width + tile_size - 1) // tile_size,
        (height + tile_size - 1) // tile_size,
        1,
    )


class RenderPipeline:
    """
    Per-step renderer: resolution schedule, camera transforms, projection,
    progressive SH color and compositing through a `RasterBackend`.
    """

    def __init__(
        self,
        backend: RasterBackend,
        num_downscales: int = 2,
        resolution_schedule: int = 3000,
        sh_degree: int = 3,
        sh_degree_interval: int = 1000,
        z_near: float = 0.001,
        z_far: float = 1000.0,
        tile_size: int = 16,
    ):
        if resolution_schedule <= 0 or sh_degree_interval <= 0:
            raise ValueError("resolution_schedule and sh_degree_interval must be positive")
        self.backend = backend
        self.num_downscales = int(num_downscales)
        self.resolution_schedule = int(resolution_schedule)
        self.sh_degree = int(sh_degree)
        self.sh_degree_interval = int(sh_degree_interval)
        self.z_near = float(z_near)
        self.z_far = float(z_far)
        self.tile_size = int(tile_size)

    def render(
        self,
        camera: Camera,
        scene: PrimitiveSet,
        step: int,
        background: torch.Tensor,
    ) -> RenderResult:
        """
        Render `scene` from `camera` at training step `step`.

        The camera's resolution is scaled for the duration of the call and
        restored before returning. If every primitive is culled the
        background color fills the full-resolution image and no
        rasterization happens.
        """
        device = scene.device
        background = background.to(device=device, dtype=torch.float32)
        if background.shape != (3,):
            raise ValueError(f"background must have shape (3,), got {tuple(background.shape)}")

        factor = downscale_factor(step, self.num_downscales, self.resolution_schedule)
        full_height, full_width = camera.height, camera.width

        with camera.scaled_resolution(1.0 / factor):
            height, width = camera.height, camera.width

            cam_to_world = camera.cam_to_world.to(device)
            view_mat = build_view_matrix(cam_to_world)
            proj_mat = projection_matrix(
                self.z_near, self.z_far, camera.fov_x, camera.fov_y, device=device
            )

            colors = scene.get_sh_coeffs()

            projection = self.backend.project(
                scene.means,
                scene.get_scales(),
                1.0,
                scene.get_quats(),
                view_mat,
                proj_mat @ view_mat,
                camera.fx,
                camera.fy,
                camera.cx,
                camera.cy,
                height,
                width,
                tile_bounds(width, height, self.tile_size),
            )
            xys, depths, radii, conics, num_tiles_hit = projection

            if radii.sum().item() == 0:
                logger.debug(
                    "step %d: no primitive visible from camera %d, returning background",
                    step,
                    camera.camera_id,
                )
                return RenderResult(
                    image=background.repeat(full_height, full_width, 1),
                    xys=None,
                    radii=radii.detach(),
                    height=full_height,
                    width=full_width,
                    downscale=factor,
                    degenerate=True,
                )

            if xys.requires_grad:
                xys.retain_grad()

            view_dirs = scene.means.detach() - cam_to_world[:3, 3]
            view_dirs = view_dirs / view_dirs.norm(p=2, dim=-1, keepdim=True)
            degree = sh_degree_for_step(
                step, self.sh_degree_interval, min(self.sh_degree, scene.sh_degree)
            )
            rgbs = self.backend.evaluate_sh(degree, view_dirs, colors)
            rgbs = torch.clamp_min(rgbs + 0.5, 0.0)

            image = self.backend.rasterize(
                xys,
                depths,
                radii,
                conics,
                num_tiles_hit,
                rgbs,
                scene.get_opacities(),
                height,
                width,
                background,
            )
            image = torch.clamp_max(image, 1.0)

        return RenderResult(
            image=image,
            xys=xys,
            radii=radii.detach(),
            height=height,
            width=width,
            sh_degree=degree,
            downscale=factor,
        )
