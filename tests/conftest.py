"""
Shared fixtures.

gsplat's kernels need CUDA, so tests render through `SoftSplatBackend`, a
dense pure-torch splatter that honours the same call contracts on tiny images.
"""

import numpy as np
import pytest
import torch

from splattrain.backends import Projection, RasterBackend
from splattrain.camera import Camera
from splattrain.scene import SH_C0, PointCloud, PrimitiveSet

SH_C1 = 0.4886025119029199


class SoftSplatBackend(RasterBackend):
    """Isotropic gaussians, depth-sorted alpha compositing over every pixel."""

    def __init__(self, color_gain: float = 1.0):
        self.color_gain = color_gain
        self.sh_degrees = []
        self.last_quats = None
        self.last_tile_bounds = None
        self.rasterize_calls = 0

    def project(
        self, means, scales, glob_scale, quats, viewmat, projmat,
        fx, fy, cx, cy, height, width, tile_bounds,
    ):
        self.last_quats = quats.detach().clone()
        self.last_tile_bounds = tile_bounds

        p_cam = means @ viewmat[:3, :3].T + viewmat[:3, 3]
        z = p_cam[:, 2]
        in_front = z > 0.01
        z_safe = torch.where(in_front, z, torch.ones_like(z))
        xys = torch.stack([fx * p_cam[:, 0] / z_safe + cx, fy * p_cam[:, 1] / z_safe + cy], -1)

        sigma = glob_scale * fx * scales.max(dim=-1).values / z_safe + 0.3
        radii = torch.ceil(3.0 * sigma).detach()
        on_screen = (
            (xys[:, 0].detach() + radii > 0)
            & (xys[:, 0].detach() - radii < width)
            & (xys[:, 1].detach() + radii > 0)
            & (xys[:, 1].detach() - radii < height)
        )
        visible = in_front & on_screen
        radii = torch.where(visible, radii, torch.zeros_like(radii)).int()

        inv_var = 1.0 / sigma**2
        conics = torch.stack([inv_var, torch.zeros_like(inv_var), inv_var], -1)
        return Projection(xys, z, radii, conics, visible.int())

    def evaluate_sh(self, degree, viewdirs, coeffs):
        self.sh_degrees.append(degree)
        colors = SH_C0 * coeffs[:, 0]
        if degree >= 1:
            x, y, z = viewdirs[:, :1], viewdirs[:, 1:2], viewdirs[:, 2:3]
            colors = colors - SH_C1 * y * coeffs[:, 1] + SH_C1 * z * coeffs[:, 2] - SH_C1 * x * coeffs[:, 3]
        return colors * self.color_gain

    def rasterize(
        self, xys, depths, radii, conics, num_tiles_hit, colors, opacities,
        height, width, background,
    ):
        self.rasterize_calls += 1
        order = torch.argsort(depths.detach())
        xys, radii, conics = xys[order], radii[order], conics[order]
        colors, opacities = colors[order], opacities[order]

        py, px = torch.meshgrid(
            torch.arange(height, dtype=torch.float32) + 0.5,
            torch.arange(width, dtype=torch.float32) + 0.5,
            indexing="ij",
        )
        dx = px[None] - xys[:, 0, None, None]
        dy = py[None] - xys[:, 1, None, None]
        power = -0.5 * (conics[:, 0, None, None] * dx**2 + conics[:, 2, None, None] * dy**2)
        alpha = (opacities.reshape(-1, 1, 1) * torch.exp(power)).clamp_max(0.99)
        alpha = alpha * (radii > 0).float()[:, None, None]

        transmittance = torch.cumprod(1.0 - alpha, dim=0)
        before = torch.cat([torch.ones_like(transmittance[:1]), transmittance[:-1]], dim=0)
        weights = before * alpha
        image = torch.einsum("nhw,nc->hwc", weights, colors)
        return image + transmittance[-1][..., None] * background


@pytest.fixture
def backend():
    return SoftSplatBackend()


@pytest.fixture
def camera():
    """16x16 view from +Z looking at the origin."""
    return Camera.look_at((0.0, 0.0, 4.0), (0.0, 0.0, 0.0), width=16, height=16, fov_deg=60.0)


@pytest.fixture
def scene():
    torch.manual_seed(0)
    return PrimitiveSet.random(num_gaussians=100, extent=0.5, sh_degree=1, init_opacity=0.5, seed=0)


@pytest.fixture
def background():
    return torch.tensor([0.1, 0.2, 0.3])


@pytest.fixture
def make_scene():
    """Factory: one primitive per point, DC color only."""

    def _make(points, sh_degree=0, init_opacity=0.5):
        cloud = PointCloud(points=np.asarray(points, dtype=np.float32))
        return PrimitiveSet.from_points(cloud, sh_degree=sh_degree, init_opacity=init_opacity)

    return _make


@pytest.fixture
def make_backend():
    return SoftSplatBackend
