"""
Projection, spherical-harmonics and rasterization stages.

The render pipeline only talks to a `RasterBackend`. `GsplatBackend` binds it
to gsplat's tile-based CUDA kernels (the 0.1-style project/rasterize API, which
gsplat 1.x still ships under `gsplat.cuda_legacy`).

Dependencies:
    - gsplat: pip install gsplat
    - torch: pip install torch
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from typing import NamedTuple, Tuple

import torch

logger = logging.getLogger(__name__)

try:
    import gsplat

    GSPLAT_AVAILABLE = True
except ImportError:
    GSPLAT_AVAILABLE = False
    logger.warning("gsplat not available. Install with: pip install gsplat")

TileBounds = Tuple[int, int, int]


class Projection(NamedTuple):
    """Screen-space footprint of every primitive for one camera."""

    xys: torch.Tensor  # (N, 2) projected centers, pixels
    depths: torch.Tensor  # (N,) camera-space depth
    radii: torch.Tensor  # (N,) projected radius in pixels, 0 = culled
    conics: torch.Tensor  # (N, 3) inverse 2D covariance (upper triangle)
    num_tiles_hit: torch.Tensor  # (N,) tiles overlapped


class RasterBackend(ABC):
    """Differentiable gaussian projection, SH color evaluation and compositing."""

    @abstractmethod
    def project(
        self,
        means: torch.Tensor,
        scales: torch.Tensor,
        glob_scale: float,
        quats: torch.Tensor,
        viewmat: torch.Tensor,
        projmat: torch.Tensor,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        height: int,
        width: int,
        tile_bounds: TileBounds,
    ) -> Projection:
        ...

    @abstractmethod
    def evaluate_sh(
        self, degree: int, viewdirs: torch.Tensor, coeffs: torch.Tensor
    ) -> torch.Tensor:
        ...

    @abstractmethod
    def rasterize(
        self,
        xys: torch.Tensor,
        depths: torch.Tensor,
        radii: torch.Tensor,
        conics: torch.Tensor,
        num_tiles_hit: torch.Tensor,
        colors: torch.Tensor,
        opacities: torch.Tensor,
        height: int,
        width: int,
        background: torch.Tensor,
    ) -> torch.Tensor:
        ...


def _legacy_api():
    """Return gsplat's (project_gaussians, rasterize_gaussians) legacy kernels."""
    try:
        from gsplat.cuda_legacy._wrapper import project_gaussians, rasterize_gaussians
    except ImportError:
        # gsplat 0.1.x exposes them at the top level
        project_gaussians = gsplat.project_gaussians
        rasterize_gaussians = gsplat.rasterize_gaussians
    return project_gaussians, rasterize_gaussians


class GsplatBackend(RasterBackend):
    """
    `RasterBackend` running on gsplat's CUDA kernels.

    Early gsplat releases take the full projection matrix and return five
    projection outputs; later ones take a tile width and also return an
    opacity compensation term. Both call forms are supported.
    """

    def __init__(self, tile_size: int = 16, clip_thresh: float = 0.01):
        if not GSPLAT_AVAILABLE:
            raise ImportError("gsplat is required. Install with: pip install gsplat")
        if tile_size < 1:
            raise ValueError(f"tile_size must be positive, got {tile_size}")

        self.tile_size = int(tile_size)
        self.clip_thresh = float(clip_thresh)
        self._project, self._rasterize = _legacy_api()
        self._project_params = set(inspect.signature(self._project).parameters)
        self._rasterize_params = set(inspect.signature(self._rasterize).parameters)

    def project(
        self,
        means,
        scales,
        glob_scale,
        quats,
        viewmat,
        projmat,
        fx,
        fy,
        cx,
        cy,
        height,
        width,
        tile_bounds,
    ) -> Projection:
        kwargs = dict(
            means3d=means,
            scales=scales,
            glob_scale=glob_scale,
            quats=quats,
            viewmat=viewmat,
            fx=fx,
            fy=fy,
            cx=cx,
            cy=cy,
            img_height=height,
            img_width=width,
            clip_thresh=self.clip_thresh,
        )
        if "projmat" in self._project_params:
            kwargs.update(projmat=projmat, tile_bounds=tile_bounds)
        else:
            kwargs.update(block_width=self.tile_size)

        out = self._project(**kwargs)
        if len(out) == 7:
            xys, depths, radii, conics, _compensation, num_tiles_hit, _cov3d = out
        else:
            xys, depths, radii, conics, num_tiles_hit, _cov3d = out
        return Projection(xys, depths, radii, conics, num_tiles_hit)

    def evaluate_sh(self, degree, viewdirs, coeffs) -> torch.Tensor:
        return gsplat.spherical_harmonics(degree, viewdirs, coeffs)

    def rasterize(
        self,
        xys,
        depths,
        radii,
        conics,
        num_tiles_hit,
        colors,
        opacities,
        height,
        width,
        background,
    ) -> torch.Tensor:
        kwargs = dict(
            xys=xys,
            depths=depths,
            radii=radii,
            conics=conics,
            num_tiles_hit=num_tiles_hit,
            colors=colors,
            opacity=opacities,
            img_height=height,
            img_width=width,
            background=background,
        )
        if "block_width" in self._rasterize_params:
            kwargs.update(block_width=self.tile_size)
        return self._rasterize(**kwargs)

    def __repr__(self) -> str:
        return f"GsplatBackend(tile_size={self.tile_size}, clip_thresh={self.clip_thresh})"
