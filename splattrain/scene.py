"""
Trainable gaussian primitive set.

Each primitive carries a position, a log-scale, a quaternion, spherical
harmonic color coefficients (DC term kept apart from the higher degrees) and
an opacity logit. All six tensors are optimized and always share the same
leading dimension N.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import torch
from scipy.spatial import cKDTree

from splattrain.rotations import normalize_quats, random_quat_tensor

logger = logging.getLogger(__name__)

PARAM_GROUPS = ("means", "scales", "quats", "features_dc", "features_rest", "opacities")

# Zeroth-order real spherical harmonic basis constant.
SH_C0 = 0.28209479177387814


def num_sh_bases(degree: int) -> int:
    return (degree + 1) ** 2


def rgb_to_sh(rgb: torch.Tensor) -> torch.Tensor:
    return (rgb - 0.5) / SH_C0


def inverse_sigmoid(x: torch.Tensor) -> torch.Tensor:
    return torch.log(x / (1 - x))


@dataclass
class PointCloud:
    """Seed points for initialization."""

    points: np.ndarray  # (N, 3)
    colors: np.ndarray = field(default=None)  # (N, 3) RGB in [0, 1]

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float32)
        n = len(self.points)
        assert n > 0, "At least one point is required"
        assert self.points.shape == (n, 3), f"points shape {self.points.shape} != ({n}, 3)"
        if self.colors is None:
            self.colors = np.full((n, 3), 0.5, dtype=np.float32)
        self.colors = np.asarray(self.colors, dtype=np.float32)
        assert self.colors.shape == (n, 3), f"colors shape {self.colors.shape} != ({n}, 3)"

    def __len__(self) -> int:
        return len(self.points)


def load_point_cloud(ply_path: str | Path) -> PointCloud:
    """
    Read seed points (x/y/z and optional red/green/blue) from a PLY file.
    """
    from plyfile import PlyData

    ply_path = Path(ply_path)
    if not ply_path.exists():
        raise FileNotFoundError(f"PLY file not found: {ply_path}")

    ply = PlyData.read(str(ply_path))
    if "vertex" not in ply:
        raise ValueError(f'PLY file has no "vertex" element: {ply_path}')

    vertex = ply["vertex"].data
    names = set(vertex.dtype.names or [])
    if len(vertex) == 0:
        raise ValueError(f"PLY file contains no vertices: {ply_path}")
    if not {"x", "y", "z"} <= names:
        raise ValueError(f"PLY is missing x/y/z fields: {ply_path}")

    points = np.stack([vertex["x"], vertex["y"], vertex["z"]], axis=1).astype(np.float32)

    colors = None
    if {"red", "green", "blue"} <= names:
        colors = np.stack([vertex["red"], vertex["green"], vertex["blue"]], axis=1).astype(
            np.float32
        )
        if np.max(colors) > 1.0:
            colors = colors / 255.0
        colors = np.clip(colors, 0.0, 1.0)

    logger.info("Loaded %d seed points from %s", len(points), ply_path)
    return PointCloud(points=points, colors=colors)


def _mean_neighbor_distance(points: np.ndarray, k: int = 3) -> np.ndarray:
    """Mean distance from each point to its k nearest neighbours."""
    n = len(points)
    if n < 2:
        return np.full(n, 0.01, dtype=np.float32)
    k = min(k, n - 1)
    distances, _ = cKDTree(points).query(points, k=k + 1)
    # column 0 is the point itself
    return distances[:, 1:].mean(axis=1).astype(np.float32)


@dataclass
class Mutation:
    """
    A structural change to the primitive set.

    `keep` selects the surviving rows of the current set; `append` holds new
    rows for every parameter group, concatenated after the survivors.
    """

    keep: torch.Tensor  # (N,) bool
    append: Dict[str, torch.Tensor] = field(default_factory=dict)

    @property
    def num_appended(self) -> int:
        if not self.append:
            return 0
        return int(next(iter(self.append.values())).shape[0])


class PrimitiveSet:
    """
    The scene: six `torch.nn.Parameter` tensors describing N gaussians.

    Raw parameters are stored unconstrained; use the `get_*` accessors for the
    activated values (exp scales, unit quaternions, sigmoid opacities).
    """

    def __init__(
        self,
        means: torch.Tensor,
        scales: torch.Tensor,
        quats: torch.Tensor,
        features_dc: torch.Tensor,
        features_rest: torch.Tensor,
        opacities: torch.Tensor,
    ):
        self.means = torch.nn.Parameter(means.detach().float().contiguous())
        self.scales = torch.nn.Parameter(scales.detach().float().contiguous())
        self.quats = torch.nn.Parameter(quats.detach().float().contiguous())
        self.features_dc = torch.nn.Parameter(features_dc.detach().float().contiguous())
        self.features_rest = torch.nn.Parameter(features_rest.detach().float().contiguous())
        self.opacities = torch.nn.Parameter(opacities.detach().float().contiguous())
        self.validate()

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_points(
        cls,
        cloud: PointCloud,
        sh_degree: int = 3,
        init_opacity: float = 0.1,
        device: str | torch.device = "cpu",
        generator: Optional[torch.Generator] = None,
    ) -> "PrimitiveSet":
        """
        Seed one gaussian per point.

        Scales start isotropic at the mean distance to the three nearest
        neighbours, rotations are uniformly random, colors come from the
        point colors (DC term only) and every opacity starts at `init_opacity`.
        """
        if not 0.0 < init_opacity < 1.0:
            raise ValueError(f"init_opacity must be in (0, 1), got {init_opacity}")

        n = len(cloud)
        dist = np.maximum(_mean_neighbor_distance(cloud.points), 1e-7)

        means = torch.from_numpy(cloud.points)
        scales = torch.log(torch.from_numpy(dist)).unsqueeze(-1).repeat(1, 3)
        quats = random_quat_tensor(n, generator=generator)
        features_dc = rgb_to_sh(torch.from_numpy(cloud.colors))
        features_rest = torch.zeros(n, num_sh_bases(sh_degree) - 1, 3)
        opacities = inverse_sigmoid(torch.full((n, 1), float(init_opacity)))

        scene = cls(means, scales, quats, features_dc, features_rest, opacities)
        logger.debug("Initialized %d primitives (sh_degree=%d)", n, sh_degree)
        return scene.to(device)

    @classmethod
    def random(
        cls,
        num_gaussians: int = 100_000,
        extent: float = 1.0,
        sh_degree: int = 3,
        init_opacity: float = 0.1,
        seed: Optional[int] = 42,
        device: str | torch.device = "cpu",
    ) -> "PrimitiveSet":
        """Gaussians with uniform random positions in [-extent, extent]^3 and random colors."""
        if num_gaussians <= 0:
            raise ValueError("num_gaussians must be positive")

        generator = torch.Generator()
        if seed is not None:
            generator.manual_seed(seed)
        points = (torch.rand(num_gaussians, 3, generator=generator) * 2 - 1) * extent
        colors = torch.rand(num_gaussians, 3, generator=generator)
        cloud = PointCloud(points=points.numpy(), colors=colors.numpy())
        return cls.from_points(
            cloud,
            sh_degree=sh_degree,
            init_opacity=init_opacity,
            device=device,
            generator=generator,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def num_gaussians(self) -> int:
        return self.means.shape[0]

    @property
    def sh_degree(self) -> int:
        """Highest SH degree the stored coefficients can represent."""
        return int(round(np.sqrt(self.features_rest.shape[1] + 1))) - 1

    @property
    def device(self) -> torch.device:
        return self.means.device

    def params(self) -> "OrderedDict[str, torch.nn.Parameter]":
        """Parameter groups in a fixed order."""
        return OrderedDict((name, getattr(self, name)) for name in PARAM_GROUPS)

    def get_scales(self) -> torch.Tensor:
        return torch.exp(self.scales)

    def get_quats(self) -> torch.Tensor:
        return normalize_quats(self.quats)

    def get_opacities(self) -> torch.Tensor:
        return torch.sigmoid(self.opacities)

    def get_sh_coeffs(self) -> torch.Tensor:
        """(N, K, 3) SH coefficients, DC term first."""
        return torch.cat([self.features_dc[:, None, :], self.features_rest], dim=1)

    # ------------------------------------------------------------------
    # Invariants and mutation
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Raise ValueError unless all groups have matching, well-formed shapes."""
        n = self.means.shape[0]
        expected = {
            "means": (n, 3),
            "scales": (n, 3),
            "quats": (n, 4),
            "features_dc": (n, 3),
            "opacities": (n, 1),
        }
        for name, shape in expected.items():
            actual = tuple(getattr(self, name).shape)
            if actual != shape:
                raise ValueError(f"{name} shape {actual} != {shape}")
        rest = self.features_rest
        if rest.ndim != 3 or rest.shape[0] != n or rest.shape[2] != 3:
            raise ValueError(f"features_rest shape {tuple(rest.shape)} != ({n}, K-1, 3)")

    def apply_mutation(self, mutation: Mutation) -> None:
        """
        Replace every parameter group with its kept rows plus the appended rows.

        New `Parameter` objects are created; optimizers holding the old ones
        must be remapped (see `OptimizerSet.remap`).
        """
        keep = mutation.keep.to(device=self.device, dtype=torch.bool)
        if keep.shape != (self.num_gaussians,):
            raise ValueError(
                f"keep mask shape {tuple(keep.shape)} != ({self.num_gaussians},)"
            )
        if mutation.append and set(mutation.append) != set(PARAM_GROUPS):
            missing = sorted(set(PARAM_GROUPS) - set(mutation.append))
            raise ValueError(f"appended rows missing groups: {missing}")

        # build every group first; nothing is assigned unless all are well-formed
        num_appended = mutation.num_appended
        new_rows: Dict[str, torch.Tensor] = {}
        with torch.no_grad():
            for name in PARAM_GROUPS:
                rows = getattr(self, name)[keep]
                if mutation.append:
                    extra = mutation.append[name].to(device=self.device, dtype=rows.dtype)
                    expected = (num_appended,) + tuple(rows.shape[1:])
                    if tuple(extra.shape) != expected:
                        raise ValueError(
                            f"appended {name} shape {tuple(extra.shape)} != {expected}"
                        )
                    rows = torch.cat([rows, extra], dim=0)
                new_rows[name] = rows.contiguous()

        for name, rows in new_rows.items():
            setattr(self, name, torch.nn.Parameter(rows))
        self.validate()

    def to(self, device: str | torch.device) -> "PrimitiveSet":
        """Move all parameters to `device` (new Parameters; build optimizers afterwards)."""
        for name in PARAM_GROUPS:
            setattr(self, name, torch.nn.Parameter(getattr(self, name).detach().to(device)))
        return self

    def get_info(self) -> Dict[str, object]:
        with torch.no_grad():
            return {
                "num_gaussians": self.num_gaussians,
                "device": str(self.device),
                "sh_degree": self.sh_degree,
                "means_range": {
                    "min": self.means.min(dim=0)[0].cpu().numpy().tolist(),
                    "max": self.means.max(dim=0)[0].cpu().numpy().tolist(),
                },
                "mean_opacity": float(self.get_opacities().mean()),
            }

    def __repr__(self) -> str:
        return (
            f"PrimitiveSet(\n"
            f"  num_gaussians={self.num_gaussians}\n"
            f"  device={self.device}\n"
            f"  sh_degree={self.sh_degree}\n"
            f")"
        )
