"""
Pinhole camera and camera-space math for the training renderer.

Poses are camera-to-world matrices in the OpenGL convention (camera looks
down -Z, +Y up). `build_view_matrix` flips them into the convention the
gsplat rasterizer expects (camera looks down +Z, +Y down).
"""

from __future__ import annotations

import contextlib
import math
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

import numpy as np
import torch

# Flips the y and z camera axes: OpenGL camera frame -> gsplat camera frame.
_AXIS_FLIP = (1.0, -1.0, -1.0)


def focal_to_fov(focal: float, pixels: float) -> float:
    """Full field-of-view angle (radians) covered by `pixels` at focal length `focal`."""
    return 2.0 * math.atan(pixels / (2.0 * focal))


def build_view_matrix(cam_to_world: torch.Tensor) -> torch.Tensor:
    """
    Build the world-to-camera matrix used by the projection stage.

    Args:
        cam_to_world: 4x4 camera-to-world pose (OpenGL axes).

    Returns:
        4x4 world-to-camera view matrix (gsplat axes), on the pose's device.
    """
    R = cam_to_world[:3, :3]
    T = cam_to_world[:3, 3:4]

    R = R @ torch.diag(torch.tensor(_AXIS_FLIP, dtype=R.dtype, device=R.device))

    R_inv = R.transpose(0, 1)
    T_inv = -R_inv @ T

    view_mat = torch.eye(4, dtype=R.dtype, device=R.device)
    view_mat[:3, :3] = R_inv
    view_mat[:3, 3:4] = T_inv
    return view_mat


def projection_matrix(
    z_near: float,
    z_far: float,
    fov_x: float,
    fov_y: float,
    device: torch.device | str = "cpu",
) -> torch.Tensor:
    """
    OpenGL-style symmetric perspective projection matrix.

    Requires 0 < z_near < z_far; other values are not checked.
    """
    t = z_near * math.tan(0.5 * fov_y)
    b = -t
    r = z_near * math.tan(0.5 * fov_x)
    l = -r
    return torch.tensor(
        [
            [2.0 * z_near / (r - l), 0.0, (r + l) / (r - l), 0.0],
            [0.0, 2.0 * z_near / (t - b), (t + b) / (t - b), 0.0],
            [0.0, 0.0, (z_far + z_near) / (z_far - z_near), -1.0 * z_far * z_near / (z_far - z_near)],
            [0.0, 0.0, 1.0, 0.0],
        ],
        dtype=torch.float32,
        device=device,
    )


@dataclass
class CameraIntrinsics:
    """
    Pinhole intrinsics; all units are pixels.

        K = [[fx,  0, cx],
             [ 0, fy, cy],
             [ 0,  0,  1]]
    """

    width: int
    height: int
    K: np.ndarray = field(default=None)

    def __post_init__(self):
        if self.K is None:
            self.K = np.array(
                [
                    [1.0, 0.0, self.width / 2.0],
                    [0.0, 1.0, self.height / 2.0],
                    [0.0, 0.0, 1.0],
                ]
            )
        else:
            self.K = self._validated_K(self.K)
        self.width = int(self.width)
        self.height = int(self.height)

    @staticmethod
    def _validated_K(K: np.ndarray) -> np.ndarray:
        K = np.asarray(K, dtype=float)
        if K.shape != (3, 3):
            raise ValueError(f"Intrinsic matrix K must be 3x3, got {K.shape}")
        if not np.isclose(K[2, 2], 1.0):
            raise ValueError(f"K[2,2] must be 1, got {K[2, 2]}")
        return K.copy()

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    @classmethod
    def from_fov(cls, width: int, height: int, fov_deg: float = 60.0) -> "CameraIntrinsics":
        """Square-pixel intrinsics from a vertical field-of-view, principal point centered."""
        fy = height / (2.0 * np.tan(np.deg2rad(fov_deg) / 2.0))
        K = np.array(
            [
                [fy, 0.0, width / 2.0],
                [0.0, fy, height / 2.0],
                [0.0, 0.0, 1.0],
            ]
        )
        return cls(width=width, height=height, K=K)

    def copy(self) -> "CameraIntrinsics":
        return CameraIntrinsics(width=self.width, height=self.height, K=self.K.copy())


class Camera:
    """
    A training view: camera-to-world pose plus intrinsics.

    The output resolution can be scaled in place for coarse-to-fine rendering;
    use `scaled_resolution` so the pre-call intrinsics are always restored.
    """

    def __init__(
        self,
        intrinsics: CameraIntrinsics,
        cam_to_world: Optional[torch.Tensor] = None,
        camera_id: int = 0,
    ):
        self.camera_id = int(camera_id)
        self.intrinsics = intrinsics
        if cam_to_world is None:
            cam_to_world = torch.eye(4)
        cam_to_world = torch.as_tensor(cam_to_world, dtype=torch.float32)
        if cam_to_world.shape != (4, 4):
            raise ValueError(f"cam_to_world must be 4x4, got {tuple(cam_to_world.shape)}")
        self.cam_to_world = cam_to_world

    @classmethod
    def from_K(
        cls,
        K: np.ndarray,
        width: int,
        height: int,
        cam_to_world: Optional[torch.Tensor] = None,
        camera_id: int = 0,
    ) -> "Camera":
        intrinsics = CameraIntrinsics(width=width, height=height, K=K)
        return cls(intrinsics, cam_to_world=cam_to_world, camera_id=camera_id)

    @classmethod
    def look_at(
        cls,
        position: Sequence[float],
        target: Sequence[float] = (0.0, 0.0, 0.0),
        up: Sequence[float] = (0.0, 1.0, 0.0),
        width: int = 640,
        height: int = 480,
        fov_deg: float = 60.0,
        camera_id: int = 0,
    ) -> "Camera":
        """
        Camera at `position` looking at `target` with the given vertical FOV.
        """
        position = np.asarray(position, dtype=np.float64)
        forward = np.asarray(target, dtype=np.float64) - position
        norm = np.linalg.norm(forward)
        if norm < 1e-12:
            raise ValueError("position and target must differ")
        z_axis = -forward / norm
        x_axis = np.cross(np.asarray(up, dtype=np.float64), z_axis)
        if np.linalg.norm(x_axis) < 1e-12:
            raise ValueError("up vector must not be parallel to the viewing direction")
        x_axis /= np.linalg.norm(x_axis)
        y_axis = np.cross(z_axis, x_axis)

        c2w = np.eye(4)
        c2w[:3, 0] = x_axis
        c2w[:3, 1] = y_axis
        c2w[:3, 2] = z_axis
        c2w[:3, 3] = position

        intrinsics = CameraIntrinsics.from_fov(width=width, height=height, fov_deg=fov_deg)
        return cls(intrinsics, cam_to_world=torch.from_numpy(c2w).float(), camera_id=camera_id)

    @property
    def width(self) -> int:
        return self.intrinsics.width

    @property
    def height(self) -> int:
        return self.intrinsics.height

    @property
    def fx(self) -> float:
        return self.intrinsics.fx

    @property
    def fy(self) -> float:
        return self.intrinsics.fy

    @property
    def cx(self) -> float:
        return self.intrinsics.cx

    @property
    def cy(self) -> float:
        return self.intrinsics.cy

    @property
    def position(self) -> torch.Tensor:
        """Camera center in world coordinates, shape (3,)."""
        return self.cam_to_world[:3, 3]

    @property
    def fov_x(self) -> float:
        return focal_to_fov(self.fx, self.width)

    @property
    def fov_y(self) -> float:
        return focal_to_fov(self.fy, self.height)

    def scale_output_resolution(self, factor: float) -> None:
        """Scale focal lengths, principal point and image size by `factor`."""
        K = self.intrinsics.K.copy()
        K[0, 0] *= factor
        K[1, 1] *= factor
        K[0, 2] *= factor
        K[1, 2] *= factor
        self.intrinsics = CameraIntrinsics(
            width=int(self.intrinsics.width * factor),
            height=int(self.intrinsics.height * factor),
            K=K,
        )

    @contextlib.contextmanager
    def scaled_resolution(self, factor: float) -> Iterator["Camera"]:
        """
        Scale the output resolution for the duration of the block.

        The exact pre-call intrinsics are restored on exit, including when the
        block returns early or raises.
        """
        saved = self.intrinsics.copy()
        self.scale_output_resolution(factor)
        try:
            yield self
        finally:
            self.intrinsics = saved

    def __repr__(self) -> str:
        pos = self.position.tolist()
        return (
            f"Camera(id={self.camera_id}, "
            f"position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}], "
            f"resolution={self.width}x{self.height}, "
            f"fx={self.fx:.1f}, fy={self.fy:.1f}, cx={self.cx:.1f}, cy={self.cy:.1f})"
        )
