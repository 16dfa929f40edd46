import math
from typing import Optional

import torch


def normalize_quats(quats: torch.Tensor) -> torch.Tensor:
    """
    Rescale quaternions [w, x, y, z] of shape (N, 4) to unit length.
    """
    return quats / quats.norm(p=2, dim=-1, keepdim=True)


def random_quat_tensor(n: int, generator: Optional[torch.Generator] = None) -> torch.Tensor:
    """
    Draw n uniformly distributed unit quaternions (Shoemake's method).
    """
    u = torch.rand(n, generator=generator)
    v = torch.rand(n, generator=generator)
    w = torch.rand(n, generator=generator)
    return torch.stack(
        [
            torch.sqrt(1 - u) * torch.sin(2 * math.pi * v),
            torch.sqrt(1 - u) * torch.cos(2 * math.pi * v),
            torch.sqrt(u) * torch.sin(2 * math.pi * w),
            torch.sqrt(u) * torch.cos(2 * math.pi * w),
        ],
        dim=-1,
    )