"""
Photometric losses and image metrics. Images are (H, W, 3) tensors in [0, 1].
"""

import torch
import torch.nn.functional as F


def l1_loss(rendered: torch.Tensor, gt: torch.Tensor) -> torch.Tensor:
    return torch.abs(gt - rendered).mean()


def psnr(rendered: torch.Tensor, gt: torch.Tensor) -> torch.Tensor:
    """Peak signal-to-noise ratio in dB for a peak value of 1."""
    mse = (rendered - gt).pow(2).mean()
    return 10.0 * torch.log10(1.0 / mse.clamp_min(1e-10))


def _gaussian_window(window_size: int, sigma: float, channels: int) -> torch.Tensor:
    coords = torch.arange(window_size, dtype=torch.float32) - window_size // 2
    gauss = torch.exp(-(coords**2) / (2 * sigma**2))
    gauss = gauss / gauss.sum()
    window = gauss[:, None] @ gauss[None, :]
    return window.expand(channels, 1, window_size, window_size).contiguous()


def ssim(
    rendered: torch.Tensor,
    gt: torch.Tensor,
    window_size: int = 11,
    sigma: float = 1.5,
) -> torch.Tensor:
    """Mean structural similarity with a gaussian window."""
    if rendered.shape != gt.shape:
        raise ValueError(f"Shape mismatch: {tuple(rendered.shape)} vs {tuple(gt.shape)}")

    # (H, W, C) -> (1, C, H, W)
    img1 = rendered.permute(2, 0, 1).unsqueeze(0)
    img2 = gt.permute(2, 0, 1).unsqueeze(0)
    channels = img1.shape[1]
    window = _gaussian_window(window_size, sigma, channels).to(img1)
    pad = window_size // 2

    mu1 = F.conv2d(img1, window, padding=pad, groups=channels)
    mu2 = F.conv2d(img2, window, padding=pad, groups=channels)
    mu1_sq, mu2_sq, mu1_mu2 = mu1.pow(2), mu2.pow(2), mu1 * mu2

    sigma1_sq = F.conv2d(img1 * img1, window, padding=pad, groups=channels) - mu1_sq
    sigma2_sq = F.conv2d(img2 * img2, window, padding=pad, groups=channels) - mu2_sq
    sigma12 = F.conv2d(img1 * img2, window, padding=pad, groups=channels) - mu1_mu2

    C1 = 0.01**2
    C2 = 0.03**2
    ssim_map = ((2 * mu1_mu2 + C1) * (2 * sigma12 + C2)) / (
        (mu1_sq + mu2_sq + C1) * (sigma1_sq + sigma2_sq + C2)
    )
    return ssim_map.mean()


def photometric_loss(
    rendered: torch.Tensor, gt: torch.Tensor, ssim_weight: float = 0.2
) -> torch.Tensor:
    """(1 - w) * L1 + w * (1 - SSIM)."""
    if not 0.0 <= ssim_weight <= 1.0:
        raise ValueError(f"ssim_weight must be in [0, 1], got {ssim_weight}")
    loss = (1.0 - ssim_weight) * l1_loss(rendered, gt)
    if ssim_weight > 0.0:
        loss = loss + ssim_weight * (1.0 - ssim(rendered, gt))
    return loss
