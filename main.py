"""
Fit a gaussian scene to a single target photograph and write a preview render.

    python main.py --target data/view.png --ply data/points.ply \
        --camera-position 0 0 4 --iterations 2000 --output logs/preview.png
"""

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np
import torch

from splattrain.camera import Camera
from splattrain.config import add_arguments, from_args
from splattrain.scene import PrimitiveSet, load_point_cloud
from splattrain.trainer import Trainer

logger = logging.getLogger("splattrain")


def read_image(path: Path) -> torch.Tensor:
    """Load an image file as an (H, W, 3) float RGB tensor in [0, 1]."""
    bgr = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if bgr is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    return torch.from_numpy(rgb.astype(np.float32) / 255.0)


def write_image(path: Path, image: torch.Tensor) -> None:
    rgb = (image.detach().clamp(0.0, 1.0).cpu().numpy() * 255.0).round().astype(np.uint8)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)):
        raise OSError(f"Could not write image: {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--target", type=Path, required=True, help="Target RGB image.")
    parser.add_argument(
        "--ply",
        type=Path,
        default=None,
        help="Seed point cloud (PLY with x/y/z, optional red/green/blue).",
    )
    parser.add_argument(
        "--num-random",
        type=int,
        default=10000,
        help="Number of random gaussians when --ply is not given.",
    )
    parser.add_argument(
        "--extent", type=float, default=1.0, help="Half-size of the random init cube."
    )
    parser.add_argument(
        "--camera-position",
        type=float,
        nargs=3,
        default=[0.0, 0.0, 4.0],
        metavar=("X", "Y", "Z"),
    )
    parser.add_argument(
        "--look-at", type=float, nargs=3, default=[0.0, 0.0, 0.0], metavar=("X", "Y", "Z")
    )
    parser.add_argument("--fov-deg", type=float, default=60.0, help="Vertical field of view.")
    parser.add_argument(
        "--output", type=Path, default=Path("logs/preview.png"), help="Where to write the render."
    )
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"]
    )
    add_arguments(parser)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = from_args(args)
    if config.device.startswith("cuda") and not torch.cuda.is_available():
        logger.warning("CUDA is not available; gsplat kernels will likely fail on CPU")

    target = read_image(args.target)
    height, width = target.shape[:2]
    camera = Camera.look_at(
        args.camera_position, args.look_at, width=width, height=height, fov_deg=args.fov_deg
    )

    if args.ply is not None:
        scene = PrimitiveSet.from_points(
            load_point_cloud(args.ply), sh_degree=config.sh_degree, device=config.device
        )
    else:
        scene = PrimitiveSet.random(
            args.num_random,
            extent=args.extent,
            sh_degree=config.sh_degree,
            seed=config.seed,
            device=config.device,
        )
    logger.info("Training %d gaussians against %s (%dx%d)", scene.num_gaussians, args.target, width, height)

    trainer = Trainer(scene, config, num_cameras=1)
    trainer.fit([(camera, target)])

    # full resolution, all SH bands
    final_step = max(config.iterations, config.num_downscales * config.resolution_schedule)
    with torch.no_grad():
        result = trainer.pipeline.render(camera, scene, final_step, trainer.background)
    write_image(args.output, result.image)
    logger.info("Wrote %s", args.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
