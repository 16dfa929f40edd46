from splattrain.backends import GsplatBackend, Projection, RasterBackend
from splattrain.camera import (
    Camera,
    CameraIntrinsics,
    build_view_matrix,
    focal_to_fov,
    projection_matrix,
)
from splattrain.config import TrainConfig
from splattrain.density import (
    DensityController,
    DensityStatistics,
    NoRefinement,
    RefinementPolicy,
    RefinePhase,
    commit_mutation,
)
from splattrain.losses import l1_loss, photometric_loss, psnr, ssim
from splattrain.optim import OptimizerSet
from splattrain.render_pipeline import RenderPipeline, RenderResult
from splattrain.scene import Mutation, PointCloud, PrimitiveSet, load_point_cloud
from splattrain.trainer import StepOutput, Trainer

__all__ = [
    "Camera",
    "CameraIntrinsics",
    "build_view_matrix",
    "projection_matrix",
    "focal_to_fov",
    "RasterBackend",
    "GsplatBackend",
    "Projection",
    "PrimitiveSet",
    "PointCloud",
    "Mutation",
    "load_point_cloud",
    "RenderPipeline",
    "RenderResult",
    "OptimizerSet",
    "DensityController",
    "DensityStatistics",
    "RefinementPolicy",
    "NoRefinement",
    "RefinePhase",
    "commit_mutation",
    "l1_loss",
    "psnr",
    "ssim",
    "photometric_loss",
    "TrainConfig",
    "Trainer",
    "StepOutput",
]
