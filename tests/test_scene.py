"""
Tests for the primitive set: initialization, invariants, structural mutation
and PLY loading.
"""

import numpy as np
import pytest
import torch
from plyfile import PlyData, PlyElement

from splattrain.scene import (
    PARAM_GROUPS,
    SH_C0,
    Mutation,
    PointCloud,
    PrimitiveSet,
    load_point_cloud,
    num_sh_bases,
    rgb_to_sh,
)


@pytest.fixture
def grid_points():
    """3x3x3 lattice with unit spacing."""
    axis = np.arange(3, dtype=np.float32)
    return np.stack(np.meshgrid(axis, axis, axis, indexing="ij"), -1).reshape(-1, 3)


def _write_ply(path, points, colors=None):
    fields = [("x", "f4"), ("y", "f4"), ("z", "f4")]
    if colors is not None:
        fields += [("red", "u1"), ("green", "u1"), ("blue", "u1")]
    vertex = np.empty(len(points), dtype=fields)
    vertex["x"], vertex["y"], vertex["z"] = points[:, 0], points[:, 1], points[:, 2]
    if colors is not None:
        vertex["red"], vertex["green"], vertex["blue"] = colors[:, 0], colors[:, 1], colors[:, 2]
    PlyData([PlyElement.describe(vertex, "vertex")]).write(str(path))


# ===========================================================================
# Helpers
# ===========================================================================

def test_num_sh_bases():
    assert [num_sh_bases(d) for d in range(4)] == [1, 4, 9, 16]


def test_rgb_to_sh_gray_is_zero():
    torch.testing.assert_close(rgb_to_sh(torch.full((3,), 0.5)), torch.zeros(3))
    # DC term maps back to the color through SH_C0 * c + 0.5
    c = rgb_to_sh(torch.tensor([0.9]))
    assert (SH_C0 * c + 0.5).item() == pytest.approx(0.9, abs=1e-6)


def test_point_cloud_default_colors():
    cloud = PointCloud(points=np.zeros((4, 3)))
    assert cloud.colors.shape == (4, 3)
    assert np.all(cloud.colors == 0.5)


def test_point_cloud_rejects_bad_shape():
    with pytest.raises(AssertionError):
        PointCloud(points=np.zeros((4, 2)))


# ===========================================================================
# Initialization
# ===========================================================================

class TestFromPoints:
    def test_shapes(self, grid_points):
        scene = PrimitiveSet.from_points(PointCloud(grid_points), sh_degree=3)
        n = len(grid_points)
        assert scene.num_gaussians == n
        assert scene.means.shape == (n, 3)
        assert scene.scales.shape == (n, 3)
        assert scene.quats.shape == (n, 4)
        assert scene.features_dc.shape == (n, 3)
        assert scene.features_rest.shape == (n, 15, 3)
        assert scene.opacities.shape == (n, 1)
        assert scene.sh_degree == 3

    def test_scale_is_log_mean_neighbor_distance(self, grid_points):
        # every lattice point has at least three neighbours at distance 1
        scene = PrimitiveSet.from_points(PointCloud(grid_points))
        torch.testing.assert_close(scene.scales, torch.zeros_like(scene.scales), atol=1e-6, rtol=0)
        torch.testing.assert_close(scene.get_scales(), torch.ones_like(scene.scales))

    def test_initial_opacity(self, grid_points):
        scene = PrimitiveSet.from_points(PointCloud(grid_points), init_opacity=0.1)
        torch.testing.assert_close(
            scene.get_opacities(), torch.full((len(grid_points), 1), 0.1), atol=1e-6, rtol=0
        )

    def test_colors_go_to_dc_only(self, grid_points):
        colors = np.random.default_rng(0).random((len(grid_points), 3)).astype(np.float32)
        scene = PrimitiveSet.from_points(PointCloud(grid_points, colors), sh_degree=2)
        torch.testing.assert_close(scene.features_dc, rgb_to_sh(torch.from_numpy(colors)))
        assert torch.count_nonzero(scene.features_rest) == 0

    def test_quats_unit_norm(self, grid_points):
        scene = PrimitiveSet.from_points(PointCloud(grid_points))
        norms = scene.quats.norm(dim=-1)
        torch.testing.assert_close(norms, torch.ones_like(norms), atol=1e-5, rtol=0)

    def test_single_point(self):
        scene = PrimitiveSet.from_points(PointCloud(np.zeros((1, 3))))
        assert scene.num_gaussians == 1
        assert torch.isfinite(scene.scales).all()

    def test_bad_opacity(self, grid_points):
        with pytest.raises(ValueError, match="init_opacity"):
            PrimitiveSet.from_points(PointCloud(grid_points), init_opacity=1.0)

    def test_parameters_are_leaves(self, grid_points):
        scene = PrimitiveSet.from_points(PointCloud(grid_points))
        for name, p in scene.params().items():
            assert isinstance(p, torch.nn.Parameter), name
            assert p.is_leaf and p.requires_grad


class TestRandom:
    def test_reproducible(self):
        a = PrimitiveSet.random(50, seed=3)
        b = PrimitiveSet.random(50, seed=3)
        for name in PARAM_GROUPS:
            torch.testing.assert_close(getattr(a, name), getattr(b, name))

    def test_extent(self):
        scene = PrimitiveSet.random(200, extent=0.25, seed=0)
        assert scene.means.abs().max().item() <= 0.25

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            PrimitiveSet.random(0)


# ===========================================================================
# Invariants and mutation
# ===========================================================================

def test_params_order(scene):
    assert tuple(scene.params().keys()) == PARAM_GROUPS


def test_get_sh_coeffs_puts_dc_first(scene):
    coeffs = scene.get_sh_coeffs()
    assert coeffs.shape == (scene.num_gaussians, 4, 3)
    torch.testing.assert_close(coeffs[:, 0], scene.features_dc)


def test_activated_opacities_stay_in_unit_interval(scene):
    with torch.no_grad():
        scene.opacities[:50] = 1e4
        scene.opacities[50:] = -1e4
    opacities = scene.get_opacities()
    assert opacities.min().item() >= 0.0
    assert opacities.max().item() <= 1.0


def test_validate_rejects_mismatched_rows(scene):
    scene.opacities = torch.nn.Parameter(torch.zeros(scene.num_gaussians + 1, 1))
    with pytest.raises(ValueError, match="opacities"):
        scene.validate()


def test_apply_mutation_keeps_and_appends(scene):
    n = scene.num_gaussians
    keep = torch.zeros(n, dtype=torch.bool)
    keep[::2] = True
    kept_means = scene.means[keep].detach().clone()
    append = {name: torch.zeros((2,) + tuple(getattr(scene, name).shape[1:])) for name in PARAM_GROUPS}
    old_means = scene.means

    scene.apply_mutation(Mutation(keep=keep, append=append))

    assert scene.num_gaussians == n // 2 + 2
    assert scene.means is not old_means
    torch.testing.assert_close(scene.means[: n // 2], kept_means)
    torch.testing.assert_close(scene.means[n // 2 :], torch.zeros(2, 3))
    for name in PARAM_GROUPS:
        assert getattr(scene, name).shape[0] == scene.num_gaussians


def test_apply_mutation_rejects_partial_append(scene):
    keep = torch.ones(scene.num_gaussians, dtype=torch.bool)
    with pytest.raises(ValueError, match="missing"):
        scene.apply_mutation(Mutation(keep=keep, append={"means": torch.zeros(1, 3)}))


@pytest.mark.parametrize(
    "bad_rows",
    [torch.zeros(1, 3), torch.zeros(2, 4)],
    ids=["wrong-width", "wrong-row-count"],
)
def test_malformed_append_leaves_scene_untouched(scene, bad_rows):
    n = scene.num_gaussians
    before = {name: p for name, p in scene.params().items()}
    append = {name: torch.zeros((1,) + tuple(getattr(scene, name).shape[1:])) for name in PARAM_GROUPS}
    append["quats"] = bad_rows
    keep = torch.ones(n, dtype=torch.bool)
    keep[0] = False

    with pytest.raises(ValueError, match="quats"):
        scene.apply_mutation(Mutation(keep=keep, append=append))

    assert {getattr(scene, name).shape[0] for name in PARAM_GROUPS} == {n}
    for name, p in scene.params().items():
        assert p is before[name]
    scene.validate()


def test_apply_mutation_rejects_bad_mask(scene):
    with pytest.raises(ValueError, match="keep mask"):
        scene.apply_mutation(Mutation(keep=torch.ones(3, dtype=torch.bool)))


def test_get_info(scene):
    info = scene.get_info()
    assert info["num_gaussians"] == 100
    assert info["sh_degree"] == 1
    assert 0.0 < info["mean_opacity"] < 1.0


# ===========================================================================
# PLY loading
# ===========================================================================

def test_load_point_cloud_with_colors(tmp_path, grid_points):
    colors = np.tile(np.array([[255, 0, 128]], dtype=np.uint8), (len(grid_points), 1))
    path = tmp_path / "points.ply"
    _write_ply(path, grid_points, colors)

    cloud = load_point_cloud(path)
    np.testing.assert_allclose(cloud.points, grid_points)
    np.testing.assert_allclose(cloud.colors[0], [1.0, 0.0, 128 / 255], rtol=1e-6)


def test_load_point_cloud_without_colors(tmp_path, grid_points):
    path = tmp_path / "points.ply"
    _write_ply(path, grid_points)
    cloud = load_point_cloud(path)
    assert np.all(cloud.colors == 0.5)


def test_load_point_cloud_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_point_cloud(tmp_path / "nope.ply")
