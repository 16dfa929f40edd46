import argparse

import pytest

from splattrain.config import TrainConfig, add_arguments, from_args
from splattrain.optim import DEFAULT_LEARNING_RATES


@pytest.fixture
def parser():
    return add_arguments(argparse.ArgumentParser())


def test_defaults_roundtrip(parser):
    config = from_args(parser.parse_args([]))
    assert config == TrainConfig()


def test_default_schedule_values():
    config = TrainConfig()
    assert (config.num_downscales, config.resolution_schedule) == (2, 3000)
    assert (config.sh_degree, config.sh_degree_interval) == (3, 1000)
    assert (config.refine_every, config.warmup_length) == (100, 500)
    assert (config.reset_alpha_every, config.stop_split_at) == (30, 15000)
    assert config.learning_rates == DEFAULT_LEARNING_RATES


def test_overrides(parser):
    args = parser.parse_args(
        [
            "--iterations", "500",
            "--num-downscales", "0",
            "--background", "1", "1", "1",
            "--opacities-lr", "0.1",
            "--means-lr-final", "0",
            "--seed", "-1",
            "--device", "cpu",
        ]
    )
    config = from_args(args)
    assert config.iterations == 500
    assert config.num_downscales == 0
    assert config.background == (1.0, 1.0, 1.0)
    assert config.learning_rates["opacities"] == 0.1
    assert config.means_lr_final is None
    assert config.seed is None
    assert config.device == "cpu"


@pytest.mark.parametrize(
    "overrides, match",
    [
        ({"iterations": 0}, "iterations"),
        ({"num_downscales": -1}, "num_downscales"),
        ({"sh_degree": 5}, "sh_degree"),
        ({"z_near": 0.0}, "z_near"),
        ({"ssim_weight": 2.0}, "ssim_weight"),
        ({"background": (0.0, 0.0)}, "background"),
        ({"learning_rates": {"color": 0.1}}, "Unknown"),
    ],
)
def test_validate_rejects(overrides, match):
    with pytest.raises(ValueError, match=match):
        TrainConfig(**overrides).validate()
