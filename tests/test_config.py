"""Tests for TrainConfig defaults and validation."""

import pytest

from pipesplit.config import TrainConfig
from pipesplit.errors import ConfigError


def test_defaults():
    config = TrainConfig()
    assert config.lr == 3e-4
    assert config.accumulation_steps == 16
    assert config.minibatch_size == 256
    assert config.epochs == 10
    assert config.use_cuda and config.split
    assert config.world_size == 2
    assert config.validate() is config


def test_world_size_follows_split():
    assert TrainConfig(num_stages=4).world_size == 4
    assert TrainConfig(num_stages=4, split=False).world_size == 1


@pytest.mark.parametrize("changes", [
    {"accumulation_steps": 0},
    {"minibatch_size": -1},
    {"epochs": 0},
    {"num_stages": 0},
    {"lr": 0.0},
    {"num_layers": 1},
    {"backend": "mpi"},
    {"recv_timeout": 0},
])
def test_invalid_options(changes):
    with pytest.raises(ConfigError):
        TrainConfig().with_options(**changes)


def test_config_error_is_a_value_error():
    with pytest.raises(ValueError):
        TrainConfig(lr=-1).validate()


def test_layers_below_stages_is_left_to_partitioning():
    TrainConfig(num_layers=2, num_stages=5).validate()


def test_with_options_copies():
    base = TrainConfig()
    changed = base.with_options(epochs=3, backend="threads")
    assert (changed.epochs, changed.backend) == (3, "threads")
    assert (base.epochs, base.backend) == (10, "processes")
    assert changed.to_dict()["epochs"] == 3
