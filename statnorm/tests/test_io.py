"""Tests for safetensors persistence."""

import json

import pytest
import torch
from safetensors.torch import save_file

from statnorm.components import (
    BatchNormalizer,
    MemoryNormalizer,
    SerializationError,
    StaticNormalizer,
)
from statnorm.config import BatchNormConfig, MemoryNormConfig, StaticNormConfig
from statnorm.io import load_component, load_components, save_component, save_components
from statnorm.utils.checks import prime_memory_normalizer


@pytest.fixture
def trained_batch_norm(make_input):
    component = BatchNormalizer(BatchNormConfig(dim=6, block_dim=3, epsilon=0.01))
    x = make_input(10, 6)
    y, memo = component.propagate(x)
    component.store_stats(x, y, memo)
    return component


@pytest.fixture
def trained_memory_norm(make_input, make_deriv):
    component = MemoryNormalizer(MemoryNormConfig(dim=8, block_dim=4, target_rms=0.5))
    prime_memory_normalizer(component, make_input(5, 8), make_deriv(5, 8))
    component.scale(0.3)
    return component


class TestRoundTrip:
    """Test that saving and loading reproduces config and stats."""

    def test_static(self, tmp_path):
        component = StaticNormalizer(StaticNormConfig(dim=8, block_dim=2, add_log_stddev=True))
        path = save_component(component, tmp_path / "static.safetensors")
        loaded = load_component(path)
        assert isinstance(loaded, StaticNormalizer)
        assert loaded.config == component.config

    def test_batch(self, trained_batch_norm, tmp_path, make_input):
        trained_batch_norm.set_test_mode(True)
        path = save_component(trained_batch_norm, tmp_path / "batch.safetensors")
        loaded = load_component(path)
        assert loaded.config == trained_batch_norm.config
        assert loaded.test_mode
        assert loaded.count == trained_batch_norm.count
        assert torch.equal(loaded.stats_sum, trained_batch_norm.stats_sum)
        assert torch.equal(loaded.stats_sumsq, trained_batch_norm.stats_sumsq)

        x = make_input(4, 6)
        assert torch.equal(loaded.propagate(x)[0], trained_batch_norm.propagate(x)[0])

    def test_memory(self, trained_memory_norm, tmp_path):
        path = save_component(trained_memory_norm, tmp_path / "memory.safetensors")
        loaded = load_component(path)
        assert loaded.config == trained_memory_norm.config
        assert not loaded.test_mode
        assert loaded.count == trained_memory_norm.count
        assert loaded.backward_count == trained_memory_norm.backward_count
        for name in ("x_mean", "x_uvar", "y_deriv", "y_deriv_y",
                     "norm_scale", "norm_offset", "x_deriv", "scale_deriv"):
            assert torch.equal(getattr(loaded, name), getattr(trained_memory_norm, name)), name

    def test_several_components(self, trained_batch_norm, trained_memory_norm, tmp_path):
        path = tmp_path / "nested" / "model.safetensors"
        save_components({"bn1": trained_batch_norm, "mn1": trained_memory_norm}, path)
        loaded = load_components(path)
        assert list(loaded) == ["bn1", "mn1"]
        assert isinstance(loaded["bn1"], BatchNormalizer)
        assert isinstance(loaded["mn1"], MemoryNormalizer)
        with pytest.raises(SerializationError, match="2 components"):
            load_component(path)


class TestLoadErrors:
    """Test rejection of unreadable files."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_components(tmp_path / "absent.safetensors")

    def test_foreign_file(self, tmp_path):
        path = str(tmp_path / "weights.safetensors")
        save_file({"weight": torch.zeros(2)}, path, metadata={"format": "pt"})
        with pytest.raises(SerializationError, match="not a statnorm file"):
            load_components(path)

    def test_unknown_type(self, tmp_path):
        path = str(tmp_path / "unknown.safetensors")
        metadata = {
            "format": "statnorm",
            "version": "0.1.0",
            "components": json.dumps(["c"]),
            "c": json.dumps({"type": "LayerNorm", "config": "dim=4"}),
        }
        save_file({"c.x": torch.zeros(1)}, path, metadata=metadata)
        with pytest.raises(SerializationError, match="unknown component type"):
            load_components(path)

    def test_wrong_tensor_shape(self, trained_batch_norm):
        metadata, tensors = trained_batch_norm.state_dict()
        tensors["stats_sum"] = torch.zeros(5, dtype=torch.float64)
        with pytest.raises(SerializationError, match="stats_sum"):
            BatchNormalizer.from_state(metadata, tensors)

    def test_missing_tensor(self, trained_memory_norm):
        metadata, tensors = trained_memory_norm.state_dict()
        del tensors["y_deriv"]
        with pytest.raises(SerializationError, match="y_deriv"):
            MemoryNormalizer.from_state(metadata, tensors)

    def test_negative_count(self, trained_memory_norm):
        metadata, tensors = trained_memory_norm.state_dict()
        metadata["backward_count"] = -1.0
        with pytest.raises(SerializationError, match="negative"):
            MemoryNormalizer.from_state(metadata, tensors)

    def test_invalid_name(self, trained_batch_norm, tmp_path):
        with pytest.raises(ValueError, match="Invalid component name"):
            save_components({"a.b": trained_batch_norm}, tmp_path / "x.safetensors")
