"""Tests for MemoryNormalizer."""

import logging

import pytest
import torch

from statnorm.components import (
    BatchNormalizer,
    ComponentError,
    ComponentProperty,
    MemoError,
    MemoryNormalizer,
)
from statnorm.config import BatchNormConfig, MemoryNormConfig
from statnorm.utils.checks import (
    check_data_derivative,
    check_store_stats,
    check_test_mode_consistency,
    prime_memory_normalizer,
)


def train_step(component, x):
    """Propagate and store the stats of one minibatch."""
    y, memo = component.propagate(x)
    component.store_stats(x, y, memo)
    component.delete_memo(memo)
    return y


def stats_snapshot(component):
    metadata, tensors = component.state_dict()
    return metadata["count"], metadata["backward_count"], tensors


def assert_same_stats(a, b):
    count_a, backward_a, rows_a = a
    count_b, backward_b, rows_b = b
    assert count_a == count_b
    assert backward_a == backward_b
    for name in rows_a:
        assert torch.equal(rows_a[name], rows_b[name]), name


class TestMemoryPropagate:
    """Test the forward transform."""

    def test_first_minibatch_uses_own_stats(self, make_input):
        config = MemoryNormConfig(dim=8, block_dim=4, target_rms=0.5)
        memory = MemoryNormalizer(config)
        batch = BatchNormalizer(BatchNormConfig(dim=8, block_dim=4, target_rms=0.5))
        x = make_input(6, 8)
        y_memory, memo = memory.propagate(x)
        y_batch, _ = batch.propagate(x)
        assert torch.allclose(y_memory, y_batch)
        assert not memo.has_indirect_terms
        assert memo.num_frames == 12

    def test_uses_stored_stats(self, memory_norm, make_input):
        x_old = make_input(20, 8)
        train_step(memory_norm, x_old)
        x_new = make_input(5, 8, mean=10.0)
        y, _ = memory_norm.propagate(x_new)
        blocks = x_new.reshape(-1, 4)
        expected = blocks * memory_norm.norm_scale + memory_norm.norm_offset
        assert torch.allclose(y, expected.reshape(5, 8))

    def test_properties(self):
        direct = MemoryNormalizer(MemoryNormConfig(dim=4, include_indirect_derivative=False))
        indirect = MemoryNormalizer(MemoryNormConfig(dim=4))
        assert not direct.properties() & ComponentProperty.BACKPROP_NEEDS_OUTPUT
        assert indirect.properties() & ComponentProperty.BACKPROP_NEEDS_OUTPUT
        assert indirect.uses_memo() and indirect.stores_stats()
        assert indirect.backprop_in_place()

    def test_test_mode_with_zero_count(self, memory_norm, caplog):
        with caplog.at_level(logging.WARNING):
            memory_norm.set_test_mode(True)
        assert "no stored statistics" in caplog.text
        with pytest.raises(ComponentError, match="zero stats count"):
            memory_norm.propagate(torch.ones(2, 8))

    def test_wrong_memo_type(self, memory_norm, make_input):
        x = make_input(4, 8)
        batch = BatchNormalizer(BatchNormConfig(dim=8, block_dim=4))
        y, batch_memo = batch.propagate(x)
        with pytest.raises(MemoError, match="BatchNormalizer"):
            memory_norm.store_stats(x, y, batch_memo)


class TestMemoryDerivative:
    """Test the backward pass against finite differences."""

    def test_derivative_with_stored_stats(self, memory_norm, make_input, generator):
        train_step(memory_norm, make_input(30, 8))
        result = check_data_derivative(memory_norm, make_input(10, 8), generator=generator)
        assert result.passed, result

    def test_indirect_derivative_matches_batch_norm(self, make_input, make_deriv, generator):
        """With stats equal to the minibatch's own, the full batch-norm derivative results."""
        config = MemoryNormConfig(dim=8, block_dim=4, target_rms=2.0, epsilon=0.01)
        memory = MemoryNormalizer(config)
        reference = BatchNormalizer(BatchNormConfig(
            dim=8, block_dim=4, target_rms=2.0, epsilon=0.01))
        x, g = make_input(10, 8), make_deriv(10, 8)
        prime_memory_normalizer(memory, x, g)

        result = check_data_derivative(memory, x, g, reference=reference, generator=generator)
        assert result.passed, result

        # Without the indirect terms the same comparison fails.
        direct = MemoryNormalizer(MemoryNormConfig(
            dim=8, block_dim=4, target_rms=2.0, epsilon=0.01,
            include_indirect_derivative=False))
        prime_memory_normalizer(direct, x, g)
        result = check_data_derivative(direct, x, g, reference=reference, generator=generator)
        assert not result.passed

    def test_direct_derivative_after_priming(self, make_input, make_deriv, generator):
        memory = MemoryNormalizer(MemoryNormConfig(dim=6, include_indirect_derivative=False))
        x, g = make_input(12, 6), make_deriv(12, 6)
        prime_memory_normalizer(memory, x, g)
        result = check_data_derivative(memory, x, g, generator=generator)
        assert result.passed, result

    def test_indirect_terms_need_output(self, make_input, make_deriv):
        memory = MemoryNormalizer(MemoryNormConfig(dim=8, block_dim=4))
        x, g = make_input(6, 8), make_deriv(6, 8)
        prime_memory_normalizer(memory, x, g)
        _, memo = memory.propagate(x)
        assert memo.has_indirect_terms
        with pytest.raises(ComponentError, match="output value"):
            memory.backprop(x, None, g, memo)

    def test_test_mode_derivative_is_scaled(self, memory_norm, make_input, make_deriv):
        train_step(memory_norm, make_input(20, 8))
        memory_norm.set_test_mode(True)
        g = make_deriv(3, 8)
        in_deriv = memory_norm.backprop(None, None, g)
        expected = g.reshape(-1, 4) * memory_norm.norm_scale
        assert torch.allclose(in_deriv, expected.reshape(3, 8))


class TestMemoryStatistics:
    """Test store_stats, backward stats, scale and add."""

    def test_store_stats_keeps_means(self, memory_norm, make_input):
        x1, x2 = make_input(10, 8), make_input(6, 8)
        train_step(memory_norm, x1)
        train_step(memory_norm, x2)
        blocks = torch.cat([x1, x2]).reshape(-1, 4)
        assert memory_norm.count == 32
        assert torch.allclose(memory_norm.x_mean, blocks.mean(dim=0))
        assert torch.allclose(memory_norm.x_uvar, blocks.pow(2).mean(dim=0))

    def test_backprop_updates_backward_stats(self, memory_norm, make_input, make_deriv):
        train_step(memory_norm, make_input(10, 8))
        delta = memory_norm.copy()
        delta.zero_stats()
        x, g = make_input(5, 8), make_deriv(5, 8)
        y, memo = memory_norm.propagate(x)
        memory_norm.backprop(x, y, g, memo, to_update=delta)

        g_blocks, y_blocks = g.reshape(-1, 4), y.reshape(-1, 4)
        assert delta.backward_count == 10
        assert delta.count == 0
        assert torch.allclose(delta.y_deriv, g_blocks.mean(dim=0))
        assert torch.allclose(delta.y_deriv_y, (g_blocks * y_blocks).mean(dim=0))

    def test_no_backward_stats_without_output(self, make_input, make_deriv):
        memory = MemoryNormalizer(MemoryNormConfig(dim=4, include_indirect_derivative=False))
        train_step(memory, make_input(10, 4))
        delta = memory.copy()
        delta.zero_stats()
        x = make_input(5, 4)
        _, memo = memory.propagate(x)
        memory.backprop(x, None, make_deriv(5, 4), memo, to_update=delta)
        assert delta.backward_count == 0

    def test_counts_may_diverge(self, memory_norm, make_input, make_deriv):
        train_step(memory_norm, make_input(10, 8))
        train_step(memory_norm, make_input(10, 8))
        x = make_input(10, 8)
        y, memo = memory_norm.propagate(x)
        memory_norm.backprop(x, y, make_deriv(10, 8), memo, to_update=memory_norm)
        assert memory_norm.count == 40
        assert memory_norm.backward_count == 20

    def test_negative_add_is_ignored(self, memory_norm, make_input, make_deriv, caplog):
        x, g = make_input(8, 8), make_deriv(8, 8)
        prime_memory_normalizer(memory_norm, x, g)
        other = memory_norm.copy()
        train_step(other, make_input(8, 8, mean=5.0))
        before = stats_snapshot(memory_norm)
        with caplog.at_level(logging.WARNING):
            memory_norm.add(-1.0, other)
        assert "negative alpha" in caplog.text
        assert_same_stats(stats_snapshot(memory_norm), before)

    def test_negative_scale_zeroes_stats(self, memory_norm, make_input, make_deriv, caplog):
        x, g = make_input(8, 8), make_deriv(8, 8)
        prime_memory_normalizer(memory_norm, x, g)
        zeroed = memory_norm.copy()
        zeroed.zero_stats()
        with caplog.at_level(logging.WARNING):
            memory_norm.scale(-0.5)
        assert "zeroing stats" in caplog.text
        assert_same_stats(stats_snapshot(memory_norm), stats_snapshot(zeroed))
        assert torch.equal(memory_norm.x_deriv, zeroed.x_deriv)

    def test_positive_scale_keeps_transform(self, memory_norm, make_input, make_deriv):
        x, g = make_input(8, 8), make_deriv(8, 8)
        prime_memory_normalizer(memory_norm, x, g)
        scale, x_deriv = memory_norm.norm_scale.clone(), memory_norm.x_deriv.clone()
        memory_norm.scale(0.1)
        assert memory_norm.count == pytest.approx(1.6)
        assert memory_norm.backward_count == pytest.approx(1.6)
        assert torch.allclose(memory_norm.norm_scale, scale)
        assert torch.allclose(memory_norm.x_deriv, x_deriv)

    def test_decayed_add_weights_new_stats(self, make_input):
        """scale() then add() gives a count-weighted moving average."""
        memory = MemoryNormalizer(MemoryNormConfig(dim=2))
        old, new = memory.copy(), memory.copy()
        train_step(old, torch.full((10, 2), 1.0, dtype=torch.float64))
        train_step(new, torch.full((10, 2), 3.0, dtype=torch.float64))
        memory.add(1.0, old)
        memory.scale(0.5)
        memory.add(1.0, new)
        assert memory.count == pytest.approx(15.0)
        # (5 * 1 + 10 * 3) / 15
        assert torch.allclose(memory.x_mean, torch.full((2,), 35.0 / 15.0, dtype=torch.float64))

    def test_store_stats_in_test_mode_raises(self, memory_norm, make_input):
        x = make_input(4, 8)
        train_step(memory_norm, x)
        memory_norm.set_test_mode(True)
        with pytest.raises(ComponentError, match="frozen"):
            memory_norm.store_stats(x, x)

    def test_self_checks(self, memory_norm, make_input):
        x = make_input(6, 8)
        assert check_store_stats(memory_norm, x)
        assert check_test_mode_consistency(memory_norm, x)

    def test_info(self, memory_norm, make_input, make_deriv):
        prime_memory_normalizer(memory_norm, make_input(4, 8), make_deriv(4, 8))
        text = memory_norm.info()
        assert text.startswith("MemoryNormalizer")
        assert "backward-count=8.0" in text
        assert "y-deriv-abs=" in text
