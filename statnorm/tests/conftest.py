"""Pytest configuration and fixtures for statnorm tests.

Provides shared fixtures for:
- Seeded random data
- Sample components of each type
"""

import pytest
import torch

from statnorm.components import BatchNormalizer, MemoryNormalizer, StaticNormalizer
from statnorm.config import BatchNormConfig, MemoryNormConfig, StaticNormConfig


# ============================================================================
# Random Data Fixtures
# ============================================================================

@pytest.fixture
def generator():
    """Return a seeded torch.Generator."""
    return torch.Generator().manual_seed(1234)


@pytest.fixture
def make_input(generator):
    """Return a factory for float64 minibatches with non-trivial mean and spread."""
    def _make(rows: int, dim: int, mean: float = 0.5, std: float = 2.0) -> torch.Tensor:
        return mean + std * torch.randn(rows, dim, dtype=torch.float64, generator=generator)
    return _make


@pytest.fixture
def make_deriv(generator):
    """Return a factory for float64 output derivatives."""
    def _make(rows: int, dim: int) -> torch.Tensor:
        return torch.randn(rows, dim, dtype=torch.float64, generator=generator)
    return _make


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def static_norm():
    """Return a StaticNormalizer with two blocks per row."""
    return StaticNormalizer(StaticNormConfig(dim=8, block_dim=4, target_rms=2.0))


@pytest.fixture
def batch_norm():
    """Return a BatchNormalizer over full rows."""
    return BatchNormalizer(BatchNormConfig(dim=6))


@pytest.fixture
def spatial_batch_norm():
    """Return a BatchNormalizer whose rows hold three blocks."""
    return BatchNormalizer(BatchNormConfig(dim=12, block_dim=4, target_rms=0.5))


@pytest.fixture(params=[True, False], ids=["indirect", "direct"])
def memory_norm(request):
    """Return a MemoryNormalizer with and without the indirect derivative."""
    return MemoryNormalizer(MemoryNormConfig(
        dim=8, block_dim=4, include_indirect_derivative=request.param))
