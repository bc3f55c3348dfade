"""Diagnostic utilities for statnorm components."""

from .checks import (
    DerivativeCheckResult,
    check_data_derivative,
    check_store_stats,
    check_test_mode_consistency,
    prime_memory_normalizer,
)

__all__ = [
    "DerivativeCheckResult",
    "check_data_derivative",
    "check_store_stats",
    "check_test_mode_consistency",
    "prime_memory_normalizer",
]
