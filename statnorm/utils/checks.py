"""Numerical self-checks for components.

These compare ``backprop`` against finite differences of the forward
function and verify the statistics bookkeeping.  They are used by the test
suite and by ``python -m statnorm check``.  Run them in float64.
"""

import dataclasses
import logging
from typing import List, Optional

import torch

from statnorm.components.base import Component
from statnorm.components.memory_norm import MemoryNormalizer
from statnorm.components.stats import num_frames

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class DerivativeCheckResult:
    """Outcome of ``check_data_derivative``.

    Attributes:
        predicted: Objective changes predicted from ``backprop``, per direction
        measured: Objective changes measured by central differences
        relative_error: |predicted - measured| / |measured| over all directions
        passed: relative_error is below the threshold
    """
    predicted: List[float]
    measured: List[float]
    relative_error: float
    passed: bool


def check_data_derivative(
    component: Component,
    in_value: torch.Tensor,
    out_deriv: Optional[torch.Tensor] = None,
    reference: Optional[Component] = None,
    num_directions: int = 3,
    delta: float = 1.0e-04,
    threshold: float = 1.0e-03,
    generator: Optional[torch.Generator] = None,
) -> DerivativeCheckResult:
    """Compare ``backprop`` with finite differences of ``sum(out_deriv * out)``.

    Args:
        component: Component whose backprop is checked (its stats are not changed)
        in_value: Input matrix
        out_deriv: Output derivative; random if not given
        reference: Component whose propagate defines the measured function
            (defaults to ``component``)
        num_directions: Number of random perturbation directions
        delta: Size of the perturbation
        threshold: Maximum allowed relative error
        generator: Random generator for reproducible directions

    Returns:
        DerivativeCheckResult
    """
    reference = component if reference is None else reference
    out_value, memo = component.propagate(in_value)
    if out_deriv is None:
        out_deriv = torch.randn(out_value.shape, dtype=out_value.dtype, generator=generator)
    in_deriv = component.backprop(in_value, out_value, out_deriv, memo)
    component.delete_memo(memo)

    def objf(x: torch.Tensor) -> float:
        y, m = reference.propagate(x)
        reference.delete_memo(m)
        return (out_deriv * y).sum().item()

    predicted, measured = [], []
    for _ in range(num_directions):
        direction = delta * torch.randn(in_value.shape, dtype=in_value.dtype, generator=generator)
        predicted.append((in_deriv * direction).sum().item())
        measured.append(0.5 * (objf(in_value + direction) - objf(in_value - direction)))

    predicted_t = torch.tensor(predicted, dtype=torch.float64)
    measured_t = torch.tensor(measured, dtype=torch.float64)
    denom = max(measured_t.norm().item(), 1.0e-20)
    relative_error = (predicted_t - measured_t).norm().item() / denom
    passed = relative_error < threshold
    logger.info(
        f"{component.type_name}: derivative check predicted={predicted}, "
        f"measured={measured}, relative error {relative_error:.3g} "
        f"({'ok' if passed else 'FAILED'})"
    )
    return DerivativeCheckResult(predicted, measured, relative_error, passed)


def prime_memory_normalizer(
    component: MemoryNormalizer,
    in_value: torch.Tensor,
    out_deriv: torch.Tensor,
) -> None:
    """Set a MemoryNormalizer's stats to those of a single minibatch.

    Afterwards both the forward stats (count, x_mean, x_uvar) and the
    backward stats (backward_count, y_deriv, y_deriv_y) describe exactly this
    ``in_value``/``out_deriv`` pair, using the same accumulator-then-add route
    as training.
    """
    component.zero_stats()
    delta = component.copy()

    out_value, memo = component.propagate(in_value)
    delta.store_stats(in_value, out_value, memo)
    component.delete_memo(memo)
    component.add(1.0, delta)

    delta.zero_stats()
    out_value, memo = component.propagate(in_value)
    component.backprop(in_value, out_value, out_deriv, memo, to_update=delta)
    component.delete_memo(memo)
    component.add(1.0, delta)


def check_store_stats(component: Component, in_value: torch.Tensor) -> bool:
    """Check that stats stored on an accumulator and added back count every frame."""
    if not component.stores_stats():
        return True
    delta = component.copy()
    delta.zero_stats()
    out_value, memo = component.propagate(in_value)
    delta.store_stats(in_value, out_value, memo)
    component.delete_memo(memo)

    target = component.copy()
    target.zero_stats()
    target.add(1.0, delta)
    expected = num_frames(in_value, component.block_dim)
    passed = target.count == expected
    if not passed:
        logger.error(f"{component.type_name}: stored count {target.count}, expected {expected}")
    return passed


def check_test_mode_consistency(
    component: Component,
    in_value: torch.Tensor,
    atol: float = 1.0e-05,
) -> bool:
    """Check that test mode with this minibatch's stats reproduces train-mode output."""
    trained = component.copy()
    trained.set_test_mode(False)
    trained.zero_stats()
    out_train, memo = trained.propagate(in_value)
    if memo is not None:
        trained.store_stats(in_value, out_train, memo)
        trained.delete_memo(memo)

    trained.set_test_mode(True)
    out_test, _ = trained.propagate(in_value)
    passed = torch.allclose(out_train, out_test, atol=atol)
    if not passed:
        max_diff = (out_train - out_test).abs().max().item()
        logger.error(f"{component.type_name}: test-mode output differs by {max_diff:.3g}")
    return passed
