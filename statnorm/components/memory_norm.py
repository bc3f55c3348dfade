"""Normalization driven by long-running statistics.

MemoryNormalizer is like BatchNormalizer, except the transform applied in
training comes from statistics accumulated as a count-weighted moving
average over past minibatches instead of from the current minibatch.  The
current minibatch's statistics are carried in the memo and merged by
``store_stats`` (normally on the gradient accumulator, from where they reach
the trained instance through ``add``).  Decay comes from the caller scaling
the instance (``scale(alpha)`` with ``alpha < 1``) between merges.

Stored rows, each of dimension ``block_dim``:

- ``x_mean``, ``x_uvar``: moving averages of x and x^2, weight ``count``
- ``y_deriv``, ``y_deriv_y``: moving averages of the output derivative and
  of output times output derivative, weight ``backward_count``

Derived rows, recomputed whenever the stats change:

- ``norm_scale``, ``norm_offset``: the transform ``y = x * norm_scale + norm_offset``
- ``x_deriv = norm_scale * y_deriv``
- ``scale_deriv = norm_scale * y_deriv_y / target_rms^2``

With ``include_indirect_derivative`` the backward pass is::

    in_deriv = out_deriv * norm_scale - x_deriv - out_value * scale_deriv

The last two terms are the derivative that flows through the mean and
variance estimates, treating the current frames as part of the population
those estimates describe.
"""

import dataclasses
import logging
from typing import Any, Dict, Optional, Tuple

import torch

from statnorm.components.base import (
    Component,
    ComponentError,
    ComponentProperty,
    Memo,
    SerializationError,
    register_component,
)
from statnorm.components.stats import (
    STATS_DTYPE,
    apply_affine,
    as_blocks,
    compute_offset_and_scale,
    minibatch_stats,
    num_frames,
)
from statnorm.config import ConfigLine, MemoryNormConfig

logger = logging.getLogger(__name__)

_STATS_ROWS = ("x_mean", "x_uvar", "y_deriv", "y_deriv_y")


@dataclasses.dataclass
class MemoryNormMemo(Memo):
    """Minibatch stats plus a frozen copy of the transform used in propagate.

    If the component had no stats yet (first minibatch), ``scale`` and
    ``offset`` come from the minibatch itself and the derivative rows are
    zero.

    Attributes:
        x_sum: Sum of the (reshaped) input rows
        x_sumsq: Sum of the squared input rows
        scale, offset: Transform applied in propagate
        x_deriv, scale_deriv: Indirect-derivative rows
        has_indirect_terms: False if the indirect rows are all zero
    """
    x_sum: torch.Tensor = None
    x_sumsq: torch.Tensor = None
    scale: torch.Tensor = None
    offset: torch.Tensor = None
    x_deriv: torch.Tensor = None
    scale_deriv: torch.Tensor = None
    has_indirect_terms: bool = False


@register_component
class MemoryNormalizer(Component):
    """Normalizer using a moving average of past minibatch statistics.

    Args:
        config: MemoryNormConfig
    """

    type_name = "MemoryNormalizer"

    def __init__(self, config: MemoryNormConfig):
        super().__init__()
        self.config = config
        # count and backward_count are never negative but need not be equal.
        self.count = 0.0
        self.backward_count = 0.0
        for name in _STATS_ROWS:
            setattr(self, name, torch.zeros(config.block_dim, dtype=STATS_DTYPE))
        self._compute_derived()

    @classmethod
    def from_config(cls, config: MemoryNormConfig) -> "MemoryNormalizer":
        return cls(config)

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "MemoryNormalizer":
        return cls(MemoryNormConfig.from_config_line(cfl))

    @property
    def block_dim(self) -> int:
        return self.config.block_dim

    @property
    def input_dim(self) -> int:
        return self.config.dim

    @property
    def output_dim(self) -> int:
        return self.config.dim

    def properties(self) -> ComponentProperty:
        props = (ComponentProperty.SIMPLE | ComponentProperty.PROPAGATE_IN_PLACE
                 | ComponentProperty.BACKPROP_IN_PLACE)
        if not self.test_mode:
            props |= ComponentProperty.USES_MEMO | ComponentProperty.STORES_STATS
            if self.config.include_indirect_derivative:
                props |= ComponentProperty.BACKPROP_NEEDS_OUTPUT
        if self.config.block_dim < self.config.dim:
            props |= ComponentProperty.INPUT_CONTIGUOUS | ComponentProperty.OUTPUT_CONTIGUOUS
        return props

    def _compute_derived(self) -> None:
        """Recompute scale, offset, x_deriv and scale_deriv from the stats."""
        zeros = torch.zeros(self.config.block_dim, dtype=STATS_DTYPE)
        if self.count <= 0:
            self.norm_offset, self.norm_scale = zeros.clone(), zeros.clone()
        else:
            # The rows are already means, so a count of 1 gives the same transform.
            self.norm_offset, self.norm_scale = compute_offset_and_scale(
                1.0, self.config.epsilon, self.config.target_rms, self.x_mean, self.x_uvar)
        if self.config.include_indirect_derivative and self.count > 0 and self.backward_count > 0:
            target_rms = self.config.target_rms
            self.x_deriv = self.norm_scale * self.y_deriv
            self.scale_deriv = self.norm_scale * self.y_deriv_y / (target_rms * target_rms)
        else:
            self.x_deriv, self.scale_deriv = zeros.clone(), zeros.clone()

    def set_test_mode(self, test_mode: bool) -> None:
        super().set_test_mode(test_mode)
        if self.test_mode and self.count <= 0:
            logger.warning(
                f"{self.type_name}: test mode set with no stored statistics; "
                f"propagate will fail until statistics are added"
            )
        logger.info(f"{self.type_name}: test_mode={self.test_mode}, count={self.count}")

    # =========================================================================
    # Forward / backward
    # =========================================================================

    def propagate(self, in_value: torch.Tensor) -> Tuple[torch.Tensor, Optional[MemoryNormMemo]]:
        self._check_input(in_value)
        x = as_blocks(in_value, self.config.block_dim)

        if self.test_mode:
            if self.count <= 0:
                raise ComponentError(
                    f"{self.type_name}: propagate in test mode with zero stats count")
            return apply_affine(x, self.norm_scale, self.norm_offset).view(in_value.shape), None

        if x.shape[0] == 0:
            raise ComponentError(f"{self.type_name}: cannot normalize an empty minibatch")
        frames, x_sum, x_sumsq = minibatch_stats(x)
        memo = MemoryNormMemo(
            component_type=self.type_name,
            block_dim=self.config.block_dim,
            num_frames=frames,
            x_sum=x_sum,
            x_sumsq=x_sumsq,
        )
        if self.count > 0:
            memo.scale, memo.offset = self.norm_scale.clone(), self.norm_offset.clone()
            memo.x_deriv, memo.scale_deriv = self.x_deriv.clone(), self.scale_deriv.clone()
            memo.has_indirect_terms = (self.config.include_indirect_derivative
                                       and self.backward_count > 0)
        else:
            # First minibatch: normalize with its own stats, no indirect terms.
            memo.offset, memo.scale = compute_offset_and_scale(
                frames, self.config.epsilon, self.config.target_rms, x_sum, x_sumsq)
            memo.x_deriv = torch.zeros_like(memo.scale)
            memo.scale_deriv = torch.zeros_like(memo.scale)
        return apply_affine(x, memo.scale, memo.offset).view(in_value.shape), memo

    def backprop(
        self,
        in_value: Optional[torch.Tensor],
        out_value: Optional[torch.Tensor],
        out_deriv: torch.Tensor,
        memo: Optional[MemoryNormMemo] = None,
        to_update: Optional[Component] = None,
    ) -> torch.Tensor:
        """Propagate the derivative back; also updates backward stats of ``to_update``.

        ``to_update`` (normally the gradient accumulator) receives the output
        derivative statistics when it is given and ``out_value`` is available.
        """
        self._check_input(out_deriv)
        block_dim = self.config.block_dim
        g = as_blocks(out_deriv, block_dim)

        if self.test_mode:
            if self.count <= 0:
                raise ComponentError(
                    f"{self.type_name}: backprop in test mode with zero stats count")
            return (g * self.norm_scale.to(g)).view(out_deriv.shape)

        memo = self._check_memo(memo, num_frames(out_deriv, block_dim), "backprop")
        y = None
        if out_value is not None:
            self._check_input(out_value)
            y = as_blocks(out_value, block_dim)

        in_deriv = g * memo.scale.to(g)
        if memo.has_indirect_terms:
            if y is None:
                raise ComponentError(
                    f"{self.type_name}: backprop needs the output value for the "
                    f"indirect derivative"
                )
            in_deriv -= memo.x_deriv.to(g)
            in_deriv -= y * memo.scale_deriv.to(g)

        if to_update is not None and y is not None:
            if not isinstance(to_update, MemoryNormalizer) or to_update.block_dim != block_dim:
                raise ComponentError(f"{self.type_name}: cannot update {to_update.info()}")
            to_update._accumulate_backward_stats(g, y)
        return in_deriv.view(out_deriv.shape)

    # =========================================================================
    # Statistics
    # =========================================================================

    def _accumulate_backward_stats(self, g: torch.Tensor, y: torch.Tensor) -> None:
        if self.test_mode:
            return
        g = g.to(STATS_DTYPE)
        y = y.to(STATS_DTYPE)
        frames = g.shape[0]
        new_count = self.backward_count + frames
        self.y_deriv = (self.y_deriv * self.backward_count + g.sum(dim=0).cpu()) / new_count
        self.y_deriv_y = (self.y_deriv_y * self.backward_count
                          + (g * y).sum(dim=0).cpu()) / new_count
        self.backward_count = new_count
        self._compute_derived()
        logger.debug(
            f"{self.type_name}: accumulated {frames} backward frames, "
            f"backward_count={self.backward_count}"
        )

    def store_stats(
        self,
        in_value: torch.Tensor,
        out_value: torch.Tensor,
        memo: Optional[MemoryNormMemo] = None,
    ) -> None:
        if self.test_mode:
            raise ComponentError(f"{self.type_name}: statistics are frozen in test mode")
        frames = None if in_value is None else num_frames(in_value, self.config.block_dim)
        memo = self._check_memo(memo, frames, "store_stats")
        new_count = self.count + memo.num_frames
        self.x_mean = (self.x_mean * self.count + memo.x_sum.to(self.x_mean)) / new_count
        self.x_uvar = (self.x_uvar * self.count + memo.x_sumsq.to(self.x_uvar)) / new_count
        self.count = new_count
        self._compute_derived()
        logger.debug(f"{self.type_name}: stored {memo.num_frames} frames, count={self.count}")

    def scale(self, alpha: float) -> None:
        """Scale the stats counts; a negative ``alpha`` resets the stats instead."""
        if alpha <= 0:
            if alpha < 0:
                logger.warning(
                    f"{self.type_name}: scale({alpha}) would give a negative count; "
                    f"zeroing stats"
                )
            self.zero_stats()
            return
        # The rows are means, so scaling the counts scales the implied sums.
        self.count *= alpha
        self.backward_count *= alpha
        self._compute_derived()

    def add(self, alpha: float, other: Component) -> None:
        """Blend in ``alpha`` times the stats of ``other``; ignored if ``alpha < 0``."""
        if not isinstance(other, MemoryNormalizer) or other.block_dim != self.block_dim:
            raise ComponentError(f"{self.type_name}: cannot add {other.info()}")
        if alpha < 0:
            logger.warning(f"{self.type_name}: ignoring add() with negative alpha={alpha}")
            return
        other_count = alpha * other.count
        new_count = self.count + other_count
        if new_count > 0:
            self.x_mean = (self.x_mean * self.count + other.x_mean * other_count) / new_count
            self.x_uvar = (self.x_uvar * self.count + other.x_uvar * other_count) / new_count
            self.count = new_count
        other_backward = alpha * other.backward_count
        new_backward = self.backward_count + other_backward
        if new_backward > 0:
            self.y_deriv = (self.y_deriv * self.backward_count
                            + other.y_deriv * other_backward) / new_backward
            self.y_deriv_y = (self.y_deriv_y * self.backward_count
                              + other.y_deriv_y * other_backward) / new_backward
            self.backward_count = new_backward
        self._compute_derived()

    def zero_stats(self) -> None:
        self.count = 0.0
        self.backward_count = 0.0
        for name in _STATS_ROWS:
            getattr(self, name).zero_()
        self._compute_derived()

    # =========================================================================
    # Description and persistence
    # =========================================================================

    def info(self) -> str:
        text = (
            f"{self.type_name}, dim={self.config.dim}, block-dim={self.config.block_dim}, "
            f"epsilon={self.config.epsilon}, target-rms={self.config.target_rms}, "
            f"include-indirect-derivative="
            f"{str(self.config.include_indirect_derivative).lower()}, "
            f"test-mode={str(self.test_mode).lower()}, count={self.count}, "
            f"backward-count={self.backward_count}"
        )
        if self.count > 0:
            var = (self.x_uvar - self.x_mean * self.x_mean).clamp_min(0.0)
            text += (f", data-mean-abs={self.x_mean.abs().mean().item():.4g}"
                     f", data-stddev={var.sqrt().mean().item():.4g}")
        if self.backward_count > 0:
            text += f", y-deriv-abs={self.y_deriv.abs().mean().item():.4g}"
        return text

    def state_dict(self) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
        metadata = {
            "type": self.type_name,
            "config": self.config.to_config_line(),
            "test_mode": self.test_mode,
            "count": self.count,
            "backward_count": self.backward_count,
        }
        tensors = {name: getattr(self, name).clone() for name in _STATS_ROWS}
        return metadata, tensors

    @classmethod
    def from_state(
        cls,
        metadata: Dict[str, Any],
        tensors: Dict[str, torch.Tensor],
    ) -> "MemoryNormalizer":
        component = cls(MemoryNormConfig.from_config_line(ConfigLine.parse(metadata["config"])))
        for name in _STATS_ROWS:
            if name not in tensors:
                raise SerializationError(f"{cls.type_name}: missing tensor {name!r}")
            if tensors[name].shape != (component.block_dim,):
                raise SerializationError(
                    f"{cls.type_name}: {name} has shape {tuple(tensors[name].shape)}, "
                    f"expected ({component.block_dim},)"
                )
            setattr(component, name, tensors[name].to(STATS_DTYPE).clone())
        component.count = float(metadata["count"])
        component.backward_count = float(metadata["backward_count"])
        if component.count < 0 or component.backward_count < 0:
            raise SerializationError(f"{cls.type_name}: negative stats count in {metadata}")
        component._compute_derived()
        component.set_test_mode(bool(metadata["test_mode"]))
        return component
