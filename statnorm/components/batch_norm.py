"""Batch normalization with running statistics for test mode.

In training mode each dimension is normalized to zero mean and
``target_rms`` standard deviation using the statistics of the current
minibatch.  ``store_stats`` accumulates a never-decaying total of
(count, sum, sum-of-squares) which defines the fixed transform used in
test mode.

Combine with a trainable scale and offset (as in the original batch-norm
paper) by following this component with an affine layer.
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
from statnorm.config import BatchNormConfig, ConfigLine

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class BatchNormMemo(Memo):
    """Minibatch statistics and the transform used by one ``propagate`` call.

    Attributes:
        mean: Mean of the (reshaped) input rows
        uvar: Uncentered variance, i.e. sum-of-squares / num_frames
        scale: Scale of the normalizing transform
        offset: Offset of the normalizing transform
    """
    mean: torch.Tensor = None
    uvar: torch.Tensor = None
    scale: torch.Tensor = None
    offset: torch.Tensor = None


@register_component
class BatchNormalizer(Component):
    """Per-minibatch normalizer with persisted running statistics.

    Each block of ``block_dim`` columns is treated as a separate frame, so
    with ``block_dim < dim`` this implements spatial batch normalization.

    Args:
        config: BatchNormConfig
    """

    type_name = "BatchNormalizer"

    def __init__(self, config: BatchNormConfig):
        super().__init__()
        self.config = config
        self.count = 0.0
        self.stats_sum = torch.zeros(config.block_dim, dtype=STATS_DTYPE)
        self.stats_sumsq = torch.zeros(config.block_dim, dtype=STATS_DTYPE)
        # Derived from the stats; None whenever they are out of date.
        self._offset: Optional[torch.Tensor] = None
        self._scale: Optional[torch.Tensor] = None

    @classmethod
    def from_config(cls, config: BatchNormConfig) -> "BatchNormalizer":
        return cls(config)

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "BatchNormalizer":
        return cls(BatchNormConfig.from_config_line(cfl))

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
        props = (ComponentProperty.SIMPLE | ComponentProperty.BACKPROP_NEEDS_OUTPUT
                 | ComponentProperty.PROPAGATE_IN_PLACE | ComponentProperty.BACKPROP_IN_PLACE)
        if self.config.block_dim < self.config.dim:
            props |= ComponentProperty.INPUT_CONTIGUOUS | ComponentProperty.OUTPUT_CONTIGUOUS
        if not self.test_mode:
            props |= ComponentProperty.USES_MEMO | ComponentProperty.STORES_STATS
        return props

    # =========================================================================
    # Derived transform
    # =========================================================================

    def _compute_derived(self) -> None:
        if self.count <= 0:
            self._offset = self._scale = None
            return
        self._offset, self._scale = compute_offset_and_scale(
            self.count, self.config.epsilon, self.config.target_rms,
            self.stats_sum, self.stats_sumsq,
        )

    def _invalidate_derived(self) -> None:
        self._offset = self._scale = None
        if self.test_mode:
            self._compute_derived()

    def offset_and_scale(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Return the (offset, scale) implied by the stored stats."""
        if self._scale is None:
            if self.count <= 0:
                raise ComponentError(
                    f"{self.type_name}: no stored statistics (count is zero); "
                    f"cannot compute the test-mode transform"
                )
            self._compute_derived()
        return self._offset, self._scale

    def set_test_mode(self, test_mode: bool) -> None:
        super().set_test_mode(test_mode)
        if self.test_mode:
            if self.count <= 0:
                logger.warning(
                    f"{self.type_name}: test mode set with no stored statistics; "
                    f"propagate will fail until statistics are added"
                )
            self._compute_derived()
        else:
            self._offset = self._scale = None
        logger.info(f"{self.type_name}: test_mode={self.test_mode}, count={self.count}")

    # =========================================================================
    # Forward / backward
    # =========================================================================

    def propagate(self, in_value: torch.Tensor) -> Tuple[torch.Tensor, Optional[BatchNormMemo]]:
        self._check_input(in_value)
        x = as_blocks(in_value, self.config.block_dim)

        if self.test_mode:
            offset, scale = self.offset_and_scale()
            return apply_affine(x, scale, offset).view(in_value.shape), None

        if x.shape[0] == 0:
            raise ComponentError(f"{self.type_name}: cannot normalize an empty minibatch")
        count, stats_sum, stats_sumsq = minibatch_stats(x)
        offset, scale = compute_offset_and_scale(
            count, self.config.epsilon, self.config.target_rms, stats_sum, stats_sumsq)
        memo = BatchNormMemo(
            component_type=self.type_name,
            block_dim=self.config.block_dim,
            num_frames=count,
            mean=stats_sum / count,
            uvar=stats_sumsq / count,
            scale=scale,
            offset=offset,
        )
        return apply_affine(x, scale, offset).view(in_value.shape), memo

    def backprop(
        self,
        in_value: Optional[torch.Tensor],
        out_value: Optional[torch.Tensor],
        out_deriv: torch.Tensor,
        memo: Optional[BatchNormMemo] = None,
        to_update: Optional[Component] = None,
    ) -> torch.Tensor:
        self._check_input(out_deriv)
        block_dim = self.config.block_dim
        g = as_blocks(out_deriv, block_dim)

        if self.test_mode:
            _, scale = self.offset_and_scale()
            return (g * scale.to(g)).view(out_deriv.shape)

        if out_value is None:
            raise ComponentError(f"{self.type_name}: backprop needs the output value")
        self._check_input(out_value)
        memo = self._check_memo(memo, num_frames(out_deriv, block_dim), "backprop")
        y = as_blocks(out_value, block_dim)

        # y = (x - mean) * scale, and mean and var depend on every row, so
        #   dx = scale * (dy - mean(dy) - y * mean(dy * y) / target_rms^2)
        target_rms = self.config.target_rms
        mean_g = g.mean(dim=0)
        mean_gy = (g * y).mean(dim=0) / (target_rms * target_rms)
        in_deriv = (g - mean_g - y * mean_gy) * memo.scale.to(g)
        return in_deriv.view(out_deriv.shape)

    # =========================================================================
    # Statistics
    # =========================================================================

    def store_stats(
        self,
        in_value: torch.Tensor,
        out_value: torch.Tensor,
        memo: Optional[BatchNormMemo] = None,
    ) -> None:
        if self.test_mode:
            raise ComponentError(f"{self.type_name}: statistics are frozen in test mode")
        frames = None if in_value is None else num_frames(in_value, self.config.block_dim)
        memo = self._check_memo(memo, frames, "store_stats")
        self.count += memo.num_frames
        self.stats_sum += memo.num_frames * memo.mean.to(self.stats_sum)
        self.stats_sumsq += memo.num_frames * memo.uvar.to(self.stats_sumsq)
        self._invalidate_derived()
        logger.debug(f"{self.type_name}: stored {memo.num_frames} frames, count={self.count}")

    def scale(self, alpha: float) -> None:
        if alpha == 0:
            self.zero_stats()
            return
        self.count *= alpha
        self.stats_sum *= alpha
        self.stats_sumsq *= alpha
        self._invalidate_derived()

    def add(self, alpha: float, other: Component) -> None:
        if not isinstance(other, BatchNormalizer) or other.block_dim != self.block_dim:
            raise ComponentError(f"{self.type_name}: cannot add {other.info()}")
        self.count += alpha * other.count
        self.stats_sum += alpha * other.stats_sum.to(self.stats_sum)
        self.stats_sumsq += alpha * other.stats_sumsq.to(self.stats_sumsq)
        self._invalidate_derived()

    def zero_stats(self) -> None:
        self.count = 0.0
        self.stats_sum.zero_()
        self.stats_sumsq.zero_()
        self._invalidate_derived()

    # =========================================================================
    # Description and persistence
    # =========================================================================

    def info(self) -> str:
        text = (
            f"{self.type_name}, dim={self.config.dim}, block-dim={self.config.block_dim}, "
            f"epsilon={self.config.epsilon}, target-rms={self.config.target_rms}, "
            f"count={self.count}, test-mode={str(self.test_mode).lower()}"
        )
        if self.count > 0:
            mean = self.stats_sum / self.count
            var = (self.stats_sumsq / self.count - mean * mean).clamp_min(0.0)
            text += (f", data-mean-abs={mean.abs().mean().item():.4g}"
                     f", data-stddev={var.sqrt().mean().item():.4g}")
        return text

    def state_dict(self) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
        metadata = {
            "type": self.type_name,
            "config": self.config.to_config_line(),
            "test_mode": self.test_mode,
            "count": self.count,
        }
        tensors = {
            "stats_sum": self.stats_sum.clone(),
            "stats_sumsq": self.stats_sumsq.clone(),
        }
        return metadata, tensors

    @classmethod
    def from_state(
        cls,
        metadata: Dict[str, Any],
        tensors: Dict[str, torch.Tensor],
    ) -> "BatchNormalizer":
        component = cls(BatchNormConfig.from_config_line(ConfigLine.parse(metadata["config"])))
        for name in ("stats_sum", "stats_sumsq"):
            if name not in tensors:
                raise SerializationError(f"{cls.type_name}: missing tensor {name!r}")
            if tensors[name].shape != (component.block_dim,):
                raise SerializationError(
                    f"{cls.type_name}: {name} has shape {tuple(tensors[name].shape)}, "
                    f"expected ({component.block_dim},)"
                )
            setattr(component, name, tensors[name].to(STATS_DTYPE).clone())
        component.count = float(metadata["count"])
        component.set_test_mode(bool(metadata["test_mode"]))
        return component
