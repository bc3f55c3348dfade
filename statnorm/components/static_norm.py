"""Stateless root-mean-square normalization.

Implements, separately for each block ``x`` of ``block_dim`` elements::

    y = x * (sqrt(block_dim) * target_rms) / |x|

where ``|x|`` is the 2-norm, so the rms of each output block is
``target_rms``.  If ``add_log_stddev`` is set an extra element
``log(|x| / sqrt(block_dim))`` follows each output block.
"""

import math
from typing import Any, Dict, Optional, Tuple

import torch

from statnorm.components.base import (
    Component,
    ComponentError,
    ComponentProperty,
    Memo,
    register_component,
)
from statnorm.components.stats import as_blocks
from statnorm.config import ConfigLine, StaticNormConfig

# 2^-66 (about 1.4e-20): exactly representable in float32, and so is its
# inverse square root 2^33.
SQUARED_NORM_FLOOR = 2.0 ** -66


@register_component
class StaticNormalizer(Component):
    """Rescales each input block to a fixed root-mean-square.

    Args:
        config: StaticNormConfig
    """

    type_name = "StaticNormalizer"

    def __init__(self, config: StaticNormConfig):
        super().__init__()
        self.config = config

    @classmethod
    def from_config(cls, config: StaticNormConfig) -> "StaticNormalizer":
        return cls(config)

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "StaticNormalizer":
        return cls(StaticNormConfig.from_config_line(cfl))

    @property
    def block_dim(self) -> int:
        return self.config.block_dim

    @property
    def input_dim(self) -> int:
        return self.config.dim

    @property
    def output_dim(self) -> int:
        extra = self.config.dim // self.config.block_dim if self.config.add_log_stddev else 0
        return self.config.dim + extra

    def properties(self) -> ComponentProperty:
        props = ComponentProperty.SIMPLE | ComponentProperty.BACKPROP_NEEDS_INPUT
        if not self.config.add_log_stddev:
            props |= ComponentProperty.PROPAGATE_IN_PLACE | ComponentProperty.BACKPROP_IN_PLACE
        if self.config.block_dim != self.config.dim:
            props |= ComponentProperty.INPUT_CONTIGUOUS | ComponentProperty.OUTPUT_CONTIGUOUS
        return props

    def _norm_factor(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Return (raw squared norm, floored squared norm, rescale factor) per block row.

        Computed in at least float32: in half precision the floor rounds to
        zero and ``x * x`` underflows.
        """
        x = x.to(torch.promote_types(x.dtype, torch.float32))
        sumsq = (x * x).sum(dim=1)
        n2 = sumsq.clamp_min(SQUARED_NORM_FLOOR)
        factor = (self.config.target_rms * math.sqrt(self.config.block_dim)) * torch.rsqrt(n2)
        return sumsq, n2, factor

    def propagate(self, in_value: torch.Tensor) -> Tuple[torch.Tensor, Optional[Memo]]:
        self._check_input(in_value)
        block_dim = self.config.block_dim
        x = as_blocks(in_value, block_dim)
        _, n2, factor = self._norm_factor(x)
        # An all-zero block stays exactly zero: the floor keeps factor finite.
        y = x.to(factor.dtype) * factor.unsqueeze(1)
        if self.config.add_log_stddev:
            log_stddev = 0.5 * torch.log(n2 / block_dim)
            y = torch.cat([y, log_stddev.unsqueeze(1)], dim=1)
        return y.to(in_value.dtype).reshape(in_value.shape[0], self.output_dim), None

    def backprop(
        self,
        in_value: Optional[torch.Tensor],
        out_value: Optional[torch.Tensor],
        out_deriv: torch.Tensor,
        memo: Optional[Memo] = None,
        to_update: Optional[Component] = None,
    ) -> torch.Tensor:
        if in_value is None:
            raise ComponentError(f"{self.type_name}: backprop needs the input value")
        self._check_input(in_value)
        self._check_input(out_deriv, self.output_dim)
        block_dim = self.config.block_dim
        x = as_blocks(in_value, block_dim)
        sumsq, n2, factor = self._norm_factor(x)
        x = x.to(factor.dtype)
        if self.config.add_log_stddev:
            g_all = out_deriv.contiguous().view(-1, block_dim + 1).to(factor.dtype)
            g, g_log = g_all[:, :block_dim], g_all[:, block_dim]
        else:
            g, g_log = as_blocks(out_deriv, block_dim).to(factor.dtype), None

        # d factor / d x = -factor * x / n2, only where the floor is inactive.
        coeff = -factor * (g * x).sum(dim=1)
        if g_log is not None:
            coeff = coeff + g_log
        coeff = torch.where(sumsq > SQUARED_NORM_FLOOR, coeff / n2, torch.zeros_like(coeff))
        in_deriv = g * factor.unsqueeze(1) + x * coeff.unsqueeze(1)
        return in_deriv.to(out_deriv.dtype).reshape(in_value.shape)

    def info(self) -> str:
        return (
            f"{self.type_name}, input-dim={self.input_dim}, output-dim={self.output_dim}, "
            f"block-dim={self.config.block_dim}, target-rms={self.config.target_rms}, "
            f"add-log-stddev={str(self.config.add_log_stddev).lower()}"
        )

    def state_dict(self) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
        return {"type": self.type_name, "config": self.config.to_config_line()}, {}

    @classmethod
    def from_state(
        cls,
        metadata: Dict[str, Any],
        tensors: Dict[str, torch.Tensor],
    ) -> "StaticNormalizer":
        return cls(StaticNormConfig.from_config_line(ConfigLine.parse(metadata["config"])))
