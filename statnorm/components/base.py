"""Component abstract base class, property flags, memos and registry.

Every normalizer exposes the same call surface to the executor:

- ``propagate(in_value) -> (out_value, memo)``
- ``backprop(in_value, out_value, out_deriv, memo, to_update) -> in_deriv``
- ``store_stats(in_value, out_value, memo)``
- ``scale(alpha)`` / ``add(alpha, other)`` / ``zero_stats()``
- ``set_test_mode(test_mode)``
"""

import copy
import dataclasses
import logging
from abc import ABC, abstractmethod
from enum import IntFlag
from typing import Any, Dict, Optional, Set, Tuple

import torch

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Missing or invalid configuration value."""


class ComponentError(RuntimeError):
    """A component was used in a way its current state does not allow."""


class MemoError(ComponentError):
    """A memo was missing, already released, or belongs to another call."""


class SerializationError(ValueError):
    """A persisted component could not be read back."""


class ComponentProperty(IntFlag):
    """Capabilities and requirements the executor consults."""
    NONE = 0
    SIMPLE = 0x001                 # each output row depends on the matching input row
    PROPAGATE_IN_PLACE = 0x002     # input and output may share storage in propagate
    BACKPROP_IN_PLACE = 0x004      # out_deriv and in_deriv may share storage
    BACKPROP_NEEDS_INPUT = 0x008
    BACKPROP_NEEDS_OUTPUT = 0x010
    USES_MEMO = 0x020
    STORES_STATS = 0x040
    INPUT_CONTIGUOUS = 0x080
    OUTPUT_CONTIGUOUS = 0x100


@dataclasses.dataclass
class Memo:
    """State handed from ``propagate`` to the paired ``backprop``/``store_stats``.

    Attributes:
        component_type: ``type_name`` of the component that produced it
        block_dim: Block dimension the statistics were computed at
        num_frames: Number of rows after reshaping to ``block_dim`` columns
        released: Set by ``Component.delete_memo``
        used_by: Calls (``backprop``, ``store_stats``) that have consumed it
    """
    component_type: str
    block_dim: int
    num_frames: int
    released: bool = dataclasses.field(default=False, init=False)
    used_by: Set[str] = dataclasses.field(default_factory=set, init=False)


class Component(ABC):
    """Base class for normalization components."""

    type_name: str = "Component"

    def __init__(self):
        self.test_mode = False

    # =========================================================================
    # Dimensions and properties
    # =========================================================================

    @property
    @abstractmethod
    def input_dim(self) -> int:
        pass

    @property
    @abstractmethod
    def output_dim(self) -> int:
        pass

    @abstractmethod
    def properties(self) -> ComponentProperty:
        """Return the flags describing this component in its current mode."""
        pass

    def propagate_in_place(self) -> bool:
        return bool(self.properties() & ComponentProperty.PROPAGATE_IN_PLACE)

    def backprop_in_place(self) -> bool:
        return bool(self.properties() & ComponentProperty.BACKPROP_IN_PLACE)

    def uses_memo(self) -> bool:
        return bool(self.properties() & ComponentProperty.USES_MEMO)

    def stores_stats(self) -> bool:
        return bool(self.properties() & ComponentProperty.STORES_STATS)

    # =========================================================================
    # Call surface
    # =========================================================================

    @abstractmethod
    def propagate(self, in_value: torch.Tensor) -> Tuple[torch.Tensor, Optional[Memo]]:
        """Forward pass.

        Args:
            in_value: Input of shape [num_rows, input_dim]

        Returns:
            (out_value, memo): memo is None unless the component uses memos
            in its current mode
        """
        pass

    @abstractmethod
    def backprop(
        self,
        in_value: Optional[torch.Tensor],
        out_value: Optional[torch.Tensor],
        out_deriv: torch.Tensor,
        memo: Optional[Memo] = None,
        to_update: Optional["Component"] = None,
    ) -> torch.Tensor:
        """Backward pass.

        Args:
            in_value: Forward input (required if BACKPROP_NEEDS_INPUT)
            out_value: Forward output (required if BACKPROP_NEEDS_OUTPUT)
            out_deriv: Derivative of the objective w.r.t. the output
            memo: Memo returned by the matching ``propagate`` call
            to_update: Gradient accumulator receiving any derivative stats

        Returns:
            Derivative of the objective w.r.t. the input
        """
        pass

    def store_stats(
        self,
        in_value: torch.Tensor,
        out_value: torch.Tensor,
        memo: Optional[Memo] = None,
    ) -> None:
        """Accumulate the minibatch statistics carried by ``memo``."""
        pass

    def scale(self, alpha: float) -> None:
        pass

    def add(self, alpha: float, other: "Component") -> None:
        pass

    def zero_stats(self) -> None:
        pass

    def set_test_mode(self, test_mode: bool) -> None:
        self.test_mode = bool(test_mode)

    def delete_memo(self, memo: Optional[Memo]) -> None:
        """Release a memo; it cannot be used again afterwards."""
        if memo is not None:
            memo.released = True

    def copy(self) -> "Component":
        return copy.deepcopy(self)

    # =========================================================================
    # Description and persistence
    # =========================================================================

    @abstractmethod
    def info(self) -> str:
        pass

    @abstractmethod
    def state_dict(self) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
        """Return (metadata, tensors) describing config and statistics."""
        pass

    @classmethod
    @abstractmethod
    def from_state(
        cls,
        metadata: Dict[str, Any],
        tensors: Dict[str, torch.Tensor],
    ) -> "Component":
        pass

    # =========================================================================
    # Shared checks
    # =========================================================================

    def _check_input(self, in_value: torch.Tensor, dim: Optional[int] = None) -> None:
        dim = self.input_dim if dim is None else dim
        if in_value.dim() != 2 or in_value.shape[1] != dim:
            raise ComponentError(
                f"{self.type_name}: expected a matrix with {dim} columns, "
                f"got shape {tuple(in_value.shape)}"
            )

    def _check_memo(self, memo: Optional[Memo], num_frames: Optional[int], use: str) -> Memo:
        """Validate ``memo`` for one ``use`` (backprop or store_stats) and mark it consumed."""
        if memo is None:
            raise MemoError(f"{self.type_name}: a memo is required in training mode")
        if memo.released:
            raise MemoError(f"{self.type_name}: memo has already been released")
        if memo.component_type != self.type_name or memo.block_dim != self.block_dim:
            raise MemoError(
                f"{self.type_name}: memo was produced by {memo.component_type} "
                f"with block_dim={memo.block_dim}"
            )
        if num_frames is not None and memo.num_frames != num_frames:
            raise MemoError(
                f"{self.type_name}: memo covers {memo.num_frames} frames, "
                f"got {num_frames}"
            )
        if use in memo.used_by:
            raise MemoError(f"{self.type_name}: memo has already been used by {use}")
        memo.used_by.add(use)
        return memo

    def __repr__(self) -> str:
        return self.info()


class ComponentRegistry:
    """Component type registry."""

    _components: Dict[str, type] = {}

    @classmethod
    def register(cls, name: str, component_class: type):
        """Register a component type."""
        cls._components[name.lower()] = component_class

    @classmethod
    def get(cls, name: str) -> Optional[type]:
        """Look up a component class by type name."""
        return cls._components.get(name.lower())

    @classmethod
    def list_components(cls) -> Dict[str, type]:
        return cls._components.copy()

    @classmethod
    def create(cls, config_line: str) -> Component:
        """Build a component from a config line containing ``type=<Name>``."""
        from statnorm.config import ConfigLine

        cfl = ConfigLine.parse(config_line)
        type_name = cfl.component_type
        if type_name is None:
            raise ConfigError(f"No type=<ComponentType> in config line: {config_line!r}")
        component_class = cls.get(type_name)
        if component_class is None:
            raise ConfigError(
                f"Unknown component type {type_name!r}; "
                f"known types: {sorted(cls._components)}"
            )
        component = component_class.from_config_line(cfl)
        logger.debug(f"Created {component.info()}")
        return component


def register_component(component_class: type) -> type:
    """Class decorator registering a component under its ``type_name``."""
    ComponentRegistry.register(component_class.type_name, component_class)
    return component_class
