"""
statnorm: normalization layers for trainable computation graphs
================================================================

Three components sharing one call surface (propagate / backprop /
store_stats / scale / add / zero_stats / set_test_mode):

- StaticNormalizer: stateless rms normalization
- BatchNormalizer: minibatch statistics in training, running totals in test mode
- MemoryNormalizer: moving-average statistics with an indirect derivative term
"""

__version__ = "0.1.0"

from statnorm.components import (
    BatchNormalizer,
    Component,
    ComponentError,
    ComponentProperty,
    ComponentRegistry,
    ConfigError,
    MemoError,
    MemoryNormalizer,
    SerializationError,
    StaticNormalizer,
)
from statnorm.config import BatchNormConfig, ConfigLine, MemoryNormConfig, StaticNormConfig
from statnorm.io import load_component, load_components, save_component, save_components

__all__ = [
    "BatchNormalizer",
    "BatchNormConfig",
    "Component",
    "ComponentError",
    "ComponentProperty",
    "ComponentRegistry",
    "ConfigError",
    "ConfigLine",
    "MemoError",
    "MemoryNormalizer",
    "MemoryNormConfig",
    "SerializationError",
    "StaticNormalizer",
    "StaticNormConfig",
    "load_component",
    "load_components",
    "save_component",
    "save_components",
]
