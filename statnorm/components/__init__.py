"""Normalization components.

Importing this package registers StaticNormalizer, BatchNormalizer and
MemoryNormalizer with the ComponentRegistry.
"""

from .base import (
    Component,
    ComponentError,
    ComponentProperty,
    ComponentRegistry,
    ConfigError,
    Memo,
    MemoError,
    SerializationError,
)
from .static_norm import StaticNormalizer
from .batch_norm import BatchNormalizer, BatchNormMemo
from .memory_norm import MemoryNormalizer, MemoryNormMemo

__all__ = [
    "Component",
    "ComponentError",
    "ComponentProperty",
    "ComponentRegistry",
    "ConfigError",
    "Memo",
    "MemoError",
    "SerializationError",
    "StaticNormalizer",
    "BatchNormalizer",
    "BatchNormMemo",
    "MemoryNormalizer",
    "MemoryNormMemo",
]
