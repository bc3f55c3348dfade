"""Configuration for normalization components.

Components are configured from a line of ``key=value`` tokens, e.g.::

    type=BatchNormalizer dim=512 block-dim=64 epsilon=0.001 target-rms=1.0
"""

import dataclasses
from typing import Dict, Optional, Set

from statnorm.components.base import ConfigError

_TRUE_STRINGS = ("true", "1", "yes")
_FALSE_STRINGS = ("false", "0", "no")


class ConfigLine:
    """A parsed line of ``key=value`` configuration tokens.

    Keys are tracked as they are read so that leftover (misspelled or
    unsupported) keys can be reported.
    """

    def __init__(self, values: Dict[str, str], component_type: Optional[str] = None):
        self.values = dict(values)
        self.component_type = component_type
        self._used: Set[str] = set()

    @classmethod
    def parse(cls, line: str) -> "ConfigLine":
        values: Dict[str, str] = {}
        component_type = None
        for token in line.split():
            key, sep, value = token.partition("=")
            if not sep or not key or not value:
                raise ConfigError(f"Malformed config token {token!r} in {line!r}")
            if key == "type":
                component_type = value
                continue
            if key in values:
                raise ConfigError(f"Duplicate config key {key!r} in {line!r}")
            values[key] = value
        return cls(values, component_type)

    def has(self, key: str) -> bool:
        return key in self.values

    def get_str(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if key not in self.values:
            return default
        self._used.add(key)
        return self.values[key]

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        value = self.get_str(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Expected an integer for {key}, got {value!r}") from None

    def get_float(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.get_str(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"Expected a number for {key}, got {value!r}") from None

    def get_bool(self, key: str, default: Optional[bool] = None) -> Optional[bool]:
        value = self.get_str(key)
        if value is None:
            return default
        if value.lower() in _TRUE_STRINGS:
            return True
        if value.lower() in _FALSE_STRINGS:
            return False
        raise ConfigError(f"Expected true or false for {key}, got {value!r}")

    def unused_keys(self):
        return sorted(set(self.values) - self._used)

    def check_all_used(self) -> None:
        unused = self.unused_keys()
        if unused:
            raise ConfigError(
                "Could not process these config values: "
                + " ".join(f"{k}={self.values[k]}" for k in unused)
            )


def _read_dim(cfl: ConfigLine) -> int:
    dim = cfl.get_int("dim")
    input_dim = cfl.get_int("input-dim")
    if dim is None and input_dim is None:
        raise ConfigError("'dim' (or 'input-dim') must be specified")
    if dim is not None and input_dim is not None and dim != input_dim:
        raise ConfigError(f"'dim'={dim} and 'input-dim'={input_dim} disagree")
    return dim if dim is not None else input_dim


@dataclasses.dataclass
class NormConfig:
    """Options shared by all normalization components.

    Attributes:
        dim: Input dimension
        block_dim: Positive divisor of ``dim``; each block is normalized
            separately (defaults to ``dim``)
        target_rms: Root-mean-square (or standard deviation) of the output
    """
    dim: int
    block_dim: Optional[int] = None
    target_rms: float = 1.0

    def __post_init__(self):
        if self.block_dim is None:
            self.block_dim = self.dim
        if self.dim <= 0:
            raise ConfigError(f"dim must be positive, got {self.dim}")
        if self.block_dim <= 0 or self.dim % self.block_dim != 0:
            raise ConfigError(
                f"block-dim={self.block_dim} must be a positive divisor of dim={self.dim}"
            )
        if not self.target_rms > 0:
            raise ConfigError(f"target-rms must be positive, got {self.target_rms}")

    @classmethod
    def _common_kwargs(cls, cfl: ConfigLine) -> Dict[str, object]:
        kwargs = {"dim": _read_dim(cfl)}
        block_dim = cfl.get_int("block-dim")
        if block_dim is not None:
            kwargs["block_dim"] = block_dim
        target_rms = cfl.get_float("target-rms")
        if target_rms is not None:
            kwargs["target_rms"] = target_rms
        return kwargs

    def to_config_line(self) -> str:
        parts = []
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if isinstance(value, bool):
                value = "true" if value else "false"
            parts.append(f"{field.name.replace('_', '-')}={value}")
        return " ".join(parts)


@dataclasses.dataclass
class StaticNormConfig(NormConfig):
    """Config for StaticNormalizer.

    Attributes:
        add_log_stddev: Append log(rms of the input) to each output block
    """
    add_log_stddev: bool = False

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "StaticNormConfig":
        kwargs = cls._common_kwargs(cfl)
        kwargs["add_log_stddev"] = cfl.get_bool("add-log-stddev", False)
        cfl.check_all_used()
        return cls(**kwargs)


@dataclasses.dataclass
class BatchNormConfig(NormConfig):
    """Config for BatchNormalizer.

    Attributes:
        epsilon: Added to the variance to avoid division by zero
    """
    epsilon: float = 1.0e-03

    def __post_init__(self):
        super().__post_init__()
        if not self.epsilon > 0:
            raise ConfigError(f"epsilon must be positive, got {self.epsilon}")

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "BatchNormConfig":
        kwargs = cls._common_kwargs(cfl)
        epsilon = cfl.get_float("epsilon")
        if epsilon is not None:
            kwargs["epsilon"] = epsilon
        cfl.check_all_used()
        return cls(**kwargs)


@dataclasses.dataclass
class MemoryNormConfig(BatchNormConfig):
    """Config for MemoryNormalizer.

    Attributes:
        include_indirect_derivative: Include the derivative term that flows
            through the mean and variance estimates
    """
    include_indirect_derivative: bool = True

    @classmethod
    def from_config_line(cls, cfl: ConfigLine) -> "MemoryNormConfig":
        kwargs = cls._common_kwargs(cfl)
        epsilon = cfl.get_float("epsilon")
        if epsilon is not None:
            kwargs["epsilon"] = epsilon
        kwargs["include_indirect_derivative"] = cfl.get_bool(
            "include-indirect-derivative", True)
        cfl.check_all_used()
        return cls(**kwargs)
