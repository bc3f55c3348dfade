"""Save and load components as safetensors files.

Statistics are stored as tensors named ``<component>.<tensor>``; the type,
config line, test mode and scalar counts of each component are stored as
JSON in the safetensors header metadata.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Union

from safetensors import safe_open
from safetensors.torch import save_file

from statnorm import __version__
from statnorm.components.base import Component, ComponentRegistry, SerializationError

logger = logging.getLogger(__name__)

FORMAT_NAME = "statnorm"
DEFAULT_NAME = "component"
_RESERVED_KEYS = ("format", "version", "components")


def save_components(components: Dict[str, Component], path: Union[str, Path]) -> Path:
    """Write several named components to one file.

    Args:
        components: Map from name to component (names may not contain '.')
        path: Output .safetensors path

    Returns:
        The path written
    """
    path = Path(path)
    metadata = {
        "format": FORMAT_NAME,
        "version": __version__,
        "components": json.dumps(list(components)),
    }
    tensors = {}
    for name, component in components.items():
        if not name or "." in name or name in _RESERVED_KEYS:
            raise ValueError(f"Invalid component name {name!r}")
        component_meta, component_tensors = component.state_dict()
        metadata[name] = json.dumps(component_meta)
        for tensor_name, tensor in component_tensors.items():
            tensors[f"{name}.{tensor_name}"] = tensor.detach().cpu().contiguous()

    path.parent.mkdir(parents=True, exist_ok=True)
    save_file(tensors, str(path), metadata=metadata)
    logger.info(f"Saved {len(components)} component(s) to {path}")
    return path


def load_components(path: Union[str, Path]) -> Dict[str, Component]:
    """Read back every component written by ``save_components``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Component file not found: {path}")

    with safe_open(str(path), framework="pt") as f:
        metadata = f.metadata() or {}
        if metadata.get("format") != FORMAT_NAME:
            raise SerializationError(f"{path} is not a {FORMAT_NAME} file")
        all_tensors = {key: f.get_tensor(key) for key in f.keys()}

    components = {}
    for name in json.loads(metadata["components"]):
        if name not in metadata:
            raise SerializationError(f"{path}: no metadata for component {name!r}")
        component_meta = json.loads(metadata[name])
        component_class = ComponentRegistry.get(component_meta.get("type", ""))
        if component_class is None:
            raise SerializationError(
                f"{path}: unknown component type {component_meta.get('type')!r}")
        prefix = f"{name}."
        tensors = {
            key[len(prefix):]: tensor
            for key, tensor in all_tensors.items()
            if key.startswith(prefix)
        }
        components[name] = component_class.from_state(component_meta, tensors)

    logger.info(f"Loaded {len(components)} component(s) from {path}")
    return components


def save_component(component: Component, path: Union[str, Path]) -> Path:
    return save_components({DEFAULT_NAME: component}, path)


def load_component(path: Union[str, Path]) -> Component:
    components = load_components(path)
    if len(components) != 1:
        raise SerializationError(
            f"{path} holds {len(components)} components; use load_components()")
    return next(iter(components.values()))
