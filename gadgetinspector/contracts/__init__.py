"""
Deserialization strategies.

Strategies are registered by name; ``get_config`` returns a fresh instance
so no state leaks between analysis runs.
"""

from typing import Callable, Dict, List, Optional

from gadgetinspector.contracts.base import (
    DecisionCache,
    GIConfig,
    ImplementationFinder,
    SerializableDecider,
    SinkPredicate,
    SourceDiscovery,
)
from gadgetinspector.contracts.javaserial import JavaDeserializationConfig

_CONFIGS: Dict[str, Callable[[], GIConfig]] = {}


def register_config(name: str, factory: Callable[[], GIConfig]) -> None:
    _CONFIGS[name] = factory


def get_config(name: str) -> Optional[GIConfig]:
    factory = _CONFIGS.get(name)
    return factory() if factory is not None else None


def list_configs() -> List[str]:
    return sorted(_CONFIGS)


register_config(JavaDeserializationConfig.name, JavaDeserializationConfig)

__all__ = [
    "DecisionCache",
    "GIConfig",
    "ImplementationFinder",
    "SerializableDecider",
    "SinkPredicate",
    "SourceDiscovery",
    "JavaDeserializationConfig",
    "register_config",
    "get_config",
    "list_configs",
]
