"""
Capability contracts for a deserialization strategy.

A deserialization library decides four things the core analysis cannot know
on its own:

- which classes the library is willing to instantiate (serializability),
- which methods it invokes on attacker-chosen objects (sources),
- which concrete methods a virtual call may land on (implementations),
- which callee/argument pairs are dangerous to reach (sinks).

Each is a small abstract base class; a ``GIConfig`` bundles factories for
all four under a strategy name.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Set

from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import (
    ClassReference,
    MethodHandle,
    MethodReference,
    Source,
)


class SerializableDecider(ABC):
    """Decides whether a class can appear in a deserialized object graph."""

    @abstractmethod
    def apply(self, class_name: str) -> Optional[bool]:
        """True/False when decided, None when the class is unknown."""


class ImplementationFinder(ABC):
    """Resolves the concrete methods a call to ``target`` may dispatch to."""

    @abstractmethod
    def get_implementations(self, target: MethodHandle) -> Set[MethodHandle]:
        ...


class SinkPredicate(ABC):
    """Decides whether reaching ``method`` with taint on ``arg_index`` is dangerous."""

    @abstractmethod
    def is_sink(self, method: MethodHandle, arg_index: int,
                inheritance: InheritanceMap) -> bool:
        ...


class SourceDiscovery(ABC):
    """Enumerates entry points the deserializer invokes on attacker-controlled objects."""

    def __init__(self) -> None:
        self._sources: List[Source] = []

    def add_discovered_source(self, source: Source) -> None:
        self._sources.append(source)

    @property
    def sources(self) -> List[Source]:
        return list(self._sources)

    def discover(
        self,
        class_map: Mapping[str, ClassReference],
        method_map: Mapping[MethodHandle, MethodReference],
        inheritance: InheritanceMap,
    ) -> List[Source]:
        self._sources = []
        self._discover(class_map, method_map, inheritance)
        return self.sources

    @abstractmethod
    def _discover(
        self,
        class_map: Mapping[str, ClassReference],
        method_map: Mapping[MethodHandle, MethodReference],
        inheritance: InheritanceMap,
    ) -> None:
        ...


class GIConfig(ABC):
    """A named deserialization strategy."""

    name: str = ""

    @abstractmethod
    def get_serializable_decider(
        self,
        method_map: Mapping[MethodHandle, MethodReference],
        inheritance: InheritanceMap,
    ) -> SerializableDecider:
        ...

    @abstractmethod
    def get_implementation_finder(
        self,
        method_map: Mapping[MethodHandle, MethodReference],
        method_impls: Mapping[MethodHandle, Set[MethodHandle]],
        inheritance: InheritanceMap,
    ) -> ImplementationFinder:
        ...

    @abstractmethod
    def get_source_discovery(self) -> SourceDiscovery:
        ...

    @abstractmethod
    def get_sink_predicate(self) -> SinkPredicate:
        ...


class DecisionCache(SerializableDecider):
    """
    Memoizes another decider.

    Only definite answers are cached; an unknown class is asked again, so a
    later, better-informed answer is never shadowed by an early ``None``.
    """

    def __init__(self, delegate: SerializableDecider):
        self.delegate = delegate
        self._cache: Dict[str, bool] = {}

    def apply(self, class_name: str) -> Optional[bool]:
        cached = self._cache.get(class_name)
        if cached is not None:
            return cached
        decision = self.delegate.apply(class_name)
        if decision is not None:
            self._cache[class_name] = decision
        return decision
