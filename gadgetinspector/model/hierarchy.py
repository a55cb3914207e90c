"""
Class hierarchy index.

Derives, for every class in the model, the transitive set of known
supertypes (superclass chain plus interfaces, recursively) and inverts it
into a descendant map.  Supertypes that are not part of the class model are
dead ends: they are neither recorded nor followed.

Also computes the override sets used for polymorphic dispatch during the
chain search: for each instance method, the methods with the same name and
descriptor declared by descendants of its class.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from gadgetinspector.model.references import ClassReference, MethodHandle, MethodReference

logger = logging.getLogger(__name__)


class InheritanceMap:
    """Ancestor and descendant sets keyed by internal class name."""

    def __init__(self, ancestors: Mapping[str, Iterable[str]]):
        self._ancestors: Dict[str, Set[str]] = {
            name: set(parents) for name, parents in ancestors.items()
        }
        self._descendants: Dict[str, Set[str]] = {}
        for name, parents in self._ancestors.items():
            for parent in parents:
                self._descendants.setdefault(parent, set()).add(name)

    def is_subclass_of(self, name: str, ancestor: str) -> bool:
        parents = self._ancestors.get(name)
        return parents is not None and ancestor in parents

    def get_super_classes(self, name: str) -> Optional[Set[str]]:
        """Known ancestors of ``name``, or None if the class is not in the model."""
        parents = self._ancestors.get(name)
        return None if parents is None else set(parents)

    def get_sub_classes(self, name: str) -> Optional[Set[str]]:
        """Known descendants of ``name``, or None if nothing extends it."""
        children = self._descendants.get(name)
        return None if children is None else set(children)

    def __contains__(self, name: str) -> bool:
        return name in self._ancestors

    def __len__(self) -> int:
        return len(self._ancestors)

    def items(self) -> Iterator[Tuple[str, Set[str]]]:
        for name, parents in self._ancestors.items():
            yield name, set(parents)


def _immediate_parents(ref: ClassReference) -> List[str]:
    parents = [ref.superclass] if ref.superclass is not None else []
    parents.extend(ref.interfaces)
    return parents


def _all_parents(ref: ClassReference, class_map: Mapping[str, ClassReference]) -> Set[str]:
    found: Set[str] = set()
    pending = [ref]
    while pending:
        current = pending.pop()
        for parent_name in _immediate_parents(current):
            parent = class_map.get(parent_name)
            if parent is None:
                logger.debug("No class id for %s", parent_name)
                continue
            if parent_name in found:
                continue
            found.add(parent_name)
            pending.append(parent)
    # Cyclic hierarchies only arise from broken classpaths
    found.discard(ref.name)
    return found


def derive_inheritance(class_map: Mapping[str, ClassReference]) -> InheritanceMap:
    """Build the ancestor/descendant index for every class in ``class_map``."""
    logger.debug("Calculating inheritance for %d classes...", len(class_map))
    ancestors = {name: _all_parents(ref, class_map) for name, ref in class_map.items()}
    return InheritanceMap(ancestors)


def get_all_method_implementations(
    inheritance: InheritanceMap,
    method_map: Mapping[MethodHandle, MethodReference],
) -> Dict[MethodHandle, Set[MethodHandle]]:
    """Map each instance method to the overrides declared by descendant classes."""
    methods_by_class: Dict[str, List[MethodHandle]] = {}
    for handle in method_map:
        methods_by_class.setdefault(handle.class_name, []).append(handle)

    implementations: Dict[MethodHandle, Set[MethodHandle]] = {}
    for handle, method in method_map.items():
        if method.is_static:
            continue
        subclasses = inheritance.get_sub_classes(handle.class_name)
        if not subclasses:
            continue
        overriding = set()
        for subclass in subclasses:
            for candidate in methods_by_class.get(subclass, ()):
                if candidate.name == handle.name and candidate.desc == handle.desc:
                    overriding.add(candidate)
        if overriding:
            implementations[handle] = overriding
    return implementations
