"""
Shared, per-run state for the interpretation passes.

Everything the passes memoize (serializability answers, field lookups) lives
on one ``AnalysisContext`` owned by the run, never in module globals, so
two analyses in the same process cannot observe each other's caches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set, Tuple

from gadgetinspector.contracts.base import SerializableDecider
from gadgetinspector.frontend.classfile import ACC_TRANSIENT
from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import ClassReference, MethodHandle
from gadgetinspector.semantics.dataflow_table import DataflowTable

logger = logging.getLogger(__name__)


class SerializabilityOracle:
    """
    Answers "could an instance of this static type be attacker-supplied?".

    True when the decider accepts the class itself or any known descendant
    (a field typed ``Object`` can hold any serializable object).
    """

    def __init__(self, decider: SerializableDecider, inheritance: InheritanceMap):
        self.decider = decider
        self.inheritance = inheritance
        self._cache: Dict[str, bool] = {}

    def could_be_serialized(self, class_name: str) -> bool:
        cached = self._cache.get(class_name)
        if cached is not None:
            return cached
        result = self.decider.apply(class_name) is True
        if not result:
            for subclass in self.inheritance.get_sub_classes(class_name) or ():
                if self.decider.apply(subclass) is True:
                    result = True
                    break
        self._cache[class_name] = result
        return result


@dataclass
class AnalysisContext:
    class_map: Mapping[str, ClassReference]
    inheritance: InheritanceMap
    serializability: SerializabilityOracle
    dataflow: DataflowTable = field(default_factory=DataflowTable.jdk_defaults)
    passthrough: Dict[MethodHandle, Set[int]] = field(default_factory=dict)
    _transient_cache: Dict[Tuple[str, str], bool] = field(default_factory=dict, repr=False)

    def is_field_transient(self, owner: str, name: str) -> bool:
        """
        Whether the field ``name`` seen through ``owner`` is declared transient.

        The owner's superclass chain is searched and the first declaration
        wins; a field that cannot be found is treated as non-transient.
        """
        key = (owner, name)
        cached = self._transient_cache.get(key)
        if cached is not None:
            return cached
        transient = False
        current: Optional[str] = owner
        seen = set()
        while current is not None and current not in seen:
            seen.add(current)
            ref = self.class_map.get(current)
            if ref is None:
                break
            member = ref.find_member(name)
            if member is not None:
                transient = bool(member.modifiers & ACC_TRANSIENT)
                break
            current = ref.superclass
        self._transient_cache[key] = transient
        return transient

    def is_field_untaintable(self, owner: str, name: str, type_name: str) -> bool:
        """Reading this field cannot yield attacker data from the receiver."""
        if not self.serializability.could_be_serialized(type_name):
            return True
        return self.is_field_transient(owner, name)
