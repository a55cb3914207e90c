"""
Java native serialization strategy (``ObjectInputStream``).

Serializable classes are those implementing ``java.io.Serializable``; the
entry points are the magic methods ``ObjectInputStream`` (and the
collections it rebuilds) call on freshly deserialized objects; sinks are a
table of JDK and library calls known to be dangerous with attacker data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional, Set

from gadgetinspector.contracts.base import (
    DecisionCache,
    GIConfig,
    ImplementationFinder,
    SerializableDecider,
    SinkPredicate,
    SourceDiscovery,
)
from gadgetinspector.frontend.descriptors import argument_types
from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import (
    ClassReference,
    MethodHandle,
    MethodReference,
    Source,
)

logger = logging.getLogger(__name__)

SERIALIZABLE = "java/io/Serializable"

BLACKLISTED_PREFIXES = ("com/google/common/collect/",)
BLACKLISTED_CLASSES = frozenset({
    "clojure/core/proxy$clojure/lang/APersistentMap$ff19274a",
    "clojure/inspector/proxy$javax/swing/table/AbstractTableModel$ff19274a",
})


class SimpleSerializableDecider(SerializableDecider):
    """Serializable iff a known subclass of ``java.io.Serializable`` and not blacklisted."""

    def __init__(self, inheritance: InheritanceMap):
        self.inheritance = inheritance

    def apply(self, class_name: str) -> Optional[bool]:
        if class_name in BLACKLISTED_CLASSES or class_name.startswith(BLACKLISTED_PREFIXES):
            return False
        if class_name not in self.inheritance:
            return None
        return self.inheritance.is_subclass_of(class_name, SERIALIZABLE)


class SimpleImplementationFinder(ImplementationFinder):
    """The target itself plus every override declared by a serializable class."""

    def __init__(self, decider: SerializableDecider,
                 method_impls: Mapping[MethodHandle, Set[MethodHandle]]):
        self.decider = decider
        self.method_impls = method_impls
        self._cache: Dict[MethodHandle, Set[MethodHandle]] = {}

    def get_implementations(self, target: MethodHandle) -> Set[MethodHandle]:
        cached = self._cache.get(target)
        if cached is not None:
            return set(cached)
        implementations = {target}
        for impl in self.method_impls.get(target, ()):
            if self.decider.apply(impl.class_name) is True:
                implementations.add(impl)
        self._cache[target] = implementations
        return set(implementations)


class SimpleSourceDiscovery(SourceDiscovery):
    """Magic methods the JDK deserializer invokes on reconstructed objects."""

    def _discover(
        self,
        class_map: Mapping[str, ClassReference],
        method_map: Mapping[MethodHandle, MethodReference],
        inheritance: InheritanceMap,
    ) -> None:
        decider = DecisionCache(SimpleSerializableDecider(inheritance))

        def serializable(class_name: str) -> bool:
            return decider.apply(class_name) is True

        for method in method_map:
            if serializable(method.class_name) and method.name == "finalize" and method.desc == "()V":
                self.add_discovered_source(Source(method, 0))

        # readObject receives the stream itself
        for method in method_map:
            if (serializable(method.class_name) and method.name == "readObject"
                    and method.desc == "(Ljava/io/ObjectInputStream;)V"):
                self.add_discovered_source(Source(method, 1))

        # Proxies dispatch through the handler whatever the declared interface
        for class_name in class_map:
            if serializable(class_name) and inheritance.is_subclass_of(
                    class_name, "java/lang/reflect/InvocationHandler"):
                method = MethodHandle(
                    class_name, "invoke",
                    "(Ljava/lang/Object;Ljava/lang/reflect/Method;[Ljava/lang/Object;)Ljava/lang/Object;")
                self.add_discovered_source(Source(method, 0))

        # HashMap and friends call these while rebuilding
        for method in method_map:
            if not serializable(method.class_name):
                continue
            if method.name == "hashCode" and method.desc == "()I":
                self.add_discovered_source(Source(method, 0))
            if method.name == "equals" and method.desc == "(Ljava/lang/Object;)Z":
                self.add_discovered_source(Source(method, 0))
                self.add_discovered_source(Source(method, 1))

        # Groovy closures can be invoked through a MethodClosure-backed proxy
        for method in method_map:
            if (serializable(method.class_name)
                    and inheritance.is_subclass_of(method.class_name, "groovy/lang/Closure")
                    and method.name in ("call", "doCall")):
                self.add_discovered_source(Source(method, 0))
                for i in range(len(argument_types(method.desc))):
                    self.add_discovered_source(Source(method, i + 1))


# ============================================================================
# Sinks
# ============================================================================

@dataclass(frozen=True)
class SinkRule:
    """
    One dangerous call.

    ``subclasses`` matches methods declared on proper subclasses of
    ``class_name`` instead of on the class itself.  ``arg_index`` requires
    taint on exactly that argument; ``min_arg_index`` on any argument at or
    above it.
    """
    class_name: str
    methods: FrozenSet[str]
    subclasses: bool = False
    arg_index: Optional[int] = None
    min_arg_index: Optional[int] = None

    def matches(self, method: MethodHandle, arg_index: int, inheritance: InheritanceMap) -> bool:
        if method.name not in self.methods:
            return False
        if self.subclasses:
            if not inheritance.is_subclass_of(method.class_name, self.class_name):
                return False
        elif method.class_name != self.class_name:
            return False
        if self.arg_index is not None and arg_index != self.arg_index:
            return False
        if self.min_arg_index is not None and arg_index < self.min_arg_index:
            return False
        return True


def _rule(class_name: str, *methods: str, **kwargs) -> SinkRule:
    return SinkRule(class_name, frozenset(methods), **kwargs)


JAVA_DESERIALIZATION_SINKS: List[SinkRule] = [
    _rule("java/io/FileInputStream", "<init>"),
    _rule("java/io/FileOutputStream", "<init>"),
    _rule("java/nio/file/Files", "newInputStream", "newOutputStream",
          "newBufferedReader", "newBufferedWriter"),
    _rule("java/lang/Runtime", "exec"),
    _rule("java/lang/reflect/Method", "invoke", arg_index=0),
    _rule("java/net/URLClassLoader", "newInstance"),
    _rule("java/lang/System", "exit"),
    _rule("java/lang/Shutdown", "exit"),
    _rule("java/lang/Runtime", "exit"),
    _rule("java/lang/ProcessBuilder", "<init>", min_arg_index=1),
    _rule("java/lang/ClassLoader", "<init>", subclasses=True),
    _rule("java/net/URL", "openStream"),
    _rule("org/codehaus/groovy/runtime/InvokerHelper", "invokeMethod", arg_index=1),
    _rule("groovy/lang/MetaClass", "invokeMethod", "invokeConstructor", "invokeStaticMethod",
          subclasses=True),
    _rule("org/python/core/PyCode", "call"),
]


class RuleSinkPredicate(SinkPredicate):
    def __init__(self, rules: List[SinkRule]):
        self.rules = list(rules)

    def is_sink(self, method: MethodHandle, arg_index: int, inheritance: InheritanceMap) -> bool:
        return any(rule.matches(method, arg_index, inheritance) for rule in self.rules)


class JavaDeserializationConfig(GIConfig):
    name = "jserial"

    def get_serializable_decider(self, method_map, inheritance) -> SerializableDecider:
        return DecisionCache(SimpleSerializableDecider(inheritance))

    def get_implementation_finder(self, method_map, method_impls, inheritance) -> ImplementationFinder:
        return SimpleImplementationFinder(
            DecisionCache(SimpleSerializableDecider(inheritance)), method_impls)

    def get_source_discovery(self) -> SourceDiscovery:
        return SimpleSourceDiscovery()

    def get_sink_predicate(self) -> SinkPredicate:
        return RuleSinkPredicate(JAVA_DESERIALIZATION_SINKS)
