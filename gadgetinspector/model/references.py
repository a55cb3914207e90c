"""
Facts extracted from the classpath and produced by the analysis stages.

All records are immutable and hashable; a ``MethodHandle`` is the identity
used for every method-keyed map in the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class Member:
    """A non-static field of a class."""
    name: str
    modifiers: int   # Raw access flags (transient = 0x0080)
    type_name: str   # Internal name for object/array types, descriptor for primitives


@dataclass(frozen=True)
class ClassReference:
    """Structural facts about one class."""
    name: str
    superclass: Optional[str]
    interfaces: Tuple[str, ...] = ()
    is_interface: bool = False
    members: Tuple[Member, ...] = ()

    def find_member(self, name: str) -> Optional[Member]:
        for member in self.members:
            if member.name == name:
                return member
        return None


@dataclass(frozen=True, order=True)
class MethodHandle:
    """Identity of a method: owner class, name and descriptor."""
    class_name: str
    name: str
    desc: str

    def __str__(self) -> str:
        return f"{self.class_name}.{self.name}{self.desc}"


@dataclass(frozen=True)
class MethodReference:
    handle: MethodHandle
    is_static: bool

    @property
    def class_name(self) -> str:
        return self.handle.class_name

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def desc(self) -> str:
        return self.handle.desc


@dataclass(frozen=True)
class GraphCall:
    """
    A call edge carrying taint from one caller argument to one callee argument.

    ``caller_arg_path`` is the dotted field path read off the caller argument
    before it was passed (``None`` when the argument itself is passed).
    """
    caller: MethodHandle
    target: MethodHandle
    caller_arg_index: int
    caller_arg_path: Optional[str]
    target_arg_index: int


@dataclass(frozen=True)
class Source:
    """A deserialization entry point with the argument the attacker controls."""
    method: MethodHandle
    tainted_arg_index: int


@dataclass(frozen=True)
class GadgetChainLink:
    method: MethodHandle
    tainted_arg_index: int

    def __str__(self) -> str:
        return f"{self.method} ({self.tainted_arg_index})"


@dataclass(frozen=True)
class GadgetChain:
    """A source-to-sink path; ``links[0]`` is the source, ``links[-1]`` the sink."""
    links: Tuple[GadgetChainLink, ...] = field(default=())

    def extend(self, link: GadgetChainLink) -> "GadgetChain":
        return GadgetChain(self.links + (link,))

    @property
    def last(self) -> GadgetChainLink:
        return self.links[-1]

    def __len__(self) -> int:
        return len(self.links)
