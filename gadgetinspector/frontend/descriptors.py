"""
JVM type descriptor helpers.

Descriptors are kept as the raw strings found in class files
(``I``, ``J``, ``Ljava/lang/String;``, ``[B``, ``(ILjava/lang/Object;)V``).
These helpers answer the handful of questions the analyses ask about them:
how many operand-stack slots a value occupies, what kind of type it is,
and how the argument list of a method descriptor splits up.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Tuple


# Type sorts, named after the categories the interpreter cares about
VOID = "void"
PRIMITIVE = "primitive"
OBJECT = "object"
ARRAY = "array"

_PRIMITIVES = frozenset("ZBCSIFJD")


class DescriptorError(ValueError):
    """Raised for a malformed field or method descriptor."""


def _scan_field(desc: str, pos: int) -> int:
    """Return the index just past the field descriptor starting at ``pos``."""
    start = pos
    while pos < len(desc) and desc[pos] == "[":
        pos += 1
    if pos >= len(desc):
        raise DescriptorError(f"Truncated descriptor: {desc!r}")
    c = desc[pos]
    if c == "L":
        end = desc.find(";", pos)
        if end < 0:
            raise DescriptorError(f"Unterminated class type in {desc!r}")
        return end + 1
    if c in _PRIMITIVES:
        return pos + 1
    if c == "V" and pos == start:
        return pos + 1
    raise DescriptorError(f"Bad descriptor character {c!r} in {desc!r}")


@lru_cache(maxsize=65536)
def parse_method_descriptor(desc: str) -> Tuple[Tuple[str, ...], str]:
    """Split ``(args)ret`` into a tuple of argument descriptors and the return descriptor."""
    if not desc.startswith("("):
        raise DescriptorError(f"Not a method descriptor: {desc!r}")
    args: List[str] = []
    pos = 1
    while pos < len(desc) and desc[pos] != ")":
        end = _scan_field(desc, pos)
        if desc[pos] == "V":
            raise DescriptorError(f"void argument in {desc!r}")
        args.append(desc[pos:end])
        pos = end
    if pos >= len(desc):
        raise DescriptorError(f"Unterminated argument list in {desc!r}")
    ret = desc[pos + 1:]
    if _scan_field(ret, 0) != len(ret):
        raise DescriptorError(f"Bad return type in {desc!r}")
    return tuple(args), ret


def argument_types(desc: str) -> Tuple[str, ...]:
    return parse_method_descriptor(desc)[0]


def return_type(desc: str) -> str:
    return parse_method_descriptor(desc)[1]


def type_size(desc: str) -> int:
    """Operand-stack slots used by a value of this type (0 for void)."""
    if desc == "V":
        return 0
    if desc in ("J", "D"):
        return 2
    return 1


def type_sort(desc: str) -> str:
    if desc == "V":
        return VOID
    if desc.startswith("["):
        return ARRAY
    if desc.startswith("L"):
        return OBJECT
    return PRIMITIVE


def internal_name(desc: str) -> str:
    """
    Internal name of a field type.

    ``Ljava/lang/String;`` becomes ``java/lang/String``; array and primitive
    descriptors are returned unchanged, which is how class handles for those
    types are spelled throughout the model.
    """
    if desc.startswith("L") and desc.endswith(";"):
        return desc[1:-1]
    return desc


def object_descriptor(name: str) -> str:
    """Descriptor for a class named by internal name (arrays pass through)."""
    if name.startswith("["):
        return name
    return f"L{name};"


def arguments_size(desc: str, is_static: bool) -> int:
    """Local-variable slots taken by the receiver (if any) and all arguments."""
    size = 0 if is_static else 1
    for arg in argument_types(desc):
        size += type_size(arg)
    return size
