"""Class, method and call facts shared by every analysis stage."""

from gadgetinspector.model.references import (
    ClassReference,
    GadgetChain,
    GadgetChainLink,
    GraphCall,
    Member,
    MethodHandle,
    MethodReference,
    Source,
)

__all__ = [
    "ClassReference",
    "GadgetChain",
    "GadgetChainLink",
    "GraphCall",
    "Member",
    "MethodHandle",
    "MethodReference",
    "Source",
]
