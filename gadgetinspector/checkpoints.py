"""
Checkpoint files between analysis stages.

Every stage persists its output as newline-separated records of
tab-separated fields (UTF-8).  A stage whose file already exists is skipped
on a resumed run, so the formats below are the contract between runs:

    classes.dat          name, superclass, interfaces (comma-joined), isInterface,
                         members as name!modifiers!typeName triples joined by '!'
    methods.dat          class, name, desc, isStatic
    inheritanceMap.dat   class, ancestor...
    passthrough.dat      class, name, desc, indices ("0,2,")
    callgraph.dat        caller class/name/desc, target class/name/desc,
                         callerArgIndex, callerArgPath (empty: none), targetArgIndex
    sources.dat          class, name, desc, taintedArgIndex
    methodimpl.dat       "class name desc" then one tab-indented line per override

Missing optional fields are written as empty strings.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, TypeVar

from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import (
    ClassReference,
    GraphCall,
    Member,
    MethodHandle,
    MethodReference,
    Source,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLASSES_FILE = "classes.dat"
METHODS_FILE = "methods.dat"
INHERITANCE_FILE = "inheritanceMap.dat"
PASSTHROUGH_FILE = "passthrough.dat"
CALLGRAPH_FILE = "callgraph.dat"
SOURCES_FILE = "sources.dat"
METHODIMPL_FILE = "methodimpl.dat"
GADGET_CHAINS_FILE = "gadget-chains.txt"

STAGE_FILES: Dict[str, Tuple[str, ...]] = {
    "classes": (CLASSES_FILE, METHODS_FILE, INHERITANCE_FILE),
    "passthrough": (PASSTHROUGH_FILE,),
    "callgraph": (CALLGRAPH_FILE,),
    "sources": (SOURCES_FILE,),
}


class MissingCheckpointError(Exception):
    """A stage needs the output of an earlier stage that was never written."""


# ============================================================================
# Record factories
# ============================================================================

class DataFactory(ABC, Generic[T]):
    @abstractmethod
    def parse(self, fields: List[str]) -> Optional[T]:
        """Build a record from its fields; None skips the line."""

    @abstractmethod
    def serialize(self, obj: T) -> Optional[Sequence[Optional[str]]]:
        """Fields for one record; None skips the record."""


def _bool(value: str) -> bool:
    return value.lower() == "true"


def _bool_str(value: bool) -> str:
    return "true" if value else "false"


def _handle(fields: List[str], start: int) -> MethodHandle:
    return MethodHandle(fields[start], fields[start + 1], fields[start + 2])


class ClassReferenceFactory(DataFactory[ClassReference]):
    def parse(self, fields: List[str]) -> ClassReference:
        interfaces = tuple(fields[2].split(",")) if fields[2] else ()
        members: List[Member] = []
        if len(fields) > 4 and fields[4]:
            parts = fields[4].split("!")
            for i in range(0, len(parts) - 2, 3):
                members.append(Member(parts[i], int(parts[i + 1]), parts[i + 2]))
        return ClassReference(
            name=fields[0],
            superclass=fields[1] or None,
            interfaces=interfaces,
            is_interface=_bool(fields[3]),
            members=tuple(members),
        )

    def serialize(self, obj: ClassReference) -> Sequence[Optional[str]]:
        members = "!".join(f"{m.name}!{m.modifiers}!{m.type_name}" for m in obj.members)
        return [obj.name, obj.superclass, ",".join(obj.interfaces),
                _bool_str(obj.is_interface), members]


class MethodReferenceFactory(DataFactory[MethodReference]):
    def parse(self, fields: List[str]) -> MethodReference:
        return MethodReference(_handle(fields, 0), _bool(fields[3]))

    def serialize(self, obj: MethodReference) -> Sequence[Optional[str]]:
        return [obj.class_name, obj.name, obj.desc, _bool_str(obj.is_static)]


class InheritanceFactory(DataFactory[Tuple[str, Set[str]]]):
    def parse(self, fields: List[str]) -> Tuple[str, Set[str]]:
        return fields[0], {f for f in fields[1:] if f}

    def serialize(self, obj: Tuple[str, Set[str]]) -> Sequence[Optional[str]]:
        name, parents = obj
        return [name] + sorted(parents)


class PassthroughFactory(DataFactory[Tuple[MethodHandle, Set[int]]]):
    def parse(self, fields: List[str]) -> Tuple[MethodHandle, Set[int]]:
        indices = {int(part) for part in fields[3].split(",") if part}
        return _handle(fields, 0), indices

    def serialize(self, obj: Tuple[MethodHandle, Set[int]]) -> Optional[Sequence[Optional[str]]]:
        handle, indices = obj
        if not indices:
            return None
        joined = "".join(f"{index}," for index in sorted(indices))
        return [handle.class_name, handle.name, handle.desc, joined]


class GraphCallFactory(DataFactory[GraphCall]):
    def parse(self, fields: List[str]) -> GraphCall:
        return GraphCall(
            caller=_handle(fields, 0),
            target=_handle(fields, 3),
            caller_arg_index=int(fields[6]),
            caller_arg_path=fields[7] or None,
            target_arg_index=int(fields[8]),
        )

    def serialize(self, obj: GraphCall) -> Sequence[Optional[str]]:
        return [
            obj.caller.class_name, obj.caller.name, obj.caller.desc,
            obj.target.class_name, obj.target.name, obj.target.desc,
            str(obj.caller_arg_index), obj.caller_arg_path, str(obj.target_arg_index),
        ]


class SourceFactory(DataFactory[Source]):
    def parse(self, fields: List[str]) -> Source:
        return Source(_handle(fields, 0), int(fields[3]))

    def serialize(self, obj: Source) -> Sequence[Optional[str]]:
        return [obj.method.class_name, obj.method.name, obj.method.desc,
                str(obj.tainted_arg_index)]


def save_data(path: Path, factory: DataFactory[T], values: Iterable[T]) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        for value in values:
            fields = factory.serialize(value)
            if fields is None:
                continue
            f.write("\t".join("" if field is None else field for field in fields))
            f.write("\n")


def load_data(path: Path, factory: DataFactory[T]) -> List[T]:
    values: List[T] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if not line:
                continue
            value = factory.parse(line.split("\t"))
            if value is not None:
                values.append(value)
    return values


def save_method_impls(path: Path, method_impls: Mapping[MethodHandle, Set[MethodHandle]]) -> None:
    with open(path, "w", encoding="utf-8", newline="\n") as f:
        for method in sorted(method_impls):
            f.write(f"{method.class_name}\t{method.name}\t{method.desc}\n")
            for impl in sorted(method_impls[method]):
                f.write(f"\t{impl.class_name}\t{impl.name}\t{impl.desc}\n")


def load_method_impls(path: Path) -> Dict[MethodHandle, Set[MethodHandle]]:
    method_impls: Dict[MethodHandle, Set[MethodHandle]] = {}
    current: Optional[MethodHandle] = None
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if not line:
                continue
            if line.startswith("\t"):
                if current is None:
                    raise ValueError(f"Override line before any method in {path}")
                method_impls[current].add(_handle(line[1:].split("\t"), 0))
            else:
                current = _handle(line.split("\t"), 0)
                method_impls.setdefault(current, set())
    return method_impls


# ============================================================================
# Checkpoint directory
# ============================================================================

class CheckpointStore:
    """The stage outputs of one analysis, kept in ``directory``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path(self, filename: str) -> Path:
        return self.directory / filename

    def has_stage(self, stage: str) -> bool:
        return all(self.path(name).exists() for name in STAGE_FILES[stage])

    def delete_stale(self) -> None:
        """Remove every stage checkpoint so the next run starts from scratch."""
        for names in STAGE_FILES.values():
            for name in names:
                path = self.path(name)
                if path.exists():
                    logger.debug("Deleting stale data file %s", path)
                    path.unlink()

    def _require(self, filename: str) -> Path:
        path = self.path(filename)
        if not path.exists():
            raise MissingCheckpointError(
                f"{path} does not exist; run the stage that produces it first")
        return path

    # -- classes / methods / inheritance ---------------------------------

    def save_classes(self, classes: Iterable[ClassReference]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(CLASSES_FILE), ClassReferenceFactory(), classes)

    def load_classes(self) -> Dict[str, ClassReference]:
        refs = load_data(self._require(CLASSES_FILE), ClassReferenceFactory())
        return {ref.name: ref for ref in refs}

    def save_methods(self, methods: Iterable[MethodReference]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(METHODS_FILE), MethodReferenceFactory(), methods)

    def load_methods(self) -> Dict[MethodHandle, MethodReference]:
        refs = load_data(self._require(METHODS_FILE), MethodReferenceFactory())
        return {ref.handle: ref for ref in refs}

    def save_inheritance(self, inheritance: InheritanceMap) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(INHERITANCE_FILE), InheritanceFactory(), inheritance.items())

    def load_inheritance(self) -> InheritanceMap:
        return InheritanceMap(dict(load_data(self._require(INHERITANCE_FILE), InheritanceFactory())))

    # -- passthrough / call graph / sources ------------------------------

    def save_passthrough(self, passthrough: Mapping[MethodHandle, Set[int]]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(PASSTHROUGH_FILE), PassthroughFactory(), passthrough.items())

    def load_passthrough(self) -> Dict[MethodHandle, Set[int]]:
        return dict(load_data(self._require(PASSTHROUGH_FILE), PassthroughFactory()))

    def save_call_graph(self, calls: Iterable[GraphCall]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(CALLGRAPH_FILE), GraphCallFactory(), calls)

    def load_call_graph(self) -> List[GraphCall]:
        return load_data(self._require(CALLGRAPH_FILE), GraphCallFactory())

    def save_sources(self, sources: Iterable[Source]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_data(self.path(SOURCES_FILE), SourceFactory(), sources)

    def load_sources(self) -> List[Source]:
        return load_data(self._require(SOURCES_FILE), SourceFactory())

    def save_method_impls(self, method_impls: Mapping[MethodHandle, Set[MethodHandle]]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        save_method_impls(self.path(METHODIMPL_FILE), method_impls)
