"""
Built-in dataflow facts for JDK methods.

Library bytecode is frequently absent from the analysed classpath (or is
native), so the interpreter cannot derive how taint flows through common
JDK calls.  This table states it directly: for each method, which argument
positions (0 = receiver for instance methods) flow into the returned
value.  Entries are data; settings can add more without touching the
interpreter.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from gadgetinspector.model.references import MethodHandle


# Receiver types whose mutators fold arguments into the container
COLLECTION_TYPES = frozenset({"java/util/Collection", "java/util/Map"})

DEFAULT_READ_OBJECT = MethodHandle("java/io/ObjectInputStream", "defaultReadObject", "()V")


_JDK_PASSTHROUGH: Tuple[Tuple[str, str, str, Tuple[int, ...]], ...] = (
    ("java/lang/Object", "toString", "()Ljava/lang/String;", (0,)),

    # Taint the stream and everything read from it is tainted
    ("java/io/ObjectInputStream", "readObject", "()Ljava/lang/Object;", (0,)),
    ("java/io/ObjectInputStream", "readFields", "()Ljava/io/ObjectInputStream$GetField;", (0,)),
    ("java/io/ObjectInputStream$GetField", "get",
     "(Ljava/lang/String;Ljava/lang/Object;)Ljava/lang/Object;", (0,)),

    # Reflection
    ("java/lang/Object", "getClass", "()Ljava/lang/Class;", (0,)),
    ("java/lang/Class", "forName", "(Ljava/lang/String;)Ljava/lang/Class;", (0,)),
    ("java/lang/Class", "getMethod",
     "(Ljava/lang/String;[Ljava/lang/Class;)Ljava/lang/reflect/Method;", (0, 1)),
    ("java/lang/Class", "getMethods", "()[Ljava/lang/reflect/Method;", (0,)),

    ("java/lang/StringBuilder", "<init>", "(Ljava/lang/String;)V", (0, 1)),
    ("java/lang/StringBuilder", "<init>", "(Ljava/lang/CharSequence;)V", (0, 1)),
    ("java/lang/StringBuilder", "append", "(Ljava/lang/Object;)Ljava/lang/StringBuilder;", (0, 1)),
    ("java/lang/StringBuilder", "append", "(Ljava/lang/String;)Ljava/lang/StringBuilder;", (0, 1)),
    ("java/lang/StringBuilder", "append", "(Ljava/lang/StringBuffer;)Ljava/lang/StringBuilder;", (0, 1)),
    ("java/lang/StringBuilder", "append", "(Ljava/lang/CharSequence;)Ljava/lang/StringBuilder;", (0, 1)),
    ("java/lang/StringBuilder", "append", "(Ljava/lang/CharSequence;II)Ljava/lang/StringBuilder;", (0, 1)),
    ("java/lang/StringBuilder", "toString", "()Ljava/lang/String;", (0,)),

    ("java/io/ByteArrayInputStream", "<init>", "([B)V", (1,)),
    ("java/io/ByteArrayInputStream", "<init>", "([BII)V", (1,)),
    ("java/io/ObjectInputStream", "<init>", "(Ljava/io/InputStream;)V", (1,)),
    ("java/io/File", "<init>", "(Ljava/lang/String;I)V", (1,)),
    ("java/io/File", "<init>", "(Ljava/lang/String;Ljava/io/File;)V", (1,)),
    ("java/io/File", "<init>", "(Ljava/lang/String;)V", (1,)),
    ("java/io/File", "<init>", "(Ljava/lang/String;Ljava/lang/String;)V", (1,)),
    ("java/nio/file/Paths", "get", "(Ljava/lang/String;[Ljava/lang/String;)Ljava/nio/file/Path;", (0,)),
    ("java/net/URL", "<init>", "(Ljava/lang/String;)V", (1,)),
)


class DataflowTable:
    """Method handle -> argument indices that flow into the call's result."""

    def __init__(self, entries: Optional[Mapping[MethodHandle, Iterable[int]]] = None):
        self._entries: Dict[MethodHandle, FrozenSet[int]] = {}
        if entries:
            for handle, indices in entries.items():
                self.add(handle, indices)

    @classmethod
    def jdk_defaults(cls) -> "DataflowTable":
        table = cls()
        for class_name, name, desc, indices in _JDK_PASSTHROUGH:
            table.add(MethodHandle(class_name, name, desc), indices)
        return table

    def add(self, handle: MethodHandle, indices: Iterable[int]) -> None:
        self._entries[handle] = self._entries.get(handle, frozenset()) | frozenset(indices)

    def get(self, handle: MethodHandle) -> FrozenSet[int]:
        return self._entries.get(handle, frozenset())

    def __contains__(self, handle: MethodHandle) -> bool:
        return handle in self._entries

    def __len__(self) -> int:
        return len(self._entries)
