"""
Class-file reader.

Parses the parts of a ``.class`` file the analyses consume:

- constant pool (every tag through Java 17 ``Module``/``Package``),
- class header: access flags, this/super class, interfaces,
- fields (access, name, descriptor),
- methods and their ``Code`` attribute: limits, bytecode, exception table
  and the ``StackMapTable``, expanded into full frames.

Frames are expanded the way ASM's ``EXPAND_FRAMES`` mode does: every frame
lists all locals and stack entries, with ``long``/``double`` as a single
entry that occupies two slots.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from gadgetinspector.frontend.bytecode import (
    BytecodeError,
    ConstantResolver,
    Instruction,
    decode,
)
from gadgetinspector.frontend.descriptors import (
    DescriptorError,
    argument_types,
    object_descriptor,
)


MAGIC = 0xCAFEBABE

ACC_PUBLIC = 0x0001
ACC_PRIVATE = 0x0002
ACC_PROTECTED = 0x0004
ACC_STATIC = 0x0008
ACC_FINAL = 0x0010
ACC_SUPER = 0x0020
ACC_SYNCHRONIZED = 0x0020
ACC_VOLATILE = 0x0040
ACC_TRANSIENT = 0x0080
ACC_NATIVE = 0x0100
ACC_INTERFACE = 0x0200
ACC_ABSTRACT = 0x0400

# Verification types of expanded frames
TOP = "T"
INTEGER = "I"
FLOAT = "F"
DOUBLE = "D"
LONG = "J"
NULL = "N"
UNINITIALIZED_THIS = "U"

_CONSTANT_UTF8 = 1
_CONSTANT_INTEGER = 3
_CONSTANT_FLOAT = 4
_CONSTANT_LONG = 5
_CONSTANT_DOUBLE = 6
_CONSTANT_CLASS = 7
_CONSTANT_STRING = 8
_CONSTANT_FIELDREF = 9
_CONSTANT_METHODREF = 10
_CONSTANT_INTERFACE_METHODREF = 11
_CONSTANT_NAME_AND_TYPE = 12
_CONSTANT_METHOD_HANDLE = 15
_CONSTANT_METHOD_TYPE = 16
_CONSTANT_DYNAMIC = 17
_CONSTANT_INVOKE_DYNAMIC = 18
_CONSTANT_MODULE = 19
_CONSTANT_PACKAGE = 20


class ClassFormatError(Exception):
    """Raised when class bytes are not a well-formed class file."""


def slot_size(verification_type: str) -> int:
    return 2 if verification_type in (LONG, DOUBLE) else 1


def _decode_modified_utf8(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        # Java's encoding of NUL and of supplementary characters as surrogate pairs
        return raw.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")


class _Reader:
    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos

    def _unpack(self, fmt: str, size: int):
        if self.pos + size > len(self.data):
            raise ClassFormatError(f"Unexpected end of data at offset {self.pos}")
        value = struct.unpack_from(fmt, self.data, self.pos)[0]
        self.pos += size
        return value

    def u1(self) -> int:
        return self._unpack(">B", 1)

    def u2(self) -> int:
        return self._unpack(">H", 2)

    def u4(self) -> int:
        return self._unpack(">I", 4)

    def bytes(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ClassFormatError(f"Unexpected end of data at offset {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk


# ============================================================================
# Constant pool
# ============================================================================

class ConstantPool(ConstantResolver):
    """Constant pool entries indexed from 1; wide entries leave a ``None`` gap."""

    def __init__(self, entries: List[Optional[Tuple[int, Any]]]):
        self.entries = entries

    @classmethod
    def read(cls, reader: _Reader) -> "ConstantPool":
        count = reader.u2()
        entries: List[Optional[Tuple[int, Any]]] = [None] * max(count, 1)
        i = 1
        while i < count:
            tag = reader.u1()
            if tag == _CONSTANT_UTF8:
                entries[i] = (tag, _decode_modified_utf8(reader.bytes(reader.u2())))
            elif tag == _CONSTANT_INTEGER:
                entries[i] = (tag, struct.unpack(">i", reader.bytes(4))[0])
            elif tag == _CONSTANT_FLOAT:
                entries[i] = (tag, struct.unpack(">f", reader.bytes(4))[0])
            elif tag == _CONSTANT_LONG:
                entries[i] = (tag, struct.unpack(">q", reader.bytes(8))[0])
            elif tag == _CONSTANT_DOUBLE:
                entries[i] = (tag, struct.unpack(">d", reader.bytes(8))[0])
            elif tag in (_CONSTANT_CLASS, _CONSTANT_STRING, _CONSTANT_METHOD_TYPE,
                         _CONSTANT_MODULE, _CONSTANT_PACKAGE):
                entries[i] = (tag, reader.u2())
            elif tag in (_CONSTANT_FIELDREF, _CONSTANT_METHODREF, _CONSTANT_INTERFACE_METHODREF,
                         _CONSTANT_NAME_AND_TYPE, _CONSTANT_DYNAMIC, _CONSTANT_INVOKE_DYNAMIC):
                entries[i] = (tag, (reader.u2(), reader.u2()))
            elif tag == _CONSTANT_METHOD_HANDLE:
                entries[i] = (tag, (reader.u1(), reader.u2()))
            else:
                raise ClassFormatError(f"Unknown constant pool tag {tag} at index {i}")
            i += 2 if tag in (_CONSTANT_LONG, _CONSTANT_DOUBLE) else 1
        return cls(entries)

    def _entry(self, index: int, *tags: int) -> Any:
        if not 0 < index < len(self.entries) or self.entries[index] is None:
            raise ClassFormatError(f"Invalid constant pool index {index}")
        tag, value = self.entries[index]
        if tags and tag not in tags:
            raise ClassFormatError(f"Constant pool index {index} has tag {tag}, expected {tags}")
        return value

    def utf8(self, index: int) -> str:
        return self._entry(index, _CONSTANT_UTF8)

    def class_name(self, index: int) -> str:
        return self.utf8(self._entry(index, _CONSTANT_CLASS))

    def name_and_type(self, index: int) -> Tuple[str, str]:
        name_index, desc_index = self._entry(index, _CONSTANT_NAME_AND_TYPE)
        return self.utf8(name_index), self.utf8(desc_index)

    def member_ref(self, index: int) -> Tuple[str, str, str, bool]:
        class_index, nat_index = self._entry(
            index, _CONSTANT_FIELDREF, _CONSTANT_METHODREF, _CONSTANT_INTERFACE_METHODREF)
        tag = self.entries[index][0]
        name, desc = self.name_and_type(nat_index)
        return self.class_name(class_index), name, desc, tag == _CONSTANT_INTERFACE_METHODREF

    def invoke_dynamic(self, index: int) -> Tuple[int, str, str]:
        bsm_index, nat_index = self._entry(index, _CONSTANT_INVOKE_DYNAMIC)
        name, desc = self.name_and_type(nat_index)
        return bsm_index, name, desc

    def ldc(self, index: int) -> Tuple[str, Any]:
        if not 0 < index < len(self.entries) or self.entries[index] is None:
            raise ClassFormatError(f"Invalid constant pool index {index}")
        tag, value = self.entries[index]
        if tag == _CONSTANT_INTEGER:
            return "int", value
        if tag == _CONSTANT_FLOAT:
            return "float", value
        if tag == _CONSTANT_LONG:
            return "long", value
        if tag == _CONSTANT_DOUBLE:
            return "double", value
        if tag == _CONSTANT_STRING:
            return "string", self.utf8(value)
        if tag == _CONSTANT_CLASS:
            return "class", self.utf8(value)
        if tag == _CONSTANT_METHOD_TYPE:
            return "method_type", self.utf8(value)
        if tag == _CONSTANT_METHOD_HANDLE:
            return "method_handle", value
        if tag == _CONSTANT_DYNAMIC:
            # The descriptor decides how many stack slots the constant takes
            return "dynamic", self.name_and_type(value[1])[1]
        raise ClassFormatError(f"Constant pool index {index} (tag {tag}) is not loadable")


def ldc_size(insn: Instruction) -> int:
    """Stack slots pushed by a decoded LDC."""
    if insn.constant_kind in ("long", "double"):
        return 2
    if insn.constant_kind == "dynamic" and insn.constant in ("J", "D"):
        return 2
    return 1


# ============================================================================
# Class structure
# ============================================================================

@dataclass
class ExceptionHandler:
    start: int
    end: int
    handler: int
    catch_type: Optional[str]  # None for finally / catch-any


@dataclass
class Frame:
    """An expanded stack map frame."""
    locals: List[str]
    stack: List[str]


@dataclass
class CodeAttribute:
    max_stack: int
    max_locals: int
    code: bytes
    exception_handlers: List[ExceptionHandler]
    frames: Dict[int, Frame]
    pool: ConstantPool
    _instructions: Optional[List[Instruction]] = field(default=None, repr=False)

    @property
    def instructions(self) -> List[Instruction]:
        if self._instructions is None:
            try:
                self._instructions = decode(self.code, self.pool)
            except BytecodeError as e:
                raise ClassFormatError(str(e)) from e
        return self._instructions


@dataclass
class FieldInfo:
    access: int
    name: str
    desc: str

    @property
    def is_static(self) -> bool:
        return bool(self.access & ACC_STATIC)


@dataclass
class MethodInfo:
    access: int
    name: str
    desc: str
    code: Optional[CodeAttribute] = None

    @property
    def is_static(self) -> bool:
        return bool(self.access & ACC_STATIC)


@dataclass
class ClassFile:
    major_version: int
    minor_version: int
    access: int
    name: str
    super_name: Optional[str]
    interfaces: List[str]
    fields: List[FieldInfo]
    methods: List[MethodInfo]

    @property
    def is_interface(self) -> bool:
        return bool(self.access & ACC_INTERFACE)

    def find_method(self, name: str, desc: str) -> Optional[MethodInfo]:
        for method in self.methods:
            if method.name == name and method.desc == desc:
                return method
        return None


# ============================================================================
# Parsing
# ============================================================================

def parse_class(data: bytes) -> ClassFile:
    """Parse raw class bytes. Raises ClassFormatError on malformed input."""
    reader = _Reader(data)
    if reader.u4() != MAGIC:
        raise ClassFormatError("Bad magic number")
    minor = reader.u2()
    major = reader.u2()
    pool = ConstantPool.read(reader)

    access = reader.u2()
    name = pool.class_name(reader.u2())
    super_index = reader.u2()
    super_name = pool.class_name(super_index) if super_index else None
    interfaces = [pool.class_name(reader.u2()) for _ in range(reader.u2())]

    fields = []
    for _ in range(reader.u2()):
        f_access = reader.u2()
        f_name = pool.utf8(reader.u2())
        f_desc = pool.utf8(reader.u2())
        _skip_attributes(reader)
        fields.append(FieldInfo(f_access, f_name, f_desc))

    methods = []
    for _ in range(reader.u2()):
        m_access = reader.u2()
        m_name = pool.utf8(reader.u2())
        m_desc = pool.utf8(reader.u2())
        method = MethodInfo(m_access, m_name, m_desc)
        for _ in range(reader.u2()):
            attr_name = pool.utf8(reader.u2())
            attr_len = reader.u4()
            body = reader.bytes(attr_len)
            if attr_name == "Code":
                method.code = _parse_code(body, pool, name, method)
        methods.append(method)

    return ClassFile(major, minor, access, name, super_name, interfaces, fields, methods)


def _skip_attributes(reader: _Reader) -> None:
    for _ in range(reader.u2()):
        reader.u2()
        reader.bytes(reader.u4())


def _parse_code(body: bytes, pool: ConstantPool, class_name: str, method: MethodInfo) -> CodeAttribute:
    reader = _Reader(body)
    max_stack = reader.u2()
    max_locals = reader.u2()
    code = reader.bytes(reader.u4())

    handlers = []
    for _ in range(reader.u2()):
        start, end, handler, catch_index = reader.u2(), reader.u2(), reader.u2(), reader.u2()
        catch_type = pool.class_name(catch_index) if catch_index else None
        handlers.append(ExceptionHandler(start, end, handler, catch_type))

    frames: Dict[int, Frame] = {}
    for _ in range(reader.u2()):
        attr_name = pool.utf8(reader.u2())
        attr_body = reader.bytes(reader.u4())
        if attr_name == "StackMapTable":
            frames = _expand_stack_map(attr_body, pool, class_name, method)

    return CodeAttribute(max_stack, max_locals, code, handlers, frames, pool)


def initial_frame_locals(class_name: str, method_name: str, desc: str, is_static: bool) -> List[str]:
    """The implicit first frame of a method, as verification types."""
    locals_: List[str] = []
    if not is_static:
        if method_name == "<init>" and class_name != "java/lang/Object":
            locals_.append(UNINITIALIZED_THIS)
        else:
            locals_.append(object_descriptor(class_name))
    try:
        args = argument_types(desc)
    except DescriptorError as e:
        raise ClassFormatError(str(e)) from e
    for arg in args:
        locals_.append(INTEGER if arg in ("Z", "B", "C", "S", "I") else arg)
    return locals_


def _read_verification_type(reader: _Reader, pool: ConstantPool) -> str:
    tag = reader.u1()
    if tag == 0:
        return TOP
    if tag == 1:
        return INTEGER
    if tag == 2:
        return FLOAT
    if tag == 3:
        return DOUBLE
    if tag == 4:
        return LONG
    if tag == 5:
        return NULL
    if tag == 6:
        return UNINITIALIZED_THIS
    if tag == 7:
        return object_descriptor(pool.class_name(reader.u2()))
    if tag == 8:
        return f"U@{reader.u2()}"
    raise ClassFormatError(f"Unknown verification type tag {tag}")


def _expand_stack_map(body: bytes, pool: ConstantPool, class_name: str,
                      method: MethodInfo) -> Dict[int, Frame]:
    reader = _Reader(body)
    locals_ = initial_frame_locals(class_name, method.name, method.desc, method.is_static)
    frames: Dict[int, Frame] = {}
    offset = -1

    for _ in range(reader.u2()):
        frame_type = reader.u1()
        if frame_type < 64:
            delta = frame_type
            stack: List[str] = []
        elif frame_type < 128:
            delta = frame_type - 64
            stack = [_read_verification_type(reader, pool)]
        elif frame_type < 247:
            raise ClassFormatError(f"Reserved stack map frame type {frame_type}")
        elif frame_type == 247:
            delta = reader.u2()
            stack = [_read_verification_type(reader, pool)]
        elif frame_type < 251:
            delta = reader.u2()
            chop = 251 - frame_type
            if chop > len(locals_):
                raise ClassFormatError("Chop frame removes more locals than exist")
            locals_ = locals_[:-chop]
            stack = []
        elif frame_type == 251:
            delta = reader.u2()
            stack = []
        elif frame_type < 255:
            delta = reader.u2()
            locals_ = locals_ + [_read_verification_type(reader, pool)
                                 for _ in range(frame_type - 251)]
            stack = []
        else:
            delta = reader.u2()
            locals_ = [_read_verification_type(reader, pool) for _ in range(reader.u2())]
            stack = [_read_verification_type(reader, pool) for _ in range(reader.u2())]

        offset = delta if offset < 0 else offset + delta + 1
        frames[offset] = Frame(list(locals_), stack)

    return frames
