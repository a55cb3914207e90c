"""
JVM opcode table and bytecode decoder.

Decoding normalises the short and wide forms the way ASM presents them to a
method visitor, so the interpreters only ever see one spelling per
operation:

    aload_0 .. aload_3      -> ALOAD with var 0..3   (all typed loads/stores)
    ldc_w, ldc2_w           -> LDC
    goto_w, jsr_w           -> GOTO, JSR
    wide <op> / wide iinc   -> <op> / IINC with 16-bit operands

Branch operands are resolved to absolute bytecode offsets.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


class BytecodeError(Exception):
    """Raised for truncated or undecodable method bodies."""


# ============================================================================
# Opcodes
# ============================================================================

NOP = 0
ACONST_NULL = 1
ICONST_M1 = 2
ICONST_0 = 3
ICONST_1 = 4
ICONST_2 = 5
ICONST_3 = 6
ICONST_4 = 7
ICONST_5 = 8
LCONST_0 = 9
LCONST_1 = 10
FCONST_0 = 11
FCONST_1 = 12
FCONST_2 = 13
DCONST_0 = 14
DCONST_1 = 15
BIPUSH = 16
SIPUSH = 17
LDC = 18
LDC_W = 19
LDC2_W = 20
ILOAD = 21
LLOAD = 22
FLOAD = 23
DLOAD = 24
ALOAD = 25
IALOAD = 46
LALOAD = 47
FALOAD = 48
DALOAD = 49
AALOAD = 50
BALOAD = 51
CALOAD = 52
SALOAD = 53
ISTORE = 54
LSTORE = 55
FSTORE = 56
DSTORE = 57
ASTORE = 58
IASTORE = 79
LASTORE = 80
FASTORE = 81
DASTORE = 82
AASTORE = 83
BASTORE = 84
CASTORE = 85
SASTORE = 86
POP = 87
POP2 = 88
DUP = 89
DUP_X1 = 90
DUP_X2 = 91
DUP2 = 92
DUP2_X1 = 93
DUP2_X2 = 94
SWAP = 95
IADD = 96
LADD = 97
FADD = 98
DADD = 99
ISUB = 100
LSUB = 101
FSUB = 102
DSUB = 103
IMUL = 104
LMUL = 105
FMUL = 106
DMUL = 107
IDIV = 108
LDIV = 109
FDIV = 110
DDIV = 111
IREM = 112
LREM = 113
FREM = 114
DREM = 115
INEG = 116
LNEG = 117
FNEG = 118
DNEG = 119
ISHL = 120
LSHL = 121
ISHR = 122
LSHR = 123
IUSHR = 124
LUSHR = 125
IAND = 126
LAND = 127
IOR = 128
LOR = 129
IXOR = 130
LXOR = 131
IINC = 132
I2L = 133
I2F = 134
I2D = 135
L2I = 136
L2F = 137
L2D = 138
F2I = 139
F2L = 140
F2D = 141
D2I = 142
D2L = 143
D2F = 144
I2B = 145
I2C = 146
I2S = 147
LCMP = 148
FCMPL = 149
FCMPG = 150
DCMPL = 151
DCMPG = 152
IFEQ = 153
IFNE = 154
IFLT = 155
IFGE = 156
IFGT = 157
IFLE = 158
IF_ICMPEQ = 159
IF_ICMPNE = 160
IF_ICMPLT = 161
IF_ICMPGE = 162
IF_ICMPGT = 163
IF_ICMPLE = 164
IF_ACMPEQ = 165
IF_ACMPNE = 166
GOTO = 167
JSR = 168
RET = 169
TABLESWITCH = 170
LOOKUPSWITCH = 171
IRETURN = 172
LRETURN = 173
FRETURN = 174
DRETURN = 175
ARETURN = 176
RETURN = 177
GETSTATIC = 178
PUTSTATIC = 179
GETFIELD = 180
PUTFIELD = 181
INVOKEVIRTUAL = 182
INVOKESPECIAL = 183
INVOKESTATIC = 184
INVOKEINTERFACE = 185
INVOKEDYNAMIC = 186
NEW = 187
NEWARRAY = 188
ANEWARRAY = 189
ARRAYLENGTH = 190
ATHROW = 191
CHECKCAST = 192
INSTANCEOF = 193
MONITORENTER = 194
MONITOREXIT = 195
WIDE = 196
MULTIANEWARRAY = 197
IFNULL = 198
IFNONNULL = 199
GOTO_W = 200
JSR_W = 201

OPCODE_NAMES: Dict[int, str] = {
    value: name
    for name, value in list(globals().items())
    if name.isupper() and isinstance(value, int) and 0 <= value <= JSR_W
}

# Short-form loads/stores: opcode -> (canonical opcode, var index)
_SHORT_VAR_FORMS: Dict[int, Tuple[int, int]] = {}
for _base, _first in ((ILOAD, 26), (LLOAD, 30), (FLOAD, 34), (DLOAD, 38), (ALOAD, 42),
                      (ISTORE, 59), (LSTORE, 63), (FSTORE, 67), (DSTORE, 71), (ASTORE, 75)):
    for _n in range(4):
        _SHORT_VAR_FORMS[_first + _n] = (_base, _n)
        OPCODE_NAMES[_first + _n] = f"{OPCODE_NAMES[_base]}_{_n}"

VAR_INSNS = frozenset({ILOAD, LLOAD, FLOAD, DLOAD, ALOAD,
                       ISTORE, LSTORE, FSTORE, DSTORE, ASTORE, RET})
JUMP_INSNS = frozenset(list(range(IFEQ, JSR + 1)) + [IFNULL, IFNONNULL])
FIELD_INSNS = frozenset({GETSTATIC, PUTSTATIC, GETFIELD, PUTFIELD})
METHOD_INSNS = frozenset({INVOKEVIRTUAL, INVOKESPECIAL, INVOKESTATIC, INVOKEINTERFACE})
TYPE_INSNS = frozenset({NEW, ANEWARRAY, CHECKCAST, INSTANCEOF})
RETURN_INSNS = frozenset(range(IRETURN, RETURN + 1))


# ============================================================================
# Decoded instructions
# ============================================================================

@dataclass
class Instruction:
    """
    One decoded instruction.

    Only the operand fields relevant to ``opcode`` are populated.
    """
    offset: int
    opcode: int                          # Canonical opcode (short forms folded)
    var: Optional[int] = None            # Local index for loads/stores/RET/IINC
    operand: Optional[int] = None        # BIPUSH/SIPUSH value, IINC increment, NEWARRAY atype, dims
    constant: Any = None                 # Resolved LDC constant
    constant_kind: Optional[str] = None  # 'int', 'float', 'long', 'double', 'string', 'class', ...
    owner: Optional[str] = None          # Field/method owner or type operand
    name: Optional[str] = None
    desc: Optional[str] = None
    is_interface: bool = False
    bootstrap_index: Optional[int] = None
    target: Optional[int] = None         # Absolute jump target
    default: Optional[int] = None        # Switch default target
    targets: List[int] = field(default_factory=list)  # Switch case targets
    keys: List[int] = field(default_factory=list)

    @property
    def mnemonic(self) -> str:
        return OPCODE_NAMES.get(self.opcode, f"<{self.opcode}>")

    def __repr__(self) -> str:
        parts = [f"{self.offset}: {self.mnemonic}"]
        if self.var is not None:
            parts.append(str(self.var))
        if self.owner is not None:
            parts.append(self.owner if self.name is None else f"{self.owner}.{self.name}{self.desc or ''}")
        if self.target is not None:
            parts.append(f"-> {self.target}")
        return " ".join(parts)


# Resolves constant-pool indices for the decoder; supplied by the class reader.
class ConstantResolver:
    def ldc(self, index: int) -> Tuple[str, Any]:
        raise NotImplementedError

    def member_ref(self, index: int) -> Tuple[str, str, str, bool]:
        raise NotImplementedError

    def class_name(self, index: int) -> str:
        raise NotImplementedError

    def invoke_dynamic(self, index: int) -> Tuple[int, str, str]:
        raise NotImplementedError


def decode(code: bytes, pool: ConstantResolver) -> List[Instruction]:
    """Decode a Code attribute's bytecode into instructions in program order."""
    insns: List[Instruction] = []
    pc = 0
    length = len(code)
    try:
        while pc < length:
            insn, pc = _decode_one(code, pc, pool)
            insns.append(insn)
    except (struct.error, IndexError) as e:
        raise BytecodeError(f"Truncated instruction at offset {pc}: {e}") from e
    return insns


def _u1(code: bytes, pos: int) -> int:
    return code[pos]


def _s1(code: bytes, pos: int) -> int:
    return struct.unpack_from(">b", code, pos)[0]


def _u2(code: bytes, pos: int) -> int:
    return struct.unpack_from(">H", code, pos)[0]


def _s2(code: bytes, pos: int) -> int:
    return struct.unpack_from(">h", code, pos)[0]


def _s4(code: bytes, pos: int) -> int:
    return struct.unpack_from(">i", code, pos)[0]


def _decode_one(code: bytes, pc: int, pool: ConstantResolver) -> Tuple[Instruction, int]:
    op = code[pc]

    if op in _SHORT_VAR_FORMS:
        base, n = _SHORT_VAR_FORMS[op]
        return Instruction(pc, base, var=n), pc + 1

    if op in VAR_INSNS:
        return Instruction(pc, op, var=_u1(code, pc + 1)), pc + 2

    if op == BIPUSH:
        return Instruction(pc, op, operand=_s1(code, pc + 1)), pc + 2
    if op == SIPUSH:
        return Instruction(pc, op, operand=_s2(code, pc + 1)), pc + 3

    if op in (LDC, LDC_W, LDC2_W):
        if op == LDC:
            index, size = _u1(code, pc + 1), 2
        else:
            index, size = _u2(code, pc + 1), 3
        kind, value = pool.ldc(index)
        return Instruction(pc, LDC, constant=value, constant_kind=kind), pc + size

    if op == IINC:
        return Instruction(pc, op, var=_u1(code, pc + 1), operand=_s1(code, pc + 2)), pc + 3

    if op in JUMP_INSNS:
        return Instruction(pc, op, target=pc + _s2(code, pc + 1)), pc + 3
    if op == GOTO_W:
        return Instruction(pc, GOTO, target=pc + _s4(code, pc + 1)), pc + 5
    if op == JSR_W:
        return Instruction(pc, JSR, target=pc + _s4(code, pc + 1)), pc + 5

    if op == TABLESWITCH:
        pos = (pc + 4) & ~3
        default = pc + _s4(code, pos)
        low = _s4(code, pos + 4)
        high = _s4(code, pos + 8)
        if high < low:
            raise BytecodeError(f"tableswitch with high < low at {pc}")
        pos += 12
        targets = []
        for i in range(high - low + 1):
            targets.append(pc + _s4(code, pos + 4 * i))
        insn = Instruction(pc, op, default=default, targets=targets,
                           keys=list(range(low, high + 1)))
        return insn, pos + 4 * (high - low + 1)

    if op == LOOKUPSWITCH:
        pos = (pc + 4) & ~3
        default = pc + _s4(code, pos)
        npairs = _s4(code, pos + 4)
        if npairs < 0:
            raise BytecodeError(f"lookupswitch with negative pair count at {pc}")
        pos += 8
        keys, targets = [], []
        for i in range(npairs):
            keys.append(_s4(code, pos + 8 * i))
            targets.append(pc + _s4(code, pos + 8 * i + 4))
        insn = Instruction(pc, op, default=default, targets=targets, keys=keys)
        return insn, pos + 8 * npairs

    if op in FIELD_INSNS or op in METHOD_INSNS:
        owner, name, desc, itf = pool.member_ref(_u2(code, pc + 1))
        insn = Instruction(pc, op, owner=owner, name=name, desc=desc, is_interface=itf)
        return insn, pc + (5 if op == INVOKEINTERFACE else 3)

    if op == INVOKEDYNAMIC:
        bsm, name, desc = pool.invoke_dynamic(_u2(code, pc + 1))
        return Instruction(pc, op, name=name, desc=desc, bootstrap_index=bsm), pc + 5

    if op in TYPE_INSNS:
        return Instruction(pc, op, owner=pool.class_name(_u2(code, pc + 1))), pc + 3

    if op == NEWARRAY:
        return Instruction(pc, op, operand=_u1(code, pc + 1)), pc + 2

    if op == MULTIANEWARRAY:
        owner = pool.class_name(_u2(code, pc + 1))
        return Instruction(pc, op, owner=owner, operand=_u1(code, pc + 3)), pc + 4

    if op == WIDE:
        inner = _u1(code, pc + 1)
        if inner == IINC:
            return Instruction(pc, IINC, var=_u2(code, pc + 2), operand=_s2(code, pc + 4)), pc + 6
        if inner in VAR_INSNS:
            return Instruction(pc, inner, var=_u2(code, pc + 2)), pc + 4
        raise BytecodeError(f"Invalid wide-prefixed opcode {inner} at {pc}")

    if op in OPCODE_NAMES and op not in _SHORT_VAR_FORMS:
        return Instruction(pc, op), pc + 1

    raise BytecodeError(f"Unknown opcode {op} at offset {pc}")


def label_offsets(insns: List[Instruction]) -> List[int]:
    """All offsets some branch or switch can transfer control to."""
    targets = set()
    for insn in insns:
        if insn.target is not None:
            targets.add(insn.target)
        if insn.default is not None:
            targets.add(insn.default)
            targets.update(insn.targets)
    return sorted(targets)
