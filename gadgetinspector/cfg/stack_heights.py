"""
Verifier-level operand stack height tracking.

An independent computation of the operand stack depth (in slots) after each
instruction, derived from the JVM type signature of every opcode rather
than from the taint interpreter's own bookkeeping.  The taint interpreter
compares its simulated stack against this height after every step and
treats a disagreement as an internal inconsistency.

Heights follow the behaviour of ASM's AnalyzerAdapter: the height is reset
from each stack map frame, and becomes unknown (``None``) after any
instruction that does not fall through (GOTO, returns, ATHROW, switches,
JSR/RET) until the next frame re-establishes it.
"""

from __future__ import annotations

from typing import Dict, Optional

from gadgetinspector.frontend import bytecode as op
from gadgetinspector.frontend.bytecode import Instruction
from gadgetinspector.frontend.classfile import Frame, ldc_size, slot_size
from gadgetinspector.frontend.descriptors import argument_types, return_type, type_size


_CATEGORY_SIZES = {"I": 1, "F": 1, "A": 1, "J": 2, "D": 2}


def _signature_effect(signature: str) -> int:
    consumed, produced = signature.split(":")
    return (sum(_CATEGORY_SIZES[c] for c in produced)
            - sum(_CATEGORY_SIZES[c] for c in consumed))


# consumed:produced value categories per opcode
_SIGNATURES: Dict[int, str] = {
    op.NOP: ":", op.ACONST_NULL: ":A",
    op.LCONST_0: ":J", op.LCONST_1: ":J",
    op.FCONST_0: ":F", op.FCONST_1: ":F", op.FCONST_2: ":F",
    op.DCONST_0: ":D", op.DCONST_1: ":D",
    op.BIPUSH: ":I", op.SIPUSH: ":I",
    op.ILOAD: ":I", op.LLOAD: ":J", op.FLOAD: ":F", op.DLOAD: ":D", op.ALOAD: ":A",
    op.IALOAD: "AI:I", op.LALOAD: "AI:J", op.FALOAD: "AI:F", op.DALOAD: "AI:D",
    op.AALOAD: "AI:A", op.BALOAD: "AI:I", op.CALOAD: "AI:I", op.SALOAD: "AI:I",
    op.ISTORE: "I:", op.LSTORE: "J:", op.FSTORE: "F:", op.DSTORE: "D:", op.ASTORE: "A:",
    op.IASTORE: "AII:", op.LASTORE: "AIJ:", op.FASTORE: "AIF:", op.DASTORE: "AID:",
    op.AASTORE: "AIA:", op.BASTORE: "AII:", op.CASTORE: "AII:", op.SASTORE: "AII:",
    op.ISHL: "II:I", op.LSHL: "JI:J", op.ISHR: "II:I", op.LSHR: "JI:J",
    op.IUSHR: "II:I", op.LUSHR: "JI:J",
    op.IINC: ":",
    op.I2L: "I:J", op.I2F: "I:F", op.I2D: "I:D",
    op.L2I: "J:I", op.L2F: "J:F", op.L2D: "J:D",
    op.F2I: "F:I", op.F2L: "F:J", op.F2D: "F:D",
    op.D2I: "D:I", op.D2L: "D:J", op.D2F: "D:F",
    op.I2B: "I:I", op.I2C: "I:I", op.I2S: "I:I",
    op.LCMP: "JJ:I", op.FCMPL: "FF:I", op.FCMPG: "FF:I", op.DCMPL: "DD:I", op.DCMPG: "DD:I",
    op.IF_ACMPEQ: "AA:", op.IF_ACMPNE: "AA:", op.IFNULL: "A:", op.IFNONNULL: "A:",
    op.GOTO: ":", op.JSR: ":A", op.RET: ":",
    op.TABLESWITCH: "I:", op.LOOKUPSWITCH: "I:",
    op.IRETURN: "I:", op.LRETURN: "J:", op.FRETURN: "F:", op.DRETURN: "D:",
    op.ARETURN: "A:", op.RETURN: ":",
    op.NEW: ":A", op.NEWARRAY: "I:A", op.ANEWARRAY: "I:A", op.ARRAYLENGTH: "A:I",
    op.ATHROW: "A:", op.CHECKCAST: "A:A", op.INSTANCEOF: "A:I",
    op.MONITORENTER: "A:", op.MONITOREXIT: "A:",
}
for _opcode in range(op.ICONST_M1, op.ICONST_5 + 1):
    _SIGNATURES[_opcode] = ":I"
for _opcode in range(op.IFEQ, op.IFLE + 1):
    _SIGNATURES[_opcode] = "I:"
for _opcode in range(op.IF_ICMPEQ, op.IF_ICMPLE + 1):
    _SIGNATURES[_opcode] = "II:"
# Typed arithmetic families are laid out I, J, F, D
for _base in (op.IADD, op.ISUB, op.IMUL, op.IDIV, op.IREM):
    for _i, _cat in enumerate("IJFD"):
        _SIGNATURES[_base + _i] = f"{_cat}{_cat}:{_cat}"
for _i, _cat in enumerate("IJFD"):
    _SIGNATURES[op.INEG + _i] = f"{_cat}:{_cat}"
for _base in (op.IAND, op.IOR, op.IXOR):
    for _i, _cat in enumerate("IJ"):
        _SIGNATURES[_base + _i] = f"{_cat}{_cat}:{_cat}"

_STACK_EFFECTS: Dict[int, int] = {opcode: _signature_effect(sig) for opcode, sig in _SIGNATURES.items()}
_STACK_EFFECTS.update({
    op.POP: -1, op.POP2: -2,
    op.DUP: 1, op.DUP_X1: 1, op.DUP_X2: 1,
    op.DUP2: 2, op.DUP2_X1: 2, op.DUP2_X2: 2,
    op.SWAP: 0,
})

_NO_FALLTHROUGH = frozenset({
    op.GOTO, op.JSR, op.RET, op.TABLESWITCH, op.LOOKUPSWITCH, op.ATHROW,
}) | op.RETURN_INSNS


def stack_effect(insn: Instruction) -> int:
    """Net change in operand stack slots caused by ``insn``."""
    opcode = insn.opcode
    if opcode in _STACK_EFFECTS:
        return _STACK_EFFECTS[opcode]
    if opcode == op.LDC:
        return ldc_size(insn)
    if opcode in (op.GETSTATIC, op.PUTSTATIC, op.GETFIELD, op.PUTFIELD):
        size = type_size(insn.desc)
        return {
            op.GETSTATIC: size,
            op.PUTSTATIC: -size,
            op.GETFIELD: size - 1,
            op.PUTFIELD: -size - 1,
        }[opcode]
    if opcode in op.METHOD_INSNS or opcode == op.INVOKEDYNAMIC:
        consumed = sum(type_size(arg) for arg in argument_types(insn.desc))
        if opcode not in (op.INVOKESTATIC, op.INVOKEDYNAMIC):
            consumed += 1
        return type_size(return_type(insn.desc)) - consumed
    if opcode == op.MULTIANEWARRAY:
        return 1 - insn.operand
    raise ValueError(f"No stack effect known for opcode {insn.mnemonic}")


class StackHeightTracker:
    """Tracks the verifier's view of the operand stack height, in slots."""

    def __init__(self) -> None:
        self.height: Optional[int] = 0

    def reset(self, frame: Frame) -> None:
        self.height = sum(slot_size(vt) for vt in frame.stack)

    def handler_entry(self) -> None:
        """Control reaching an exception handler: the stack holds the exception only."""
        if self.height is not None:
            self.height = 1

    def execute(self, insn: Instruction) -> None:
        if self.height is None:
            return
        self.height += stack_effect(insn)
        if insn.opcode in _NO_FALLTHROUGH:
            self.height = None
