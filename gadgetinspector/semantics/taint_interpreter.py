"""
Instruction-level taint interpretation of JVM method bodies.

The interpreter walks a method's instructions once, in program order, and
keeps an abstract state mirroring the JVM frame:

    local_vars : one label set per local-variable slot
    stack_vars : one label set per operand-stack slot (long/double take two)

Labels are opaque to this engine.  Subclasses choose the label type and
seed the argument slots (the passthrough pass uses argument indices, the
call-graph pass uses ``argN.field.path`` strings).

Label sets are shared by reference: ALOAD pushes the local's own set and
ASTORE stores the popped set, so an in-place union performed on a value
(constructor arguments, container mutators) is visible through every alias
of it.  Only states saved for branch targets are deep copies.

Control flow is handled in a single forward pass without a fixpoint:

- a branch saves (or unions into) a copy of the current state for its
  target;
- on reaching a target with a saved state, the current state is replaced by
  a copy of it;
- states saved by backward branches reach labels that have already been
  passed and are never applied.

After every step the simulated stack depth is checked against the
verifier-level height from ``StackHeightTracker``; a mismatch raises
``InterpreterError``.
"""

from __future__ import annotations

import logging
from typing import Dict, Generic, List, Optional, Set, Tuple, TypeVar

from gadgetinspector.cfg.stack_heights import StackHeightTracker
from gadgetinspector.frontend import bytecode as op
from gadgetinspector.frontend.bytecode import Instruction, label_offsets
from gadgetinspector.frontend.classfile import Frame, MethodInfo, ldc_size, slot_size
from gadgetinspector.frontend.descriptors import (
    ARRAY,
    OBJECT,
    argument_types,
    internal_name,
    object_descriptor,
    return_type,
    type_size,
    type_sort,
)
from gadgetinspector.model.references import MethodHandle
from gadgetinspector.semantics.context import AnalysisContext
from gadgetinspector.semantics.dataflow_table import COLLECTION_TYPES, DEFAULT_READ_OBJECT

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InterpreterError(Exception):
    """The abstract state disagrees with the bytecode (stack depth, underflow, opcode)."""


# ============================================================================
# Abstract state
# ============================================================================

class SavedVariableState(Generic[T]):
    """Label sets for every local slot and operand-stack slot."""

    def __init__(self, local_vars: Optional[List[Set[T]]] = None,
                 stack_vars: Optional[List[Set[T]]] = None):
        self.local_vars: List[Set[T]] = local_vars if local_vars is not None else []
        self.stack_vars: List[Set[T]] = stack_vars if stack_vars is not None else []

    def copy(self) -> "SavedVariableState[T]":
        return SavedVariableState([set(s) for s in self.local_vars],
                                  [set(s) for s in self.stack_vars])

    def combine(self, other: "SavedVariableState[T]") -> None:
        """Union ``other`` into this state slot by slot, growing to the longer shape."""
        for mine, theirs in ((self.local_vars, other.local_vars),
                             (self.stack_vars, other.stack_vars)):
            for i, labels in enumerate(theirs):
                if i < len(mine):
                    mine[i].update(labels)
                else:
                    mine.append(set(labels))


# Zero-operand instructions whose results carry no taint: (slots popped, slots pushed)
_UNTAINTED_EFFECTS: Dict[int, Tuple[int, int]] = {op.NOP: (0, 0)}


def _effects(opcodes, pops: int, pushes: int) -> None:
    for opcode in opcodes:
        _UNTAINTED_EFFECTS[opcode] = (pops, pushes)


_effects([op.ACONST_NULL, op.FCONST_0, op.FCONST_1, op.FCONST_2]
         + list(range(op.ICONST_M1, op.ICONST_5 + 1)), 0, 1)
_effects([op.LCONST_0, op.LCONST_1, op.DCONST_0, op.DCONST_1], 0, 2)
_effects([op.IALOAD, op.FALOAD, op.AALOAD, op.BALOAD, op.CALOAD, op.SALOAD], 2, 1)
_effects([op.LALOAD, op.DALOAD], 2, 2)
_effects([op.IASTORE, op.FASTORE, op.AASTORE, op.BASTORE, op.CASTORE, op.SASTORE], 3, 0)
_effects([op.LASTORE, op.DASTORE], 4, 0)
_effects([op.POP], 1, 0)
_effects([op.POP2], 2, 0)
_effects([op.IADD, op.FADD, op.ISUB, op.FSUB, op.IMUL, op.FMUL, op.IDIV, op.FDIV,
          op.IREM, op.FREM, op.ISHL, op.ISHR, op.IUSHR, op.IAND, op.IOR, op.IXOR,
          op.FCMPL, op.FCMPG], 2, 1)
_effects([op.LADD, op.DADD, op.LSUB, op.DSUB, op.LMUL, op.DMUL, op.LDIV, op.DDIV,
          op.LREM, op.DREM, op.LAND, op.LOR, op.LXOR], 4, 2)
_effects([op.LSHL, op.LSHR, op.LUSHR], 3, 2)
_effects([op.INEG, op.FNEG, op.I2B, op.I2C, op.I2S, op.I2F, op.F2I, op.ARRAYLENGTH], 1, 1)
_effects([op.LNEG, op.DNEG, op.L2D, op.D2L], 2, 2)
_effects([op.I2L, op.I2D, op.F2L, op.F2D], 1, 2)
_effects([op.L2I, op.L2F, op.D2I, op.D2F], 2, 1)
_effects([op.LCMP, op.DCMPL, op.DCMPG], 4, 1)
_effects([op.IRETURN, op.FRETURN, op.ARETURN, op.ATHROW, op.MONITORENTER, op.MONITOREXIT], 1, 0)
_effects([op.LRETURN, op.DRETURN], 2, 0)
_effects([op.RETURN], 0, 0)

_SINGLE_OPERAND_JUMPS = frozenset(list(range(op.IFEQ, op.IFLE + 1)) + [op.IFNULL, op.IFNONNULL])
_DOUBLE_OPERAND_JUMPS = frozenset(range(op.IF_ICMPEQ, op.IF_ACMPNE + 1))


# ============================================================================
# Interpreter
# ============================================================================

class TaintInterpreter(Generic[T]):
    """
    Forward taint interpreter for one method.

    Subclasses hook in by overriding ``visit_code`` (to seed argument
    labels), ``field_labels`` (to derive the labels of a field read), and
    any ``visit_*`` method, calling ``super()`` to keep the stack in shape.
    """

    def __init__(self, context: AnalysisContext, owner: str, method: MethodInfo):
        self.context = context
        self.owner = owner
        self.method = method
        self.state: SavedVariableState[T] = SavedVariableState()
        self.goto_states: Dict[int, SavedVariableState[T]] = {}
        self.heights = StackHeightTracker()
        code = method.code
        self.handler_offsets = {h.handler for h in code.exception_handlers} if code else set()
        self._labels = set(label_offsets(code.instructions)) | self.handler_offsets if code else set()
        # id(receiver set) -> (receiver set, {field name: stored set})
        self._field_stores: Dict[int, Tuple[Set[T], Dict[str, Set[T]]]] = {}

    @property
    def is_static(self) -> bool:
        return self.method.is_static

    @property
    def handle(self) -> MethodHandle:
        return MethodHandle(self.owner, self.method.name, self.method.desc)

    def run(self) -> "TaintInterpreter[T]":
        self.visit_code()
        code = self.method.code
        if code is None:
            return self
        for insn in code.instructions:
            if insn.offset in self._labels:
                self.visit_label(insn.offset)
            frame = code.frames.get(insn.offset)
            if frame is not None:
                self.visit_frame(frame)
            self.visit_instruction(insn)
        return self

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def push(self, labels: Optional[Set[T]] = None) -> None:
        self.state.stack_vars.append(labels if labels is not None else set())

    def pop(self) -> Set[T]:
        if not self.state.stack_vars:
            raise InterpreterError(f"Operand stack underflow in {self.handle}")
        return self.state.stack_vars.pop()

    def get_stack_taint(self, index: int) -> Set[T]:
        """Label set ``index`` slots below the top of the stack."""
        stack = self.state.stack_vars
        if index >= len(stack):
            raise InterpreterError(f"Stack slot {index} out of range in {self.handle}")
        return stack[len(stack) - 1 - index]

    def set_stack_taint(self, index: int, labels: Set[T]) -> None:
        stack = self.state.stack_vars
        stack[len(stack) - 1 - index] = labels

    def _ensure_local(self, index: int) -> None:
        while len(self.state.local_vars) <= index:
            self.state.local_vars.append(set())

    def get_local_taint(self, index: int) -> Set[T]:
        self._ensure_local(index)
        return self.state.local_vars[index]

    def set_local_taint(self, index: int, labels: Set[T]) -> None:
        self._ensure_local(index)
        self.state.local_vars[index] = labels

    def sanity_check(self) -> None:
        height = self.heights.height
        if height is not None and len(self.state.stack_vars) != height:
            raise InterpreterError(
                f"Bad stack size in {self.handle}: simulated {len(self.state.stack_vars)}, "
                f"verifier {height}")

    def merge_goto_state(self, target: int) -> None:
        existing = self.goto_states.get(target)
        if existing is None:
            self.goto_states[target] = self.state.copy()
        else:
            combined = existing.copy()
            combined.combine(self.state)
            self.goto_states[target] = combined

    # ------------------------------------------------------------------
    # Visitors
    # ------------------------------------------------------------------

    def visit_code(self) -> None:
        """Lay out one empty set per local slot used by the receiver and arguments."""
        self.state = SavedVariableState()
        if not self.is_static:
            self.state.local_vars.append(set())
        for arg in argument_types(self.method.desc):
            for _ in range(type_size(arg)):
                self.state.local_vars.append(set())

    def visit_label(self, offset: int) -> None:
        saved = self.goto_states.get(offset)
        if saved is not None:
            self.state = saved.copy()
            self._field_stores.clear()
        if offset in self.handler_offsets:
            self.push()
            self.heights.handler_entry()
        self.sanity_check()

    def visit_frame(self, frame: Frame) -> None:
        local_size = sum(slot_size(vt) for vt in frame.locals)
        stack_size = sum(slot_size(vt) for vt in frame.stack)
        for slots, size in ((self.state.local_vars, local_size),
                            (self.state.stack_vars, stack_size)):
            while len(slots) < size:
                slots.append(set())
            del slots[size:]
        self.heights.reset(frame)
        self.sanity_check()

    def visit_instruction(self, insn: Instruction) -> None:
        opcode = insn.opcode
        if opcode in _UNTAINTED_EFFECTS or op.DUP <= opcode <= op.SWAP:
            self.visit_insn(insn)
        elif opcode in (op.BIPUSH, op.SIPUSH, op.NEWARRAY):
            self.visit_int_insn(insn)
        elif opcode in op.VAR_INSNS:
            self.visit_var_insn(insn)
        elif opcode in op.TYPE_INSNS:
            self.visit_type_insn(insn)
        elif opcode in op.FIELD_INSNS:
            self.visit_field_insn(insn)
        elif opcode in op.METHOD_INSNS:
            self.visit_method_insn(insn)
        elif opcode == op.INVOKEDYNAMIC:
            self.visit_invoke_dynamic_insn(insn)
        elif opcode in op.JUMP_INSNS:
            self.visit_jump_insn(insn)
        elif opcode in (op.TABLESWITCH, op.LOOKUPSWITCH):
            self.visit_switch_insn(insn)
        elif opcode == op.LDC:
            self.visit_ldc_insn(insn)
        elif opcode == op.IINC:
            pass
        elif opcode == op.MULTIANEWARRAY:
            self.visit_multi_anew_array_insn(insn)
        else:
            raise InterpreterError(f"Unsupported opcode {insn.mnemonic} in {self.handle}")
        self.heights.execute(insn)
        self.sanity_check()

    def visit_insn(self, insn: Instruction) -> None:
        opcode = insn.opcode
        effect = _UNTAINTED_EFFECTS.get(opcode)
        if effect is not None:
            pops, pushes = effect
            for _ in range(pops):
                self.pop()
            for _ in range(pushes):
                self.push()
            return

        if opcode == op.DUP:
            self.push(self.get_stack_taint(0))
        elif opcode == op.DUP_X1:
            v1, v2 = self.pop(), self.pop()
            for labels in (v1, v2, v1):
                self.push(labels)
        elif opcode == op.DUP_X2:
            v1, v2, v3 = self.pop(), self.pop(), self.pop()
            for labels in (v1, v3, v2, v1):
                self.push(labels)
        elif opcode == op.DUP2:
            v1, v2 = self.get_stack_taint(0), self.get_stack_taint(1)
            self.push(v2)
            self.push(v1)
        elif opcode == op.DUP2_X1:
            v1, v2, v3 = self.pop(), self.pop(), self.pop()
            for labels in (v2, v1, v3, v2, v1):
                self.push(labels)
        elif opcode == op.DUP2_X2:
            v1, v2, v3, v4 = self.pop(), self.pop(), self.pop(), self.pop()
            for labels in (v2, v1, v4, v3, v2, v1):
                self.push(labels)
        elif opcode == op.SWAP:
            v1, v2 = self.pop(), self.pop()
            self.push(v1)
            self.push(v2)
        else:
            raise InterpreterError(f"Unsupported opcode {insn.mnemonic} in {self.handle}")

    def visit_int_insn(self, insn: Instruction) -> None:
        if insn.opcode == op.NEWARRAY:
            self.pop()
        self.push()

    def visit_var_insn(self, insn: Instruction) -> None:
        opcode, var = insn.opcode, insn.var
        self._ensure_local(var)
        if opcode in (op.ILOAD, op.FLOAD):
            self.push()
        elif opcode in (op.LLOAD, op.DLOAD):
            self.push()
            self.push()
        elif opcode == op.ALOAD:
            self.push(self.state.local_vars[var])
        elif opcode in (op.ISTORE, op.FSTORE):
            self.pop()
            self.state.local_vars[var] = set()
        elif opcode in (op.LSTORE, op.DSTORE):
            self.pop()
            self.pop()
            self.state.local_vars[var] = set()
        elif opcode == op.ASTORE:
            self.state.local_vars[var] = self.pop()
        elif opcode == op.RET:
            pass
        else:
            raise InterpreterError(f"Unsupported opcode {insn.mnemonic} in {self.handle}")

    def visit_type_insn(self, insn: Instruction) -> None:
        opcode = insn.opcode
        if opcode == op.NEW:
            self.push()
        elif opcode in (op.ANEWARRAY, op.INSTANCEOF):
            self.pop()
            self.push()
        # CHECKCAST leaves the value, and its labels, in place

    def visit_field_insn(self, insn: Instruction) -> None:
        opcode = insn.opcode
        size = type_size(insn.desc)
        if opcode == op.GETSTATIC:
            for _ in range(size):
                self.push()
        elif opcode == op.PUTSTATIC:
            for _ in range(size):
                self.pop()
        elif opcode == op.GETFIELD:
            receiver = self.pop()
            if size == 1:
                self.push(self.read_field(insn, receiver))
            else:
                for _ in range(size):
                    self.push()
        elif opcode == op.PUTFIELD:
            value = self.pop()
            for _ in range(size - 1):
                value = self.pop()
            receiver = self.pop()
            if size == 1:
                entry = self._field_stores.setdefault(id(receiver), (receiver, {}))
                entry[1][insn.name] = value

    def read_field(self, insn: Instruction, receiver: Set[T]) -> Set[T]:
        """A value stored earlier through this receiver, else the field's own labels."""
        stored = self.stored_field_labels(insn, receiver)
        if stored is not None:
            return stored
        return self.declared_field_labels(insn, receiver)

    def stored_field_labels(self, insn: Instruction, receiver: Set[T]) -> Optional[Set[T]]:
        entry = self._field_stores.get(id(receiver))
        if entry is not None and entry[0] is receiver:
            return entry[1].get(insn.name)
        return None

    def declared_field_labels(self, insn: Instruction, receiver: Set[T]) -> Set[T]:
        if self.context.is_field_untaintable(insn.owner, insn.name, internal_name(insn.desc)):
            return set()
        return self.field_labels(receiver, insn.name)

    def field_labels(self, receiver: Set[T], field_name: str) -> Set[T]:
        """
        Labels of a taintable field read off a receiver carrying ``receiver``.

        Always a new set: the field value is a different object from its
        receiver, so stores through it must not be recorded against the
        receiver.
        """
        return set(receiver)

    def pop_arguments(self, arg_types: List[str]) -> List[Set[T]]:
        """Pop call arguments; a wide argument's labels live in its lower slot."""
        taints: List[Set[T]] = [set() for _ in arg_types]
        for i in range(len(arg_types) - 1, -1, -1):
            for _ in range(type_size(arg_types[i]) - 1):
                self.pop()
            taints[i] = self.pop()
        return taints

    def call_argument_types(self, insn: Instruction) -> List[str]:
        arg_types = list(argument_types(insn.desc))
        if insn.opcode != op.INVOKESTATIC:
            arg_types.insert(0, object_descriptor(insn.owner))
        return arg_types

    def visit_method_insn(self, insn: Instruction) -> None:
        arg_types = self.call_argument_types(insn)
        ret = return_type(insn.desc)
        ret_size = type_size(ret)
        arg_taint = self.pop_arguments(arg_types)
        result = self.compute_result_taint(insn, arg_types, arg_taint)
        self._field_stores.clear()
        if ret_size > 0:
            self.push(result)
            if ret_size > 1:
                self.push()

    def compute_result_taint(self, insn: Instruction, arg_types: List[str],
                             arg_taint: List[Set[T]]) -> Set[T]:
        handle = MethodHandle(insn.owner, insn.name, insn.desc)
        is_static = insn.opcode == op.INVOKESTATIC

        if insn.name == "<init>" and not is_static:
            # A constructed object is tainted by whatever tainted its arguments
            result = arg_taint[0]
            for labels in arg_taint[1:]:
                result.update(labels)
        else:
            result = set()

        if handle == DEFAULT_READ_OBJECT and self.state.local_vars:
            self.state.local_vars[0].update(arg_taint[0])

        for index in self.context.dataflow.get(handle):
            if index < len(arg_taint):
                result.update(arg_taint[index])
        for index in self.context.passthrough.get(handle, ()):
            if index < len(arg_taint):
                result.update(arg_taint[index])

        if not is_static and type_sort(arg_types[0]) == OBJECT and self._is_collection(insn.owner):
            receiver = arg_taint[0]
            for labels in arg_taint[1:]:
                receiver.update(labels)
            if type_sort(return_type(insn.desc)) in (OBJECT, ARRAY):
                result.update(receiver)

        return result

    def _is_collection(self, class_name: str) -> bool:
        if class_name in COLLECTION_TYPES:
            return True
        parents = self.context.inheritance.get_super_classes(class_name)
        return parents is not None and not parents.isdisjoint(COLLECTION_TYPES)

    def visit_invoke_dynamic_insn(self, insn: Instruction) -> None:
        for arg in reversed(argument_types(insn.desc)):
            for _ in range(type_size(arg)):
                self.pop()
        self._field_stores.clear()
        for _ in range(type_size(return_type(insn.desc))):
            self.push()

    def visit_jump_insn(self, insn: Instruction) -> None:
        opcode = insn.opcode
        if opcode in _SINGLE_OPERAND_JUMPS:
            self.pop()
        elif opcode in _DOUBLE_OPERAND_JUMPS:
            self.pop()
            self.pop()
        elif opcode == op.JSR:
            # Subroutine return address; subroutine bodies are not inlined
            self.push()
            return
        self.merge_goto_state(insn.target)

    def visit_switch_insn(self, insn: Instruction) -> None:
        self.pop()
        self.merge_goto_state(insn.default)
        for target in insn.targets:
            self.merge_goto_state(target)

    def visit_ldc_insn(self, insn: Instruction) -> None:
        for _ in range(ldc_size(insn)):
            self.push()

    def visit_multi_anew_array_insn(self, insn: Instruction) -> None:
        for _ in range(insn.operand):
            self.pop()
        self.push()
