"""
Call graph construction with argument-level taint edges.

Every method body is interpreted with labels naming the caller's own
arguments (``arg0``, ``arg1``, ...).  Reading a field off a labelled value
extends the label with the field name (``arg0.value``), so the graph
records not only that argument 0 reaches the callee but through which
field path.  At every invoke, each label on each argument slot yields one
``GraphCall`` edge from the caller argument to the callee argument.

Edges are deduplicated; per-method failures are logged and the method's
edges are dropped.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Set, Tuple

from gadgetinspector.frontend.bytecode import Instruction
from gadgetinspector.frontend.classfile import ClassFormatError, MethodInfo
from gadgetinspector.frontend.descriptors import argument_types, type_size
from gadgetinspector.frontend.loader import ClassRepository
from gadgetinspector.model.references import GraphCall, MethodHandle
from gadgetinspector.semantics.context import AnalysisContext
from gadgetinspector.semantics.taint_interpreter import InterpreterError, TaintInterpreter

logger = logging.getLogger(__name__)

_ARG_LABEL = re.compile(r"arg(\d+)(?:\.(.+))?\Z")


def parse_arg_label(label: str) -> Tuple[int, Optional[str]]:
    """Split ``argN[.path]`` into the argument index and the optional field path."""
    match = _ARG_LABEL.match(label)
    if match is None:
        raise InterpreterError(f"Invalid taint arg: {label}")
    return int(match.group(1)), match.group(2)


class ModelGeneratorInterpreter(TaintInterpreter[str]):
    """Interprets one method, collecting the taint edges of its call sites."""

    def __init__(self, context: AnalysisContext, owner: str, method: MethodInfo,
                 discovered_calls: Set[GraphCall]):
        super().__init__(context, owner, method)
        self.discovered_calls = discovered_calls

    def visit_code(self) -> None:
        super().visit_code()
        local_index = 0
        arg_index = 0
        if not self.is_static:
            self.set_local_taint(local_index, {f"arg{arg_index}"})
            local_index += 1
            arg_index += 1
        for arg in argument_types(self.method.desc):
            self.set_local_taint(local_index, {f"arg{arg_index}"})
            local_index += type_size(arg)
            arg_index += 1

    def field_labels(self, receiver: Set[str], field_name: str) -> Set[str]:
        return {f"{label}.{field_name}" for label in receiver}

    def read_field(self, insn: Instruction, receiver: Set[str]) -> Set[str]:
        # A stored value adds to the field path labels, it never replaces them
        labels = self.declared_field_labels(insn, receiver)
        stored = self.stored_field_labels(insn, receiver)
        if stored is not None:
            labels = labels | stored
        return labels

    def visit_method_insn(self, insn: Instruction) -> None:
        arg_types = self.call_argument_types(insn)
        caller = self.handle
        target = MethodHandle(insn.owner, insn.name, insn.desc)
        stack_index = 0
        for arg_index in range(len(arg_types) - 1, -1, -1):
            size = type_size(arg_types[arg_index])
            for label in self.get_stack_taint(stack_index + size - 1):
                src_index, src_path = parse_arg_label(label)
                self.discovered_calls.add(GraphCall(caller, target, src_index, src_path, arg_index))
            stack_index += size
        super().visit_method_insn(insn)


class CallGraphDiscovery:
    """Builds the deduplicated set of taint edges over a whole repository."""

    def __init__(self, repository: ClassRepository, context: AnalysisContext):
        self.repository = repository
        self.context = context
        self.discovered_calls: Set[GraphCall] = set()

    def discover(self) -> Set[GraphCall]:
        for name in self.repository.names():
            try:
                class_file = self.repository.parse(name)
            except ClassFormatError as e:
                logger.error("Error reading class %s: %s", name, e)
                continue
            for method in class_file.methods:
                self.discover_method(class_file.name, method)
        logger.info("Discovered %d call graph edges", len(self.discovered_calls))
        return self.discovered_calls

    def discover_method(self, owner: str, method: MethodInfo) -> None:
        # Edges are committed only once the whole method interprets cleanly
        calls: Set[GraphCall] = set()
        try:
            ModelGeneratorInterpreter(self.context, owner, method, calls).run()
        except Exception:
            logger.exception("Error analyzing %s.%s%s", owner, method.name, method.desc)
            return
        self.discovered_calls.update(calls)

    def sorted_calls(self) -> List[GraphCall]:
        return sorted(self.discovered_calls, key=_graph_call_key)


def _graph_call_key(call: GraphCall):
    return (call.caller, call.target, call.caller_arg_index,
            call.caller_arg_path or "", call.target_arg_index)
