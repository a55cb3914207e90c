"""
Passthrough analysis: which arguments can flow into a method's return value.

Methods are analysed callee-first (reverse topological order of the
method reference graph) so that, when a call is interpreted, the callee's
passthrough facts are usually already known.  Edges that close a cycle are
ignored when ordering, so for mutually recursive methods the first one
analysed sees no facts for the other: the result under-approximates.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Mapping, Set, Tuple

from gadgetinspector.frontend import bytecode as op
from gadgetinspector.frontend.bytecode import Instruction
from gadgetinspector.frontend.classfile import ClassFormatError, MethodInfo
from gadgetinspector.frontend.descriptors import argument_types, type_size
from gadgetinspector.frontend.loader import ClassRepository
from gadgetinspector.model.references import MethodHandle
from gadgetinspector.semantics.context import AnalysisContext
from gadgetinspector.semantics.taint_interpreter import TaintInterpreter

logger = logging.getLogger(__name__)


class PassthroughInterpreter(TaintInterpreter[int]):
    """Labels are argument indices; collects the labels reaching any return."""

    def __init__(self, context: AnalysisContext, owner: str, method: MethodInfo):
        super().__init__(context, owner, method)
        self.return_taint: Set[int] = set()

    def visit_code(self) -> None:
        super().visit_code()
        local_index = 0
        arg_index = 0
        if not self.is_static:
            self.set_local_taint(local_index, {arg_index})
            local_index += 1
            arg_index += 1
        for arg in argument_types(self.method.desc):
            self.set_local_taint(local_index, {arg_index})
            local_index += type_size(arg)
            arg_index += 1

    def visit_insn(self, insn: Instruction) -> None:
        if insn.opcode in (op.IRETURN, op.FRETURN, op.ARETURN):
            self.return_taint.update(self.get_stack_taint(0))
        elif insn.opcode in (op.LRETURN, op.DRETURN):
            self.return_taint.update(self.get_stack_taint(1))
        super().visit_insn(insn)


def discover_method_calls(repository: ClassRepository) -> Dict[MethodHandle, List[MethodHandle]]:
    """Every method in the repository mapped to the distinct methods it invokes."""
    method_calls: Dict[MethodHandle, List[MethodHandle]] = {}
    for name in repository.names():
        try:
            class_file = repository.parse(name)
        except ClassFormatError as e:
            logger.error("Error reading class %s: %s", name, e)
            continue
        for method in class_file.methods:
            handle = MethodHandle(class_file.name, method.name, method.desc)
            callees: Dict[MethodHandle, None] = {}
            try:
                if method.code is not None:
                    for insn in method.code.instructions:
                        if insn.opcode in op.METHOD_INSNS:
                            callees[MethodHandle(insn.owner, insn.name, insn.desc)] = None
            except ClassFormatError as e:
                logger.error("Error reading code of %s: %s", handle, e)
                continue
            method_calls[handle] = list(callees)
    return method_calls


def topological_sort(method_calls: Mapping[MethodHandle, List[MethodHandle]]) -> List[MethodHandle]:
    """
    Callee-first ordering of the methods in ``method_calls``.

    Depth-first post-order; a child already on the current path or already
    finished is skipped, as is any callee with no entry of its own.
    """
    visited: Set[MethodHandle] = set()
    on_path: Set[MethodHandle] = set()
    ordered: List[MethodHandle] = []

    for root in method_calls:
        if root in visited:
            continue
        on_path.add(root)
        work: List[Tuple[MethodHandle, Iterator[MethodHandle]]] = [(root, iter(method_calls[root]))]
        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child in on_path or child in visited or child not in method_calls:
                    continue
                on_path.add(child)
                work.append((child, iter(method_calls[child])))
                descended = True
                break
            if not descended:
                work.pop()
                on_path.discard(node)
                visited.add(node)
                ordered.append(node)
    return ordered


def calculate_passthrough_dataflow(
    repository: ClassRepository,
    context: AnalysisContext,
    sorted_methods: List[MethodHandle],
) -> Dict[MethodHandle, Set[int]]:
    """
    Interpret each method in order, recording its return-value labels.

    Facts are written into ``context.passthrough`` as they are computed so
    later methods see them.  A method that fails to analyse is logged and
    gets no fact.
    """
    passthrough = context.passthrough
    for handle in sorted_methods:
        if handle.name == "<clinit>":
            continue
        try:
            class_file = repository.parse(handle.class_name)
            method = class_file.find_method(handle.name, handle.desc)
            if method is None:
                logger.error("Method %s not found in its class", handle)
                continue
            interpreter = PassthroughInterpreter(context, class_file.name, method).run()
            passthrough[handle] = interpreter.return_taint
        except Exception:
            logger.exception("Exception analyzing %s", handle)
    return passthrough


class PassthroughDiscovery:
    """Passthrough stage over a whole repository."""

    def __init__(self, repository: ClassRepository, context: AnalysisContext):
        self.repository = repository
        self.context = context

    def discover(self) -> Dict[MethodHandle, Set[int]]:
        method_calls = discover_method_calls(self.repository)
        sorted_methods = topological_sort(method_calls)
        logger.info("Computing passthrough dataflow for %d methods...", len(sorted_methods))
        return calculate_passthrough_dataflow(self.repository, self.context, sorted_methods)
