"""
Tests for the passthrough stage: callee-first ordering and per-method
argument-to-return facts over a whole repository.
"""

import logging

from gadgetinspector.frontend import bytecode as op
from gadgetinspector.frontend.classfile import ACC_ABSTRACT, ACC_PUBLIC
from gadgetinspector.model.references import MethodHandle
from gadgetinspector.semantics.passthrough import (
    PassthroughDiscovery,
    discover_method_calls,
    topological_sort,
)

from helpers import OBJECT_DESC, context_for, jdk_builders, repository_of, serializable_class
from jvm_builder import ClassBuilder

UNARY = f"({OBJECT_DESC}){OBJECT_DESC}"


def _handle(cls, name, desc=UNARY):
    return MethodHandle(cls, name, desc)


def run_passthrough(*builders):
    repository = repository_of(*jdk_builders(), *builders)
    return PassthroughDiscovery(repository, context_for(repository)).discover()


class TestTopologicalSort:
    def test_callees_first(self):
        a, b, c = _handle("A", "a"), _handle("B", "b"), _handle("C", "c")
        assert topological_sort({a: [b], b: [c], c: []}) == [c, b, a]

    def test_cycle_and_unknown_callee(self):
        a, b, c = _handle("A", "a"), _handle("B", "b"), _handle("C", "c")
        unknown = _handle("X", "x")
        order = topological_sort({a: [b], b: [c], c: [a, unknown]})
        assert order == [c, b, a]

    def test_every_method_appears_once(self):
        handles = [_handle("K", f"m{i}") for i in range(6)]
        calls = {h: [handles[(i + 1) % 6], handles[(i + 3) % 6]] for i, h in enumerate(handles)}
        order = topological_sort(calls)
        assert sorted(order) == sorted(handles)

    def test_deep_chain_does_not_recurse(self):
        handles = [_handle("Deep", f"m{i}") for i in range(5000)]
        calls = {h: [handles[i + 1]] if i + 1 < len(handles) else [] for i, h in enumerate(handles)}
        order = topological_sort(calls)
        assert order[0] == handles[-1]
        assert order[-1] == handles[0]


def test_discover_method_calls_is_ordered_and_unique():
    cls = ClassBuilder("Caller")
    (cls.static_method("m", UNARY)
        .aload(0).invokestatic("Z", "z", UNARY)
        .invokestatic("Y", "y", UNARY)
        .invokestatic("Z", "z", UNARY)
        .insn(op.ARETURN))
    calls = discover_method_calls(repository_of(cls))
    assert calls[_handle("Caller", "m")] == [_handle("Z", "z"), _handle("Y", "y")]


def test_undecodable_method_does_not_hide_its_siblings(caplog):
    cls = ClassBuilder("Mixed")
    cls.static_method("broken", "()V").insn(0xCB)
    cls.static_method("fine", UNARY).aload(0).invokestatic("Z", "z", UNARY).insn(op.ARETURN)
    with caplog.at_level(logging.ERROR):
        calls = discover_method_calls(repository_of(cls))
    assert MethodHandle("Mixed", "broken", "()V") not in calls
    assert calls[_handle("Mixed", "fine")] == [_handle("Z", "z")]
    assert "Error reading code of Mixed.broken" in caplog.text


class TestPassthroughDiscovery:
    def test_callee_fact_flows_into_caller(self):
        util = ClassBuilder("Util")
        util.static_method("id", UNARY).aload(0).insn(op.ARETURN)
        caller = ClassBuilder("Caller")
        (caller.static_method("wrap", f"({OBJECT_DESC}{OBJECT_DESC}){OBJECT_DESC}")
            .aload(1)
            .invokestatic("Util", "id", UNARY)
            .insn(op.ARETURN))
        facts = run_passthrough(caller, util)
        assert facts[_handle("Util", "id")] == {0}
        assert facts[MethodHandle("Caller", "wrap", f"({OBJECT_DESC}{OBJECT_DESC}){OBJECT_DESC}")] == {1}

    def test_readobject_store_and_return(self):
        cls = serializable_class("A")
        cls.field("f", OBJECT_DESC)
        desc = f"(Ljava/io/ObjectInputStream;){OBJECT_DESC}"
        (cls.method("readObject", desc)
            .aload(0).aload(1).putfield("A", "f", OBJECT_DESC)
            .aload(0).getfield("A", "f", OBJECT_DESC)
            .insn(op.ARETURN))
        assert run_passthrough(cls)[MethodHandle("A", "readObject", desc)] == {1}

    def test_mutual_recursion_terminates_with_facts(self):
        cls = ClassBuilder("Cyc")
        cls.static_method("f", UNARY).aload(0).invokestatic("Cyc", "g", UNARY).insn(op.ARETURN)
        cls.static_method("g", UNARY).aload(0).invokestatic("Cyc", "f", UNARY).insn(op.ARETURN)
        facts = run_passthrough(cls)
        assert _handle("Cyc", "f") in facts
        assert _handle("Cyc", "g") in facts

    def test_static_initializer_skipped(self):
        cls = ClassBuilder("Init")
        cls.static_method("<clinit>", "()V").insn(op.RETURN)
        facts = run_passthrough(cls)
        assert MethodHandle("Init", "<clinit>", "()V") not in facts

    def test_abstract_method_gets_empty_fact(self):
        cls = ClassBuilder("Shape", access=ACC_PUBLIC | ACC_ABSTRACT)
        cls.abstract_method("area", UNARY)
        assert run_passthrough(cls)[_handle("Shape", "area")] == set()

    def test_failing_method_is_isolated(self, caplog):
        cls = ClassBuilder("Mixed")
        cls.static_method("broken", f"(){OBJECT_DESC}").insn(op.ARETURN)
        cls.static_method("fine", UNARY).aload(0).insn(op.ARETURN)
        with caplog.at_level(logging.ERROR):
            facts = run_passthrough(cls)
        assert MethodHandle("Mixed", "broken", f"(){OBJECT_DESC}") not in facts
        assert facts[_handle("Mixed", "fine")] == {0}
        assert "Exception analyzing Mixed.broken" in caplog.text

    def test_idempotent(self):
        util = ClassBuilder("Util")
        util.static_method("id", UNARY).aload(0).insn(op.ARETURN)
        caller = ClassBuilder("Caller")
        caller.static_method("wrap", UNARY).aload(0).invokestatic("Util", "id", UNARY).insn(op.ARETURN)
        assert run_passthrough(caller, util) == run_passthrough(caller, util)
