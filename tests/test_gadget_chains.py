"""
Tests for the breadth-first gadget chain search.
"""

from gadgetinspector.chains import GadgetChainDiscovery, format_chain, write_gadget_chains
from gadgetinspector.contracts.javaserial import (
    JAVA_DESERIALIZATION_SINKS,
    RuleSinkPredicate,
    SimpleImplementationFinder,
    SimpleSerializableDecider,
)
from gadgetinspector.model.hierarchy import derive_inheritance, get_all_method_implementations
from gadgetinspector.model.references import (
    ClassReference,
    GadgetChain,
    GadgetChainLink,
    GraphCall,
    MethodHandle,
    MethodReference,
    Source,
)

SERIALIZABLE = "java/io/Serializable"
READ_OBJECT = "(Ljava/io/ObjectInputStream;)V"
EXEC = MethodHandle("java/lang/Runtime", "exec", "(Ljava/lang/String;)Ljava/lang/Process;")


def _hierarchy():
    refs = [
        ClassReference("java/lang/Object", None),
        ClassReference(SERIALIZABLE, "java/lang/Object", is_interface=True),
        ClassReference("I", "java/lang/Object", is_interface=True),
        ClassReference("Base", "java/lang/Object", interfaces=("I",)),
        ClassReference("Evil", "Base", interfaces=(SERIALIZABLE,)),
        ClassReference("Plain", "Base"),
        ClassReference("A", "java/lang/Object", interfaces=(SERIALIZABLE,)),
    ]
    return derive_inheritance({ref.name: ref for ref in refs})


def _search(calls, method_handles=()):
    inheritance = _hierarchy()
    methods = {h: MethodReference(h, False) for h in method_handles}
    impls = get_all_method_implementations(inheritance, methods)
    finder = SimpleImplementationFinder(SimpleSerializableDecider(inheritance), impls)
    return GadgetChainDiscovery(calls, finder, RuleSinkPredicate(JAVA_DESERIALIZATION_SINKS), inheritance)


def _chain(*links):
    return GadgetChain(tuple(GadgetChainLink(h, i) for h, i in links))


class TestSearch:
    def test_direct_source_to_sink(self):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        search = _search([GraphCall(source, EXEC, 1, None, 0)])
        chains = search.discover([Source(source, 1)])
        assert chains == [_chain((source, 1), (EXEC, 0))]

    def test_edge_from_other_argument_is_ignored(self):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        search = _search([GraphCall(source, EXEC, 0, "cmd", 1)])
        assert search.discover([Source(source, 1)]) == []

    def test_virtual_call_expands_to_serializable_overrides(self):
        base_m = MethodHandle("Base", "m", "()V")
        evil_m = MethodHandle("Evil", "m", "()V")
        plain_m = MethodHandle("Plain", "m", "()V")
        source = MethodHandle("A", "readObject", READ_OBJECT)
        calls = [
            GraphCall(source, base_m, 1, "field", 0),
            GraphCall(evil_m, EXEC, 0, "cmd", 1),
            GraphCall(plain_m, EXEC, 0, "cmd", 1),
        ]
        search = _search(calls, [base_m, evil_m, plain_m])
        assert search.implementation_finder.get_implementations(base_m) == {base_m, evil_m}
        assert search.discover([Source(source, 1)]) == [
            _chain((source, 1), (evil_m, 0), (EXEC, 1))]

    def test_shortest_chain_wins_and_links_are_not_revisited(self):
        hash_code = MethodHandle("A", "hashCode", "()I")
        equals = MethodHandle("A", "equals", "(Ljava/lang/Object;)Z")
        helper = MethodHandle("A", "helper", "()V")
        calls = [
            GraphCall(hash_code, helper, 0, None, 0),
            GraphCall(equals, helper, 0, None, 0),
            GraphCall(helper, EXEC, 0, "cmd", 1),
        ]
        chains = _search(calls).discover([Source(hash_code, 0), Source(equals, 0)])
        assert chains == [_chain((hash_code, 0), (helper, 0), (EXEC, 1))]

    def test_duplicate_sources_searched_once(self):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        search = _search([GraphCall(source, EXEC, 1, None, 0)])
        assert len(search.discover([Source(source, 1), Source(source, 1)])) == 1

    def test_cycles_terminate(self):
        a = MethodHandle("A", "a", "()V")
        b = MethodHandle("A", "b", "()V")
        calls = [GraphCall(a, b, 0, None, 0), GraphCall(b, a, 0, None, 0)]
        assert _search(calls).discover([Source(a, 0)]) == []

    def test_sink_is_not_expanded(self):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        after = MethodHandle("java/lang/Process", "waitFor", "()I")
        calls = [GraphCall(source, EXEC, 1, None, 0), GraphCall(EXEC, after, 0, None, 0)]
        chains = _search(calls).discover([Source(source, 1)])
        assert all(len(chain) == 2 for chain in chains)


class TestOutput:
    def test_format_chain(self):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        text = format_chain(_chain((source, 1), (EXEC, 0)))
        assert text == (
            "Evil.readObject(Ljava/io/ObjectInputStream;)V (1)\n"
            "  java/lang/Runtime.exec(Ljava/lang/String;)Ljava/lang/Process; (0)"
        )

    def test_write_separates_chains_with_blank_line(self, tmp_path):
        source = MethodHandle("Evil", "readObject", READ_OBJECT)
        chain = _chain((source, 1), (EXEC, 0))
        path = tmp_path / "gadget-chains.txt"
        write_gadget_chains(path, [chain, chain])
        text = path.read_text()
        assert text == (format_chain(chain) + "\n\n") * 2
