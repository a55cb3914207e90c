"""
Tests for the class hierarchy index and override resolution.
"""

from gadgetinspector.model.hierarchy import (
    InheritanceMap,
    derive_inheritance,
    get_all_method_implementations,
)
from gadgetinspector.model.references import ClassReference, MethodHandle, MethodReference


def _class_map():
    refs = [
        ClassReference("java/lang/Object", None),
        ClassReference("I", "java/lang/Object", is_interface=True),
        ClassReference("Base", "java/lang/Object", interfaces=("I",)),
        ClassReference("Evil", "Base"),
        ClassReference("Orphan", "missing/Parent"),
    ]
    return {ref.name: ref for ref in refs}


class TestDeriveInheritance:
    def test_transitive_ancestors(self):
        inheritance = derive_inheritance(_class_map())
        assert inheritance.get_super_classes("Evil") == {"Base", "I", "java/lang/Object"}
        assert inheritance.get_super_classes("Base") == {"I", "java/lang/Object"}
        assert inheritance.get_super_classes("java/lang/Object") == set()

    def test_unknown_parent_is_a_dead_end(self):
        inheritance = derive_inheritance(_class_map())
        assert inheritance.get_super_classes("Orphan") == set()
        assert "missing/Parent" not in inheritance

    def test_subclass_is_proper(self):
        inheritance = derive_inheritance(_class_map())
        assert inheritance.is_subclass_of("Evil", "I")
        assert not inheritance.is_subclass_of("Evil", "Evil")
        assert not inheritance.is_subclass_of("Unknown", "java/lang/Object")

    def test_descendants_invert_ancestors(self):
        inheritance = derive_inheritance(_class_map())
        for name, ancestors in inheritance.items():
            for ancestor in ancestors:
                assert name in inheritance.get_sub_classes(ancestor)
        assert inheritance.get_sub_classes("I") == {"Base", "Evil"}

    def test_absent_entries(self):
        inheritance = derive_inheritance(_class_map())
        assert inheritance.get_super_classes("Unknown") is None
        assert inheritance.get_sub_classes("Evil") is None
        assert len(inheritance) == 5

    def test_ancestor_of_ancestor_is_ancestor(self):
        inheritance = derive_inheritance(_class_map())
        for name, ancestors in inheritance.items():
            for ancestor in ancestors:
                assert inheritance.get_super_classes(ancestor) <= ancestors


def test_cyclic_hierarchy_terminates():
    class_map = {
        "A": ClassReference("A", "B"),
        "B": ClassReference("B", "A"),
    }
    inheritance = derive_inheritance(class_map)
    assert inheritance.get_super_classes("A") == {"B"}
    assert inheritance.get_super_classes("B") == {"A"}


def test_inheritance_map_from_plain_mapping():
    inheritance = InheritanceMap({"C": ["B", "A"], "B": ["A"], "A": []})
    assert inheritance.get_sub_classes("A") == {"B", "C"}
    assert inheritance.get_super_classes("C") == {"A", "B"}


class TestMethodImplementations:
    def _methods(self, *handles, static=()):
        return {h: MethodReference(h, h in static) for h in handles}

    def test_overrides_from_descendants(self):
        inheritance = derive_inheritance(_class_map())
        base_m = MethodHandle("Base", "m", "()V")
        evil_m = MethodHandle("Evil", "m", "()V")
        iface_m = MethodHandle("I", "m", "()V")
        impls = get_all_method_implementations(
            inheritance, self._methods(base_m, evil_m, iface_m))
        assert impls[base_m] == {evil_m}
        assert impls[iface_m] == {base_m, evil_m}
        assert evil_m not in impls

    def test_descriptor_must_match(self):
        inheritance = derive_inheritance(_class_map())
        base_m = MethodHandle("Base", "m", "()V")
        other = MethodHandle("Evil", "m", "(I)V")
        impls = get_all_method_implementations(inheritance, self._methods(base_m, other))
        assert base_m not in impls

    def test_static_methods_have_no_overrides(self):
        inheritance = derive_inheritance(_class_map())
        base_m = MethodHandle("Base", "s", "()V")
        evil_m = MethodHandle("Evil", "s", "()V")
        impls = get_all_method_implementations(
            inheritance, self._methods(base_m, evil_m, static={base_m, evil_m}))
        assert impls == {}
