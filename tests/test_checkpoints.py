"""
Tests for checkpoint file formats and the checkpoint directory.
"""

import pytest

from gadgetinspector.checkpoints import (
    CLASSES_FILE,
    PASSTHROUGH_FILE,
    STAGE_FILES,
    CheckpointStore,
    ClassReferenceFactory,
    GraphCallFactory,
    MissingCheckpointError,
    load_method_impls,
)
from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import (
    ClassReference,
    GraphCall,
    Member,
    MethodHandle,
    MethodReference,
    Source,
)

READ_OBJECT = MethodHandle("Evil", "readObject", "(Ljava/io/ObjectInputStream;)V")
EXEC = MethodHandle("java/lang/Runtime", "exec", "(Ljava/lang/String;)Ljava/lang/Process;")


class TestClassRecords:
    def test_round_trip(self, tmp_path):
        store = CheckpointStore(tmp_path)
        refs = [
            ClassReference("java/lang/Object", None),
            ClassReference("Evil", "java/lang/Object", ("java/io/Serializable", "java/lang/Runnable"),
                           False, (Member("cmd", 0x2, "java/lang/String"), Member("n", 0x80, "I"))),
            ClassReference("Iface", "java/lang/Object", (), True),
        ]
        store.save_classes(refs)
        assert list(store.load_classes().values()) == refs

    def test_line_format(self):
        ref = ClassReference("Evil", "java/lang/Object", ("java/io/Serializable",), False,
                             (Member("cmd", 2, "java/lang/String"), Member("n", 128, "I")))
        fields = ClassReferenceFactory().serialize(ref)
        assert fields == ["Evil", "java/lang/Object", "java/io/Serializable", "false",
                          "cmd!2!java/lang/String!n!128!I"]


def test_methods_round_trip(tmp_path):
    store = CheckpointStore(tmp_path)
    methods = [MethodReference(READ_OBJECT, False),
               MethodReference(MethodHandle("Util", "of", "()LUtil;"), True)]
    store.save_methods(methods)
    assert list(store.load_methods().values()) == methods


def test_inheritance_round_trip(tmp_path):
    store = CheckpointStore(tmp_path)
    inheritance = InheritanceMap({"Evil": {"Base", "java/lang/Object"}, "Base": {"java/lang/Object"},
                                  "java/lang/Object": set()})
    store.save_inheritance(inheritance)
    loaded = store.load_inheritance()
    assert dict(loaded.items()) == dict(inheritance.items())
    assert loaded.get_sub_classes("Base") == {"Evil"}


class TestPassthroughRecords:
    def test_format_and_round_trip(self, tmp_path):
        store = CheckpointStore(tmp_path)
        facts = {READ_OBJECT: {1}, EXEC: {2, 0}, MethodHandle("X", "y", "()V"): set()}
        store.save_passthrough(facts)
        lines = store.path(PASSTHROUGH_FILE).read_text().splitlines()
        assert lines == [
            "Evil\treadObject\t(Ljava/io/ObjectInputStream;)V\t1,",
            "java/lang/Runtime\texec\t(Ljava/lang/String;)Ljava/lang/Process;\t0,2,",
        ]
        assert store.load_passthrough() == {READ_OBJECT: {1}, EXEC: {0, 2}}


class TestGraphCallRecords:
    def test_field_path_preserved(self, tmp_path):
        store = CheckpointStore(tmp_path)
        calls = [
            GraphCall(READ_OBJECT, EXEC, 0, "value", 1),
            GraphCall(READ_OBJECT, EXEC, 1, None, 1),
            GraphCall(READ_OBJECT, EXEC, 0, "inner.cmd", 1),
        ]
        store.save_call_graph(calls)
        assert store.load_call_graph() == calls

    def test_missing_path_is_empty_field(self):
        fields = GraphCallFactory().serialize(GraphCall(READ_OBJECT, EXEC, 1, None, 0))
        assert fields[7] is None
        parsed = GraphCallFactory().parse(
            ["Evil", "readObject", "(Ljava/io/ObjectInputStream;)V",
             "java/lang/Runtime", "exec", "(Ljava/lang/String;)Ljava/lang/Process;", "1", "", "0"])
        assert parsed.caller_arg_path is None


def test_sources_round_trip(tmp_path):
    store = CheckpointStore(tmp_path)
    sources = [Source(READ_OBJECT, 1), Source(MethodHandle("Evil", "hashCode", "()I"), 0)]
    store.save_sources(sources)
    assert store.load_sources() == sources


def test_method_impls_file(tmp_path):
    store = CheckpointStore(tmp_path)
    base_m = MethodHandle("Base", "m", "()V")
    impls = {base_m: {MethodHandle("Evil", "m", "()V"), MethodHandle("Alt", "m", "()V")}}
    store.save_method_impls(impls)
    text = store.path("methodimpl.dat").read_text()
    assert text == "Base\tm\t()V\n\tAlt\tm\t()V\n\tEvil\tm\t()V\n"
    assert load_method_impls(store.path("methodimpl.dat")) == impls


class TestStore:
    def test_missing_checkpoint(self, tmp_path):
        store = CheckpointStore(tmp_path / "nothing-here")
        with pytest.raises(MissingCheckpointError, match="classes.dat"):
            store.load_classes()

    def test_has_stage_needs_every_file(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.save_classes([])
        assert not store.has_stage("classes")
        store.save_methods([])
        store.save_inheritance(InheritanceMap({}))
        assert store.has_stage("classes")

    def test_delete_stale_removes_stage_files_only(self, tmp_path):
        store = CheckpointStore(tmp_path)
        for names in STAGE_FILES.values():
            for name in names:
                store.path(name).write_text("")
        keep = tmp_path / "notes.txt"
        keep.write_text("mine")
        store.delete_stale()
        assert [p.name for p in tmp_path.iterdir()] == ["notes.txt"]

    def test_blank_lines_ignored(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.path(CLASSES_FILE).write_text(
            "\njava/lang/Object\t\t\tfalse\t\n\n")
        assert store.load_classes() == {"java/lang/Object": ClassReference("java/lang/Object", None)}

    def test_save_creates_directory(self, tmp_path):
        store = CheckpointStore(tmp_path / "out" / "nested")
        store.save_sources([Source(READ_OBJECT, 1)])
        assert store.path("sources.dat").exists()
