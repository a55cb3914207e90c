"""
Tests for JVM type and method descriptor handling.
"""

import pytest

from gadgetinspector.frontend.descriptors import (
    ARRAY,
    OBJECT,
    PRIMITIVE,
    VOID,
    DescriptorError,
    argument_types,
    arguments_size,
    internal_name,
    object_descriptor,
    parse_method_descriptor,
    return_type,
    type_size,
    type_sort,
)


class TestMethodDescriptors:
    """Splitting method descriptors into argument and return types."""

    def test_mixed_arguments(self):
        args, ret = parse_method_descriptor("(IJLjava/lang/String;[[D)Ljava/lang/Object;")
        assert args == ("I", "J", "Ljava/lang/String;", "[[D")
        assert ret == "Ljava/lang/Object;"

    def test_no_arguments_void(self):
        assert argument_types("()V") == ()
        assert return_type("()V") == "V"

    def test_array_of_objects(self):
        assert argument_types("([Ljava/lang/Class;)V") == ("[Ljava/lang/Class;",)

    @pytest.mark.parametrize("desc", [
        "I",
        "(Ljava/lang/String",
        "(V)V",
        "(I",
        "()",
        "()Q",
        "(I)VV",
    ])
    def test_malformed(self, desc):
        with pytest.raises(DescriptorError):
            parse_method_descriptor(desc)


def test_type_sizes():
    assert type_size("V") == 0
    assert type_size("J") == 2
    assert type_size("D") == 2
    assert type_size("I") == 1
    assert type_size("Ljava/lang/Object;") == 1
    assert type_size("[J") == 1


def test_type_sorts():
    assert type_sort("V") == VOID
    assert type_sort("Z") == PRIMITIVE
    assert type_sort("Ljava/util/Map;") == OBJECT
    assert type_sort("[Ljava/util/Map;") == ARRAY


def test_internal_names():
    assert internal_name("Ljava/lang/String;") == "java/lang/String"
    assert internal_name("[Ljava/lang/String;") == "[Ljava/lang/String;"
    assert internal_name("I") == "I"
    assert object_descriptor("java/lang/String") == "Ljava/lang/String;"
    assert object_descriptor("[I") == "[I"


def test_arguments_size_counts_receiver_and_wide_slots():
    assert arguments_size("(JLjava/lang/Object;D)V", is_static=True) == 5
    assert arguments_size("(JLjava/lang/Object;D)V", is_static=False) == 6
    assert arguments_size("()V", is_static=False) == 1
