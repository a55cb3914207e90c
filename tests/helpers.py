"""Shared builders for analysis tests."""

from gadgetinspector.contracts.javaserial import JavaDeserializationConfig
from gadgetinspector.frontend.classfile import ACC_ABSTRACT, ACC_INTERFACE, ACC_PUBLIC, ACC_SUPER
from gadgetinspector.frontend.discovery import MethodDiscovery
from gadgetinspector.frontend.loader import ClassRepository, ClassResource
from gadgetinspector.model.hierarchy import derive_inheritance
from gadgetinspector.semantics.context import AnalysisContext, SerializabilityOracle

from jvm_builder import ClassBuilder

OBJECT = "java/lang/Object"
SERIALIZABLE = "java/io/Serializable"
OBJECT_DESC = "Ljava/lang/Object;"


def jdk_builders():
    """The minimum of the JDK the serializability rules need to see."""
    return [
        ClassBuilder(OBJECT, super_name=None),
        ClassBuilder(SERIALIZABLE, access=ACC_PUBLIC | ACC_INTERFACE | ACC_ABSTRACT),
    ]


def serializable_class(name, super_name=OBJECT):
    return ClassBuilder(name, super_name=super_name, interfaces=[SERIALIZABLE],
                        access=ACC_PUBLIC | ACC_SUPER)


def repository_of(*builders):
    return ClassRepository(ClassResource(b.name, "<test>", b.to_bytes()) for b in builders)


def context_for(repository):
    """Class model, hierarchy and jserial serializability for a repository."""
    classes, methods = MethodDiscovery().discover(repository)
    inheritance = derive_inheritance(classes)
    decider = JavaDeserializationConfig().get_serializable_decider(methods, inheritance)
    return AnalysisContext(classes, inheritance, SerializabilityOracle(decider, inheritance))


def method_of(repository, class_name, method_name):
    class_file = repository.parse(class_name)
    for method in class_file.methods:
        if method.name == method_name:
            return method
    raise KeyError(f"{class_name}.{method_name}")
