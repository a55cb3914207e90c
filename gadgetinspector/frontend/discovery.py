"""
Class and method fact extraction.

One ``ClassReference`` per class and one ``MethodReference`` per declared
method (constructors and static initialisers included).  Only instance
fields are recorded as members; their raw access flags are kept so the
transient bit survives.
"""

from __future__ import annotations

import logging
from typing import Dict, Tuple

from gadgetinspector.frontend.classfile import ClassFile, ClassFormatError
from gadgetinspector.frontend.descriptors import internal_name
from gadgetinspector.frontend.loader import ClassRepository
from gadgetinspector.model.references import ClassReference, Member, MethodHandle, MethodReference

logger = logging.getLogger(__name__)


def class_reference(class_file: ClassFile) -> ClassReference:
    members = tuple(
        Member(f.name, f.access, internal_name(f.desc))
        for f in class_file.fields
        if not f.is_static
    )
    return ClassReference(
        name=class_file.name,
        superclass=class_file.super_name,
        interfaces=tuple(class_file.interfaces),
        is_interface=class_file.is_interface,
        members=members,
    )


class MethodDiscovery:
    def __init__(self) -> None:
        self.discovered_classes: Dict[str, ClassReference] = {}
        self.discovered_methods: Dict[MethodHandle, MethodReference] = {}

    def discover(self, repository: ClassRepository) -> Tuple[
            Dict[str, ClassReference], Dict[MethodHandle, MethodReference]]:
        for name in repository.names():
            try:
                class_file = repository.parse(name)
            except ClassFormatError as e:
                logger.error("Exception analyzing %s: %s", name, e)
                continue
            self.add_class(class_file)
        logger.info("Discovered %d classes and %d methods",
                    len(self.discovered_classes), len(self.discovered_methods))
        return self.discovered_classes, self.discovered_methods

    def add_class(self, class_file: ClassFile) -> None:
        self.discovered_classes[class_file.name] = class_reference(class_file)
        for method in class_file.methods:
            handle = MethodHandle(class_file.name, method.name, method.desc)
            self.discovered_methods[handle] = MethodReference(handle, method.is_static)
