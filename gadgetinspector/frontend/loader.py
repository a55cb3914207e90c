"""
Frontend: enumerate class files to analyse.

Class bytes can come from:

- a directory tree of ``.class`` files,
- a JAR (or any ZIP),
- a WAR: ``WEB-INF/classes/**`` plus every nested ``WEB-INF/lib/*.jar``,
- the JDK runtime: ``rt.jar`` (Java 8 and earlier) or the ``jmods/*.jmod``
  files of a modular JDK.

All bytes are read into memory up front.  When two sources provide the same
class, the one enumerated last wins, so application classes listed after
the runtime shadow it.
"""

from __future__ import annotations

import io
import logging
import os
import zipfile
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from gadgetinspector.frontend.classfile import ClassFile, parse_class

logger = logging.getLogger(__name__)

JMOD_MAGIC = b"JM"


@dataclass(frozen=True)
class ClassResource:
    """The bytes of one class file and where they were found."""
    name: str     # Internal class name, e.g. java/lang/String
    origin: str
    data: bytes


def _resource_class_name(entry_name: str) -> Optional[str]:
    if not entry_name.endswith(".class"):
        return None
    if entry_name.startswith("META-INF/") or entry_name.endswith("module-info.class"):
        return None
    return entry_name[:-len(".class")]


def iter_directory(root: Path) -> Iterator[ClassResource]:
    root = Path(root)
    for path in sorted(root.rglob("*.class")):
        name = _resource_class_name(path.relative_to(root).as_posix())
        if name is None:
            continue
        try:
            yield ClassResource(name, str(path), path.read_bytes())
        except OSError as e:
            logger.error("Could not read %s: %s", path, e)


def iter_zip(archive: zipfile.ZipFile, origin: str, prefix: str = "") -> Iterator[ClassResource]:
    """Class files inside an open archive, optionally restricted to ``prefix``."""
    for info in archive.infolist():
        if info.is_dir() or not info.filename.startswith(prefix):
            continue
        name = _resource_class_name(info.filename[len(prefix):])
        if name is None:
            continue
        try:
            data = archive.read(info)
        except (zipfile.BadZipFile, OSError, RuntimeError) as e:
            logger.error("Could not read %s!%s: %s", origin, info.filename, e)
            continue
        yield ClassResource(name, f"{origin}!{info.filename}", data)


def iter_jar(path: Path) -> Iterator[ClassResource]:
    with zipfile.ZipFile(path) as archive:
        yield from iter_zip(archive, str(path))


def iter_war(path: Path) -> Iterator[ClassResource]:
    """Classes of an exploded-in-memory WAR, nested library jars included."""
    with zipfile.ZipFile(path) as war:
        yield from iter_zip(war, str(path), prefix="WEB-INF/classes/")
        for info in war.infolist():
            if not (info.filename.startswith("WEB-INF/lib/") and info.filename.endswith(".jar")):
                continue
            origin = f"{path}!{info.filename}"
            try:
                with zipfile.ZipFile(io.BytesIO(war.read(info))) as nested:
                    yield from iter_zip(nested, origin)
            except zipfile.BadZipFile as e:
                logger.error("Skipping unreadable library %s: %s", origin, e)


def iter_jmod(path: Path) -> Iterator[ClassResource]:
    raw = Path(path).read_bytes()
    if raw[:2] == JMOD_MAGIC:
        raw = raw[4:]
    with zipfile.ZipFile(io.BytesIO(raw)) as archive:
        yield from iter_zip(archive, str(path), prefix="classes/")


def find_java_home() -> Optional[Path]:
    java_home = os.environ.get("JAVA_HOME")
    return Path(java_home) if java_home else None


def iter_runtime(java_home: Optional[Path]) -> Iterator[ClassResource]:
    """JDK runtime classes from ``rt.jar`` or, for modular JDKs, ``jmods``."""
    if java_home is None:
        logger.warning("No JAVA_HOME; runtime classes will not be analysed")
        return
    java_home = Path(java_home)
    for rt_jar in (java_home / "jre" / "lib" / "rt.jar", java_home / "lib" / "rt.jar"):
        if rt_jar.is_file():
            logger.info("Using runtime classes from %s", rt_jar)
            yield from iter_jar(rt_jar)
            return
    jmods = sorted((java_home / "jmods").glob("*.jmod"))
    if jmods:
        logger.info("Using runtime classes from %d jmod files in %s", len(jmods), java_home / "jmods")
        for jmod in jmods:
            yield from iter_jmod(jmod)
        return
    logger.warning("No rt.jar or jmods found under %s; runtime classes will not be analysed", java_home)


def iter_targets(targets: Iterable[Path]) -> Iterator[ClassResource]:
    """A single ``.war`` is read as a web application; otherwise jars and directories."""
    targets = [Path(t) for t in targets]
    if len(targets) == 1 and targets[0].suffix == ".war":
        yield from iter_war(targets[0])
        return
    for target in targets:
        if target.is_dir():
            yield from iter_directory(target)
        else:
            yield from iter_jar(target)


class ClassRepository:
    """
    Class bytes by internal name, with parsed class files cached.

    Stages walk classes in repository order; parsing is repeated on demand
    and memoized up to ``cache_size`` classes.
    """

    def __init__(self, resources: Iterable[ClassResource] = (), cache_size: int = 1024):
        self._resources: Dict[str, ClassResource] = {}
        self.parse = lru_cache(maxsize=cache_size)(self._parse)
        for resource in resources:
            self.add(resource)

    def add(self, resource: ClassResource) -> None:
        self.parse.cache_clear()
        if resource.name in self._resources:
            logger.debug("%s from %s shadows %s", resource.name, resource.origin,
                         self._resources[resource.name].origin)
            del self._resources[resource.name]
        self._resources[resource.name] = resource

    def _parse(self, name: str) -> ClassFile:
        return parse_class(self._resources[name].data)

    def names(self) -> List[str]:
        return list(self._resources)

    def get(self, name: str) -> Optional[ClassResource]:
        return self._resources.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[ClassResource]:
        return iter(list(self._resources.values()))
