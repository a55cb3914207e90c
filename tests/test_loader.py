"""
Tests for class-byte enumeration from directories, jars, wars, jmods and
the JDK runtime, and for the class repository.
"""

import io
import zipfile

from gadgetinspector.frontend.loader import (
    ClassRepository,
    ClassResource,
    find_java_home,
    iter_directory,
    iter_jar,
    iter_jmod,
    iter_runtime,
    iter_targets,
    iter_war,
)

from jvm_builder import ClassBuilder


def class_bytes(name):
    return ClassBuilder(name).to_bytes()


def zip_bytes(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buf.getvalue()


def write_jar(path, *class_names, extra=None):
    entries = {f"{name}.class": class_bytes(name) for name in class_names}
    entries.update(extra or {})
    path.write_bytes(zip_bytes(entries))
    return path


def names(resources):
    return sorted(r.name for r in resources)


class TestDirectory:
    def test_nested_class_files(self, tmp_path):
        pkg = tmp_path / "com" / "example"
        pkg.mkdir(parents=True)
        (pkg / "A.class").write_bytes(class_bytes("com/example/A"))
        (pkg / "A$Inner.class").write_bytes(class_bytes("com/example/A$Inner"))
        (pkg / "notes.txt").write_text("ignored")
        (tmp_path / "module-info.class").write_bytes(b"")
        assert names(iter_directory(tmp_path)) == ["com/example/A", "com/example/A$Inner"]


class TestArchives:
    def test_jar_skips_metadata(self, tmp_path):
        jar = write_jar(tmp_path / "lib.jar", "com/example/A", "com/example/B", extra={
            "META-INF/MANIFEST.MF": "Manifest-Version: 1.0\n",
            "META-INF/versions/9/com/example/A.class": b"",
            "module-info.class": b"",
            "app.properties": "x=1",
        })
        resources = list(iter_jar(jar))
        assert names(resources) == ["com/example/A", "com/example/B"]
        assert resources[0].origin.startswith(f"{jar}!")

    def test_war_classes_and_nested_libraries(self, tmp_path):
        nested = zip_bytes({"org/dep/D.class": class_bytes("org/dep/D")})
        war = tmp_path / "app.war"
        war.write_bytes(zip_bytes({
            "WEB-INF/classes/com/example/A.class": class_bytes("com/example/A"),
            "WEB-INF/lib/dep.jar": nested,
            "WEB-INF/lib/broken.jar": b"not a zip",
            "index.jsp": "<html/>",
        }))
        resources = list(iter_war(war))
        assert names(resources) == ["com/example/A", "org/dep/D"]
        dep = next(r for r in resources if r.name == "org/dep/D")
        assert dep.origin == f"{war}!WEB-INF/lib/dep.jar!org/dep/D.class"

    def test_jmod_header_and_prefix(self, tmp_path):
        jmod = tmp_path / "java.base.jmod"
        jmod.write_bytes(b"JM\x01\x00" + zip_bytes({
            "classes/java/lang/Object.class": class_bytes("java/lang/Object"),
            "classes/module-info.class": b"",
            "lib/libjava.so": b"\x7fELF",
        }))
        assert names(iter_jmod(jmod)) == ["java/lang/Object"]


class TestTargets:
    def test_single_war_is_a_web_application(self, tmp_path):
        war = tmp_path / "app.war"
        war.write_bytes(zip_bytes({
            "WEB-INF/classes/com/example/A.class": class_bytes("com/example/A"),
        }))
        assert names(iter_targets([war])) == ["com/example/A"]

    def test_jars_and_directories(self, tmp_path):
        jar = write_jar(tmp_path / "lib.jar", "lib/L")
        classes = tmp_path / "classes"
        (classes / "app").mkdir(parents=True)
        (classes / "app" / "Main.class").write_bytes(class_bytes("app/Main"))
        assert names(iter_targets([jar, classes])) == ["app/Main", "lib/L"]


class TestRuntime:
    def test_rt_jar(self, tmp_path):
        lib = tmp_path / "jre" / "lib"
        lib.mkdir(parents=True)
        write_jar(lib / "rt.jar", "java/lang/Object", "java/lang/String")
        assert names(iter_runtime(tmp_path)) == ["java/lang/Object", "java/lang/String"]

    def test_jmods(self, tmp_path):
        jmods = tmp_path / "jmods"
        jmods.mkdir()
        (jmods / "java.base.jmod").write_bytes(b"JM\x01\x00" + zip_bytes({
            "classes/java/lang/Object.class": class_bytes("java/lang/Object"),
        }))
        assert names(iter_runtime(tmp_path)) == ["java/lang/Object"]

    def test_nothing_found(self, tmp_path):
        assert list(iter_runtime(tmp_path)) == []
        assert list(iter_runtime(None)) == []

    def test_java_home_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("JAVA_HOME", str(tmp_path))
        assert find_java_home() == tmp_path
        monkeypatch.delenv("JAVA_HOME")
        assert find_java_home() is None


class TestClassRepository:
    def test_later_source_shadows_earlier(self):
        repository = ClassRepository([
            ClassResource("A", "runtime", ClassBuilder("A", super_name="java/lang/Object").to_bytes()),
        ])
        assert repository.parse("A").super_name == "java/lang/Object"
        repository.add(ClassResource("A", "app", ClassBuilder("A", super_name="Base").to_bytes()))
        assert repository.get("A").origin == "app"
        assert repository.parse("A").super_name == "Base"
        assert len(repository) == 1

    def test_membership_and_order(self):
        repository = ClassRepository(
            ClassResource(name, "test", class_bytes(name)) for name in ("B", "A", "C"))
        assert repository.names() == ["B", "A", "C"]
        assert "A" in repository
        assert "Z" not in repository
        assert repository.get("Z") is None
        assert [r.name for r in repository] == ["B", "A", "C"]
