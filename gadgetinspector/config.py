"""
Configuration file loader for ``.gadgetinspector.yml``.

Provides sane defaults so the tool works out of the box even without a
config file, while allowing per-project customisation of the analysis run
and extra dataflow facts for library methods.

Example::

    analysis:
      config: jserial
      resume: false
      output-dir: build/gadgets
      include-runtime: true
      java-home: /usr/lib/jvm/java-8-openjdk

    dataflow:
      - class: com/example/Wrapper
        method: unwrap
        desc: ()Ljava/lang/Object;
        args: [0]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from gadgetinspector.model.references import MethodHandle
from gadgetinspector.semantics.dataflow_table import DataflowTable

CONFIG_FILENAMES = (".gadgetinspector.yml", ".gadgetinspector.yaml")


class ConfigError(ValueError):
    """Raised for a config file that does not have the expected shape."""


@dataclass
class AnalysisSettings:
    config: str = "jserial"
    resume: bool = False
    output_dir: str = "."
    include_runtime: bool = True
    java_home: Optional[str] = None


@dataclass
class DataflowEntry:
    class_name: str
    method: str
    desc: str
    args: List[int] = field(default_factory=list)

    @property
    def handle(self) -> MethodHandle:
        return MethodHandle(self.class_name, self.method, self.desc)


@dataclass
class GadgetInspectorConfig:
    """Top-level configuration for gadgetinspector."""
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    dataflow: List[DataflowEntry] = field(default_factory=list)

    @classmethod
    def load(cls, path: Optional[Path] = None, search_dir: Optional[Path] = None) -> "GadgetInspectorConfig":
        """Load ``path``, or the first config file found in ``search_dir``, falling back to defaults."""
        if path is None:
            search_dir = Path(search_dir) if search_dir is not None else Path.cwd()
            for name in CONFIG_FILENAMES:
                if (search_dir / name).exists():
                    path = search_dir / name
                    break
        if path is None:
            return cls()

        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{path}: expected a mapping at the top level")
        return cls._from_dict(raw)

    @classmethod
    def _from_dict(cls, raw: Dict[str, Any]) -> "GadgetInspectorConfig":
        analysis_raw = raw.get("analysis", {}) or {}
        dataflow_raw = raw.get("dataflow", []) or []

        analysis = AnalysisSettings(
            config=str(analysis_raw.get("config", "jserial")),
            resume=bool(analysis_raw.get("resume", False)),
            output_dir=str(analysis_raw.get("output-dir", analysis_raw.get("output_dir", "."))),
            include_runtime=bool(analysis_raw.get("include-runtime",
                                                  analysis_raw.get("include_runtime", True))),
            java_home=analysis_raw.get("java-home", analysis_raw.get("java_home")),
        )

        if not isinstance(dataflow_raw, list):
            raise ConfigError("dataflow: expected a list of entries")
        dataflow = []
        for entry in dataflow_raw:
            try:
                dataflow.append(DataflowEntry(
                    class_name=entry["class"],
                    method=entry["method"],
                    desc=entry["desc"],
                    args=[int(a) for a in entry.get("args", [])],
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Bad dataflow entry {entry!r}: {e}") from e

        return cls(analysis=analysis, dataflow=dataflow)

    def dataflow_table(self) -> DataflowTable:
        """JDK defaults plus the configured entries."""
        table = DataflowTable.jdk_defaults()
        for entry in self.dataflow:
            table.add(entry.handle, entry.args)
        return table

    def to_yaml(self) -> str:
        data: Dict[str, Any] = {
            "analysis": {
                "config": self.analysis.config,
                "resume": self.analysis.resume,
                "output-dir": self.analysis.output_dir,
                "include-runtime": self.analysis.include_runtime,
            },
        }
        if self.analysis.java_home:
            data["analysis"]["java-home"] = self.analysis.java_home
        if self.dataflow:
            data["dataflow"] = [
                {"class": e.class_name, "method": e.method, "desc": e.desc, "args": list(e.args)}
                for e in self.dataflow
            ]
        return yaml.safe_dump(data, sort_keys=False)
