"""
Analysis run orchestration.

Runs the pipeline stage by stage, persisting each stage's output to the
checkpoint directory:

    classes      class/method facts and the inheritance map
    passthrough  argument-to-return dataflow per method
    callgraph    argument-to-argument taint edges
    sources      deserialization entry points
    chains       gadget chain search (always re-run)

On a resumed run every stage whose checkpoint already exists is skipped and
its output is read back instead; otherwise stale checkpoints are deleted
first.  Later stages read only checkpoints, never in-memory results, so a
stage can also be run on its own against an existing checkpoint directory.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from gadgetinspector.cfg.call_graph import CallGraphDiscovery
from gadgetinspector.chains import GadgetChainDiscovery, write_gadget_chains
from gadgetinspector.checkpoints import GADGET_CHAINS_FILE, CheckpointStore
from gadgetinspector.contracts.base import GIConfig
from gadgetinspector.frontend.discovery import MethodDiscovery
from gadgetinspector.frontend.loader import ClassRepository
from gadgetinspector.model.hierarchy import derive_inheritance, get_all_method_implementations
from gadgetinspector.model.references import GadgetChain
from gadgetinspector.semantics.context import AnalysisContext, SerializabilityOracle
from gadgetinspector.semantics.dataflow_table import DataflowTable
from gadgetinspector.semantics.passthrough import PassthroughDiscovery

logger = logging.getLogger(__name__)

STAGES = ("classes", "passthrough", "callgraph", "sources", "chains")


class GadgetInspector:
    """One analysis run over a class repository."""

    def __init__(
        self,
        repository: ClassRepository,
        config: GIConfig,
        store: CheckpointStore,
        dataflow: Optional[DataflowTable] = None,
    ):
        self.repository = repository
        self.config = config
        self.store = store
        self.dataflow = dataflow if dataflow is not None else DataflowTable.jdk_defaults()

    def run(self, resume: bool = False) -> List[GadgetChain]:
        if not resume:
            self.store.delete_stale()

        for stage in STAGES[:-1]:
            if self.store.has_stage(stage):
                logger.info("Using existing %s data", stage)
            else:
                self.run_stage(stage)
        chains = self.discover_gadget_chains()
        logger.info("Analysis complete!")
        return chains

    def run_stage(self, stage: str) -> Optional[List[GadgetChain]]:
        if stage == "classes":
            self.discover_classes()
        elif stage == "passthrough":
            self.discover_passthrough()
        elif stage == "callgraph":
            self.discover_call_graph()
        elif stage == "sources":
            self.discover_sources()
        elif stage == "chains":
            return self.discover_gadget_chains()
        else:
            raise ValueError(f"Unknown stage: {stage}")
        return None

    # ------------------------------------------------------------------

    def discover_classes(self) -> None:
        logger.info("Running method discovery...")
        classes, methods = MethodDiscovery().discover(self.repository)
        self.store.save_classes(classes.values())
        self.store.save_methods(methods.values())

        logger.info("Analyzing class hierarchy...")
        self.store.save_inheritance(derive_inheritance(classes))

    def build_context(self, with_passthrough: bool = False) -> AnalysisContext:
        class_map = self.store.load_classes()
        methods = self.store.load_methods()
        inheritance = self.store.load_inheritance()
        decider = self.config.get_serializable_decider(methods, inheritance)
        context = AnalysisContext(
            class_map=class_map,
            inheritance=inheritance,
            serializability=SerializabilityOracle(decider, inheritance),
            dataflow=self.dataflow,
        )
        if with_passthrough:
            context.passthrough.update(self.store.load_passthrough())
        return context

    def discover_passthrough(self) -> None:
        logger.info("Analyzing methods for passthrough dataflow...")
        passthrough = PassthroughDiscovery(self.repository, self.build_context()).discover()
        self.store.save_passthrough(passthrough)

    def discover_call_graph(self) -> None:
        logger.info("Analyzing methods in order to build a call graph...")
        discovery = CallGraphDiscovery(self.repository, self.build_context(with_passthrough=True))
        discovery.discover()
        self.store.save_call_graph(discovery.sorted_calls())

    def discover_sources(self) -> None:
        logger.info("Discovering gadget chain source methods...")
        sources = self.config.get_source_discovery().discover(
            self.store.load_classes(), self.store.load_methods(), self.store.load_inheritance())
        self.store.save_sources(sources)

    def discover_gadget_chains(self) -> List[GadgetChain]:
        logger.info("Searching call graph for gadget chains...")
        methods = self.store.load_methods()
        inheritance = self.store.load_inheritance()
        method_impls = get_all_method_implementations(inheritance, methods)
        self.store.save_method_impls(method_impls)

        search = GadgetChainDiscovery(
            self.store.load_call_graph(),
            self.config.get_implementation_finder(methods, method_impls, inheritance),
            self.config.get_sink_predicate(),
            inheritance,
        )
        chains = search.discover(self.store.load_sources())
        write_gadget_chains(self.store.path(GADGET_CHAINS_FILE), chains)
        return chains
