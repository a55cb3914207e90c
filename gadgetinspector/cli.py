#!/usr/bin/env python3
"""
CLI entrypoint for gadgetinspector.

Usage:
    gadgetinspector app.war
    gadgetinspector lib1.jar lib2.jar classes/
    gadgetinspector --resume --output build/gi commons-collections-3.1.jar
    gadgetinspector --stage callgraph --output build/gi lib.jar

Returns:
    0: analysis finished (chains, if any, are in gadget-chains.txt)
    1: bad arguments or configuration
    2: a required checkpoint from an earlier stage is missing
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from gadgetinspector.analyzer import STAGES, GadgetInspector
from gadgetinspector.chains import format_chain
from gadgetinspector.checkpoints import GADGET_CHAINS_FILE, CheckpointStore, MissingCheckpointError
from gadgetinspector.config import ConfigError, GadgetInspectorConfig
from gadgetinspector.contracts import get_config, list_configs
from gadgetinspector.frontend.loader import (
    ClassRepository,
    find_java_home,
    iter_runtime,
    iter_targets,
)

LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gadgetinspector",
        description="Find Java deserialization gadget chains in a classpath",
    )
    parser.add_argument("targets", nargs="*", type=Path,
                        help="A single .war, or any number of jars and class directories")
    parser.add_argument("--resume", action="store_true", default=None,
                        help="Reuse checkpoint files from a previous run")
    parser.add_argument("--config", dest="config_name", default=None,
                        help=f"Deserialization strategy (available: {', '.join(list_configs())})")
    parser.add_argument("--settings", type=Path, default=None,
                        help="Settings file (default: .gadgetinspector.yml in the current directory)")
    parser.add_argument("--output", type=Path, default=None,
                        help="Checkpoint and report directory")
    parser.add_argument("--java-home", type=Path, default=None,
                        help="JDK whose runtime classes are analysed (default: $JAVA_HOME)")
    parser.add_argument("--no-runtime", action="store_true",
                        help="Do not analyse the JDK runtime classes")
    parser.add_argument("--stage", choices=STAGES, default=None,
                        help="Run a single stage against existing checkpoints")
    parser.add_argument("--verbose", action="store_true", help="Verbose output")
    return parser


def _load_repository(targets: List[Path], include_runtime: bool,
                     java_home: Optional[Path]) -> ClassRepository:
    repository = ClassRepository()
    if include_runtime:
        for resource in iter_runtime(java_home if java_home is not None else find_java_home()):
            repository.add(resource)
    for resource in iter_targets(targets):
        repository.add(resource)
    return repository


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    logger = logging.getLogger("gadgetinspector")

    try:
        settings = GadgetInspectorConfig.load(args.settings)
    except (ConfigError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    analysis = settings.analysis
    config_name = args.config_name or analysis.config
    resume = args.resume if args.resume is not None else analysis.resume
    output = args.output if args.output is not None else Path(analysis.output_dir)
    include_runtime = analysis.include_runtime and not args.no_runtime
    java_home = args.java_home or (Path(analysis.java_home) if analysis.java_home else None)

    config = get_config(config_name)
    if config is None:
        print(f"Error: invalid config name: {config_name}", file=sys.stderr)
        return 1

    # A single class-reading stage always rewrites its checkpoint, resume or not
    if args.stage in ("classes", "passthrough", "callgraph"):
        needs_classes = True
    else:
        needs_classes = args.stage is None and not resume
    if needs_classes and not args.targets:
        parser.print_usage(sys.stderr)
        print("Error: no jar, war or class directory given", file=sys.stderr)
        return 1
    for target in args.targets:
        if not target.exists():
            print(f"Error: {target} does not exist", file=sys.stderr)
            return 1

    logger.info("Using config: %s", config.name)
    repository = (_load_repository(args.targets, include_runtime, java_home)
                  if args.targets else ClassRepository())
    store = CheckpointStore(output)
    inspector = GadgetInspector(repository, config, store, settings.dataflow_table())

    try:
        if args.stage is not None:
            chains = inspector.run_stage(args.stage)
        else:
            chains = inspector.run(resume=resume)
    except MissingCheckpointError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if chains is not None:
        print("=" * 70)
        print(f"  {len(chains)} gadget chain(s) -> {store.path(GADGET_CHAINS_FILE)}")
        print("=" * 70)
        for chain in chains:
            print(format_chain(chain))
            print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
