"""
Gadget chain search.

Breadth-first search over the taint-edge call graph, starting from the
deserialization sources.  A search node is a (method, tainted argument)
link; from a link, every edge leaving that method from that argument is
followed to every implementation the callee may dispatch to.  Each link is
expanded at most once across the whole search, so the first (shortest)
chain to reach a link wins.  A link satisfying the sink predicate ends its
chain, which is reported instead of expanded.
"""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Set

from gadgetinspector.contracts.base import ImplementationFinder, SinkPredicate
from gadgetinspector.model.hierarchy import InheritanceMap
from gadgetinspector.model.references import (
    GadgetChain,
    GadgetChainLink,
    GraphCall,
    MethodHandle,
    Source,
)

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 1000


class GadgetChainDiscovery:
    def __init__(
        self,
        graph_calls: Iterable[GraphCall],
        implementation_finder: ImplementationFinder,
        sink_predicate: SinkPredicate,
        inheritance: InheritanceMap,
    ):
        self.implementation_finder = implementation_finder
        self.sink_predicate = sink_predicate
        self.inheritance = inheritance
        self.calls_by_caller: Dict[MethodHandle, List[GraphCall]] = {}
        for call in graph_calls:
            self.calls_by_caller.setdefault(call.caller, []).append(call)

    def discover(self, sources: Iterable[Source]) -> List[GadgetChain]:
        """All chains found, in discovery order, without duplicates."""
        explored: Set[GadgetChainLink] = set()
        frontier: Deque[GadgetChain] = deque()
        for source in sources:
            link = GadgetChainLink(source.method, source.tainted_arg_index)
            if link in explored:
                continue
            frontier.append(GadgetChain((link,)))
            explored.add(link)

        discovered: Dict[GadgetChain, None] = {}
        iteration = 0
        while frontier:
            if iteration % PROGRESS_INTERVAL == 0:
                logger.info("Iteration %d, Search space: %d", iteration, len(frontier))
            iteration += 1

            chain = frontier.popleft()
            last = chain.last
            for call in self.calls_by_caller.get(last.method, ()):
                if call.caller_arg_index != last.tainted_arg_index:
                    continue
                for impl in sorted(self.implementation_finder.get_implementations(call.target)):
                    link = GadgetChainLink(impl, call.target_arg_index)
                    if link in explored:
                        continue
                    new_chain = chain.extend(link)
                    if self.sink_predicate.is_sink(impl, call.target_arg_index, self.inheritance):
                        discovered[new_chain] = None
                    else:
                        frontier.append(new_chain)
                        explored.add(link)

        logger.info("Found %d gadget chains.", len(discovered))
        return list(discovered)


def format_chain(chain: GadgetChain) -> str:
    lines = [str(chain.links[0])]
    lines.extend(f"  {link}" for link in chain.links[1:])
    return "\n".join(lines)


def write_gadget_chains(path: Path, chains: Iterable[GadgetChain]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        for chain in chains:
            f.write(format_chain(chain))
            f.write("\n\n")
