# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job graph operations for execution planning.

Uses NetworkX for:
- Acyclicity validation
- Deterministic topological sorting
- Ancestor closure for trigger job selection
"""

from typing import Dict, Iterable, List, Set

import networkx as nx

from relay.errors import CompileError, CycleDetected


class JobGraph:
    """Directed graph of `needs` edges. An edge u -> v means v needs u."""

    def __init__(self) -> None:
        self._graph = nx.DiGraph()

    @classmethod
    def from_needs(cls, needs: Dict[str, Iterable[str]]) -> "JobGraph":
        """Build a graph from a node -> predecessors mapping.

        Raises:
            CompileError: If a predecessor is not a known node
        """
        graph = cls()
        for node_id in needs:
            graph.add_node(node_id)
        for node_id, predecessors in needs.items():
            for pred in predecessors:
                if pred not in needs:
                    raise CompileError(f"'{node_id}' needs unknown job '{pred}'")
                graph.add_edge(pred, node_id)
        return graph

    def add_node(self, node_id: str) -> None:
        self._graph.add_node(node_id)

    def add_edge(self, before: str, after: str) -> None:
        self._graph.add_edge(before, after)

    @property
    def nodes(self) -> List[str]:
        return sorted(self._graph.nodes())

    def predecessors(self, node_id: str) -> List[str]:
        return sorted(self._graph.predecessors(node_id))

    def successors(self, node_id: str) -> List[str]:
        return sorted(self._graph.successors(node_id))

    def validate(self) -> None:
        """Reject cycles, including self-dependencies.

        Raises:
            CycleDetected: If the graph contains a cycle
        """
        if nx.is_directed_acyclic_graph(self._graph):
            return
        cycle = nx.find_cycle(self._graph)
        path = [edge[0] for edge in cycle] + [cycle[0][0]]
        raise CycleDetected(path)

    def topological_order(self) -> List[str]:
        """Return nodes in lexicographic topological order.

        The same graph always yields the same order.

        Raises:
            CycleDetected: If graph has cycles
        """
        self.validate()
        return list(nx.lexicographical_topological_sort(self._graph))

    def closure(self, roots: Iterable[str]) -> Set[str]:
        """Return roots plus every node they transitively depend on."""
        selected: Set[str] = set()
        for root in roots:
            if not self._graph.has_node(root):
                raise CompileError(f"Unknown job: {root}")
            selected.add(root)
            selected |= nx.ancestors(self._graph, root)
        return selected

    def levels(self) -> List[List[str]]:
        """Group nodes into waves that may run concurrently."""
        self.validate()
        return [sorted(generation) for generation in nx.topological_generations(self._graph)]
