"""
SQL Object Dependency Graph Scanner - Dependency graph store
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Vertices are canonical keys; an edge u -> v means data or control flows from u
to v. A node's inNodes are its predecessors and its outNodes its successors, so
the two adjacency views can never disagree.
"""
import logging
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

import matplotlib.pyplot as plt
import networkx as nx

from .config import GRAPH_CONFIG, OBJECT_COLORS
from .diagnostics import DiagnosticCode, Diagnostics
from .models import EdgeKind, GraphNode, ObjectType

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed graph of database objects backed by networkx."""

    def __init__(self, diagnostics: Optional[Diagnostics] = None):
        self.graph = nx.DiGraph()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    # Nodes

    def ensure_node(self, key: str, kind: ObjectType, catalog: str, name: Optional[str] = None):
        """Create the node if absent; an existing node is left untouched."""
        if self.graph.has_node(key):
            return
        self.graph.add_node(key, name=name or key, kind=ObjectType.from_value(kind), catalog=catalog)

    def has_node(self, key: str) -> bool:
        return self.graph.has_node(key)

    def kind_of(self, key: str) -> Optional[ObjectType]:
        if not self.graph.has_node(key):
            return None
        return self.graph.nodes[key]['kind']

    def node(self, key: str) -> Optional[GraphNode]:
        """Snapshot of one node, or None if the key is unknown."""
        if not self.graph.has_node(key):
            return None
        attrs = self.graph.nodes[key]
        return GraphNode(
            name=attrs['name'],
            kind=attrs['kind'],
            catalog=attrs['catalog'],
            in_nodes=set(self.graph.predecessors(key)),
            out_nodes=set(self.graph.successors(key))
        )

    def nodes(self) -> Dict[str, GraphNode]:
        return {key: self.node(key) for key in self.graph.nodes}

    def in_nodes(self, key: str) -> set:
        if not self.graph.has_node(key):
            return set()
        return set(self.graph.predecessors(key))

    def out_nodes(self, key: str) -> set:
        if not self.graph.has_node(key):
            return set()
        return set(self.graph.successors(key))

    def edges(self) -> Dict[Tuple[str, str], FrozenSet[EdgeKind]]:
        return {
            (source, target): frozenset(attrs['relationship_types'])
            for source, target, attrs in self.graph.edges(data=True)
        }

    def edge_kinds(self, source: str, target: str) -> FrozenSet[EdgeKind]:
        if not self.graph.has_edge(source, target):
            return frozenset()
        return frozenset(self.graph.edges[source, target]['relationship_types'])

    def __contains__(self, key: str) -> bool:
        return self.graph.has_node(key)

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    # Edges

    def add_data_flow_edge(self, source_key: str, consumer_key: str) -> bool:
        """Data of source_key is read by consumer_key."""
        return self._add_edge(source_key, consumer_key, EdgeKind.DATA_FLOW)

    def add_write_edge(self, modifier_key: str, target_key: str) -> bool:
        """modifier_key writes to target_key, which must be a table."""
        kind = self.kind_of(target_key)
        if kind is not None and kind != ObjectType.TABLE:
            self.diagnostics.report(
                DiagnosticCode.UNSUPPORTED_WRITE_TARGET,
                f"Write to {kind.value} {target_key} is not modeled",
                object_key=modifier_key)
            return False
        return self._add_edge(modifier_key, target_key, EdgeKind.WRITE)

    def add_call_edge(self, caller_key: str, callee_key: str) -> bool:
        """caller_key invokes callee_key."""
        return self._add_edge(caller_key, callee_key, EdgeKind.CALL)

    def _add_edge(self, source: str, target: str, kind: EdgeKind) -> bool:
        if source == target:
            return False
        missing = [key for key in (source, target) if not self.graph.has_node(key)]
        if missing:
            self.diagnostics.report(
                DiagnosticCode.MISSING_ENDPOINT,
                f"Dropped {kind.value} edge {source} -> {target}: unknown {', '.join(missing)}",
                object_key=source if source not in missing else target)
            return False
        if self.graph.has_edge(source, target):
            self.graph.edges[source, target]['relationship_types'].add(kind)
        else:
            self.graph.add_edge(source, target, relationship_types={kind})
        return True

    # Merge

    def merge(self, other: "DependencyGraph") -> "DependencyGraph":
        """Union of two graphs as a new graph.

        Nodes present in both keep the smallest (name, kind, catalog) triple,
        which keeps the merge independent of argument order. Diagnostics are
        combined without duplicates, first occurrence first.
        """
        combined = dict.fromkeys(list(self.diagnostics) + list(other.diagnostics))
        merged = DependencyGraph(Diagnostics(list(combined)))
        for source in (self, other):
            for key, attrs in source.graph.nodes(data=True):
                if merged.graph.has_node(key):
                    current = merged.graph.nodes[key]
                    if _node_order(attrs) < _node_order(current):
                        current.update(name=attrs['name'], kind=attrs['kind'], catalog=attrs['catalog'])
                else:
                    merged.graph.add_node(key, name=attrs['name'], kind=attrs['kind'],
                                          catalog=attrs['catalog'])
            for u, v, attrs in source.graph.edges(data=True):
                if merged.graph.has_edge(u, v):
                    merged.graph.edges[u, v]['relationship_types'].update(attrs['relationship_types'])
                else:
                    merged.graph.add_edge(u, v, relationship_types=set(attrs['relationship_types']))
        logger.debug("Merged graphs: %d nodes, %d edges",
                     merged.graph.number_of_nodes(), merged.graph.number_of_edges())
        return merged

    # Serialization

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """JSON-ready mapping of canonical key to node."""
        result = {}
        for key in sorted(self.graph.nodes):
            attrs = self.graph.nodes[key]
            result[key] = {
                'name': attrs['name'],
                'type': attrs['kind'].value,
                'catalog': attrs['catalog'],
                'inNodes': sorted(self.graph.predecessors(key)),
                'outNodes': sorted(self.graph.successors(key))
            }
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]],
                  diagnostics: Optional[Diagnostics] = None) -> "DependencyGraph":
        """Rebuild a graph saved with to_dict.

        Raises:
            ValueError: If a node entry is malformed
        """
        graph = cls(diagnostics)
        for key, entry in data.items():
            try:
                graph.graph.add_node(key, name=entry['name'],
                                     kind=ObjectType.from_value(entry['type']),
                                     catalog=entry['catalog'])
            except (KeyError, TypeError) as e:
                raise ValueError(f"Malformed graph node {key!r}: {e}")
        for key, entry in data.items():
            for target in entry.get('outNodes', []):
                graph._restore_edge(key, target)
            for source in entry.get('inNodes', []):
                graph._restore_edge(source, key)
        return graph

    def _restore_edge(self, source: str, target: str):
        if not (self.graph.has_node(source) and self.graph.has_node(target)):
            raise ValueError(f"Edge {source} -> {target} refers to an unknown node")
        if not self.graph.has_edge(source, target):
            self.graph.add_edge(source, target, relationship_types=set())

    # Presentation

    def subgraph(self, key: str, depth: int = 1) -> "DependencyGraph":
        """Neighbourhood of a node up to depth hops in either direction."""
        result = DependencyGraph()
        if not self.graph.has_node(key):
            return result

        nodes = {key}
        frontier = {key}
        for _ in range(max(depth, 0)):
            next_frontier = set()
            for node in frontier:
                next_frontier.update(self.graph.predecessors(node))
                next_frontier.update(self.graph.successors(node))
            frontier = next_frontier - nodes
            nodes.update(next_frontier)
            if not frontier:
                break

        view = self.graph.subgraph(nodes)
        for node, attrs in view.nodes(data=True):
            result.graph.add_node(node, **attrs)
        for u, v, attrs in view.edges(data=True):
            result.graph.add_edge(u, v, relationship_types=set(attrs['relationship_types']))
        return result

    def visualize(self, highlight_node: Optional[str] = None):
        """Draw the graph with matplotlib.

        Args:
            highlight_node: Node to highlight together with its neighbours

        Returns:
            The matplotlib figure, or None for an empty graph
        """
        if self.graph.number_of_nodes() == 0:
            return None

        pos = nx.spring_layout(self.graph, seed=42)
        figure = plt.figure(figsize=(GRAPH_CONFIG['width'], GRAPH_CONFIG['height']))

        for kind, color in OBJECT_COLORS.items():
            nodes = [node for node, attrs in self.graph.nodes(data=True)
                     if attrs['kind'].value == kind]
            nx.draw_networkx_nodes(self.graph, pos, nodelist=nodes, node_color=color,
                                   node_size=GRAPH_CONFIG['node_size'])

        if highlight_node and self.graph.has_node(highlight_node):
            neighbours = list(self.in_nodes(highlight_node) | self.out_nodes(highlight_node))
            nx.draw_networkx_nodes(self.graph, pos, nodelist=neighbours, node_color='orange',
                                   node_size=GRAPH_CONFIG['node_size'])
            nx.draw_networkx_nodes(self.graph, pos, nodelist=[highlight_node], node_color='red',
                                   node_size=GRAPH_CONFIG['node_size'] * 1.2)

        nx.draw_networkx_edges(self.graph, pos, edge_color='gray', arrows=True,
                               arrowsize=GRAPH_CONFIG['arrow_size'])
        labels = {node: attrs['name'] for node, attrs in self.graph.nodes(data=True)}
        nx.draw_networkx_labels(self.graph, pos, labels=labels, font_size=GRAPH_CONFIG['font_size'])

        plt.title("SQL Object Dependency Graph")
        plt.axis('off')
        plt.tight_layout()
        return figure


def _node_order(attrs: Dict[str, Any]) -> Tuple[str, str, str]:
    return attrs['name'], attrs['kind'].value, attrs['catalog']


def merge_graphs(graphs: Iterable[DependencyGraph]) -> DependencyGraph:
    """Merge any number of graphs; an empty input gives an empty graph."""
    merged = DependencyGraph()
    for graph in graphs:
        merged = merged.merge(graph)
    return merged
