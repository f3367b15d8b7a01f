"""
SQL Object Dependency Graph Scanner - Graph construction
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from .catalog import ObjectCatalog
from .config import AnalysisConfig
from .diagnostics import Diagnostics
from .engine import ParseFunction, TraversalEngine
from .graph import DependencyGraph, merge_graphs
from .keys import KeyResolver
from .models import SqlObject

logger = logging.getLogger(__name__)


def _seed(graph: DependencyGraph, objects: Iterable[SqlObject], resolver: KeyResolver):
    for obj in objects:
        graph.ensure_node(resolver.key_for(obj), obj.kind, obj.catalog, obj.name)


def build_graph(objects: Iterable[SqlObject], config: Optional[AnalysisConfig] = None,
                parser: Optional[ParseFunction] = None,
                diagnostics: Optional[Diagnostics] = None) -> DependencyGraph:
    """Build the dependency graph of a set of objects.

    Every object gets a node, then each definition is analyzed in input order.

    Args:
        objects: Objects of the run
        config: Analysis settings
        parser: Parse function, SqlParser().parse by default
        diagnostics: Collector for the run's diagnostics

    Returns:
        The graph; its ``diagnostics`` attribute holds what was reported

    Raises:
        ValueError: If objects is None or contains None
    """
    if objects is None:
        raise ValueError("build_graph requires a collection of objects")

    config = config or AnalysisConfig()
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    resolver = KeyResolver(config)
    catalog = ObjectCatalog(objects, resolver, diagnostics)

    graph = DependencyGraph(diagnostics)
    _seed(graph, catalog, resolver)
    engine = TraversalEngine(catalog, graph, resolver, parser, diagnostics, config)
    for obj in catalog:
        engine.analyze(obj)

    logger.info("Built graph: %d nodes, %d edges, %d diagnostics",
                graph.graph.number_of_nodes(), graph.graph.number_of_edges(), len(diagnostics))
    return graph


def partition_by_catalog(objects: Iterable[SqlObject]) -> Dict[str, List[SqlObject]]:
    """Group objects by catalog name (case-insensitive), keeping input order."""
    partitions: Dict[str, List[SqlObject]] = {}
    for obj in objects:
        partitions.setdefault(obj.catalog.lower(), []).append(obj)
    return partitions


def build_graph_concurrently(objects: Iterable[SqlObject], config: Optional[AnalysisConfig] = None,
                             max_workers: Optional[int] = None,
                             parser: Optional[ParseFunction] = None) -> DependencyGraph:
    """Build one graph per catalog in a thread pool and merge them.

    All workers resolve names against the same catalog of every object, so
    the result equals build_graph on the same input.
    """
    if objects is None:
        raise ValueError("build_graph requires a collection of objects")

    config = config or AnalysisConfig()
    resolver = KeyResolver(config)
    catalog_diagnostics = Diagnostics()
    catalog = ObjectCatalog(objects, resolver, catalog_diagnostics)
    partitions = partition_by_catalog(catalog)
    workers = max_workers if max_workers is not None else config.max_workers

    def build_partition(partition: List[SqlObject]) -> DependencyGraph:
        diagnostics = Diagnostics()
        graph = DependencyGraph(diagnostics)
        _seed(graph, partition, resolver)
        engine = TraversalEngine(catalog, graph, resolver, parser, diagnostics, config)
        for obj in partition:
            engine.analyze(obj)
        return graph

    logger.info("Building %d catalog partitions", len(partitions))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        graphs = list(executor.map(build_partition, partitions.values()))

    return merge_graphs([DependencyGraph(catalog_diagnostics)] + graphs)
