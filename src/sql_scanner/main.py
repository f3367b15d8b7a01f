"""
SQL Object Dependency Graph Scanner - command line interface
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Usage:
    sql-scanner build objects.json -o graph.json
    sql-scanner build objects.json --focus "[db].[dbo].[orders]" --depth 2
    sql-scanner merge part1.json part2.json -o graph.json
"""
import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .builder import build_graph, build_graph_concurrently
from .collector import load_objects
from .config import load_config
from .graph import DependencyGraph, merge_graphs
from .keys import normalize_key

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sql-scanner",
                                     description="Build dependency graphs of SQL Server objects")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Build a graph from a JSON object set")
    build.add_argument("objects", help="JSON file with the objects to analyze")
    build.add_argument("-o", "--output", help="Output file (stdout if omitted)")
    build.add_argument("--config", help="INI file with an [analysis] section")
    build.add_argument("--focus", help="Only output the neighbourhood of this canonical key")
    build.add_argument("--depth", type=int, default=1, help="Neighbourhood depth for --focus")
    build.add_argument("--concurrent", action="store_true",
                       help="Analyze each catalog in its own worker thread")

    merge = subparsers.add_parser("merge", help="Merge graphs written by 'build'")
    merge.add_argument("graphs", nargs="+", help="Graph JSON files")
    merge.add_argument("-o", "--output", help="Output file (stdout if omitted)")
    return parser.parse_args(argv)


def _write(payload: Dict[str, Any], output: Optional[str]):
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        logger.info("Wrote %s", output)
    else:
        print(text)


def run_build(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    objects = load_objects(args.objects, config)
    logger.info("Loaded %d objects from %s", len(objects), args.objects)

    if args.concurrent:
        graph = build_graph_concurrently(objects, config)
    else:
        graph = build_graph(objects, config)

    result = graph
    if args.focus:
        focus = normalize_key(args.focus)
        if focus not in graph:
            logger.error("Unknown object key: %s", args.focus)
            return 1
        result = graph.subgraph(focus, args.depth)

    _write({"graph": result.to_dict(), "diagnostics": graph.diagnostics.to_list()}, args.output)
    return 0


def run_merge(args: argparse.Namespace) -> int:
    graphs = []
    diagnostics: List[Dict[str, Any]] = []
    for path in args.graphs:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict) and "graph" in data:
            diagnostics.extend(data.get("diagnostics") or [])
            data = data["graph"]
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not contain a graph")
        graphs.append(DependencyGraph.from_dict(data))

    merged = merge_graphs(graphs)
    _write({"graph": merged.to_dict(), "diagnostics": diagnostics}, args.output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr
    )

    commands = {"build": run_build, "merge": run_merge}
    try:
        return commands[args.command](args)
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
