"""
SQL Object Dependency Graph Scanner - Web Application
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging

from flask import Flask, jsonify, request

from sql_scanner.builder import build_graph
from sql_scanner.collector import objects_from_records
from sql_scanner.keys import normalize_key

logger = logging.getLogger(__name__)

app = Flask(__name__)


def _error(message: str, status: int = 400):
    logger.warning(message)
    return jsonify({"success": False, "message": message}), status


def _objects_from_request():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or "objects" not in payload:
        raise ValueError("Request body must be a JSON object with an 'objects' list.")
    return payload, objects_from_records(payload["objects"])


@app.route('/')
def index():
    """Health check"""
    return jsonify({"success": True, "service": "sql-scanner"})


@app.route('/graph', methods=['POST'])
def construct_graph():
    """Build the dependency graph of the posted objects"""
    try:
        _, objects = _objects_from_request()
    except ValueError as e:
        return _error(str(e))

    logger.info("Building graph of %d objects", len(objects))
    graph = build_graph(objects)
    return jsonify({
        "success": True,
        "message": f"Graph built from {len(objects)} objects.",
        "graph": graph.to_dict(),
        "diagnostics": graph.diagnostics.to_list()
    })


@app.route('/graph/subgraph', methods=['POST'])
def construct_subgraph():
    """Neighbourhood of one object in the graph of the posted objects"""
    try:
        payload, objects = _objects_from_request()
    except ValueError as e:
        return _error(str(e))

    key = payload.get("key")
    depth = payload.get("depth", 1)
    if not isinstance(key, str) or not key:
        return _error("Request must name the 'key' of an object.")
    if not isinstance(depth, int) or isinstance(depth, bool) or depth < 0:
        return _error("'depth' must be a non-negative integer.")

    graph = build_graph(objects)
    focus = normalize_key(key)
    if focus not in graph:
        return _error(f"Unknown object key: {key}", 404)

    return jsonify({
        "success": True,
        "message": f"Neighbourhood of {key} at depth {depth}.",
        "graph": graph.subgraph(focus, depth).to_dict(),
        "diagnostics": graph.diagnostics.to_list()
    })


if __name__ == '__main__':
    app.run(debug=True)
