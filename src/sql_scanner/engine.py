"""
SQL Object Dependency Graph Scanner - Traversal engine
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Walks the syntax tree of each object definition and records the edges it
implies in the dependency graph:

- a table or table-valued function read by the object: data-flow edge from the
  referenced object to the current one
- a scalar function call: data-flow edge from the function to the current one
- INSERT/UPDATE/DELETE/MERGE of a table: write edge from the current object to
  the table
- EXEC of a procedure or function: call edge from the current object to it
- EXEC of a literal string, or sp_executesql with one: the string is parsed
  and walked as if it were part of the definition
"""
import logging
from dataclasses import dataclass, replace
from typing import Callable, FrozenSet, List, Optional, Tuple

from .catalog import ObjectCatalog
from .config import AnalysisConfig
from .diagnostics import DiagnosticCode, Diagnostics, Severity
from .graph import DependencyGraph
from .keys import KeyResolver
from .models import ObjectType, SqlObject
from .parser import ParseError, SqlParser, literal_text
from .syntax import (
    Argument, DmlStatement, ExecuteProcedure, NodeKind, ObjectName, Script,
    SyntaxNode, DML_KINDS
)
from .tracker import DmlTargetTracker, resolve_target_name

logger = logging.getLogger(__name__)

ParseFunction = Callable[[str], Tuple[Script, List[ParseError]]]

DYNAMIC_SQL_PROCEDURES = ('sp_executesql',)


@dataclass(frozen=True)
class TraversalContext:
    """Where the walk currently is; passed down, never mutated."""
    current_key: str
    catalog: str
    schema: str
    depth: int = 0
    cte_names: FrozenSet[str] = frozenset()

    def nested(self) -> "TraversalContext":
        """Context for dynamic SQL run from the current position."""
        return replace(self, depth=self.depth + 1, cte_names=frozenset())

    def with_ctes(self, names) -> "TraversalContext":
        return replace(self, cte_names=self.cte_names | frozenset(names))


class TraversalEngine:
    """Records dependency edges for one object at a time."""

    def __init__(self, catalog: ObjectCatalog, graph: DependencyGraph,
                 resolver: Optional[KeyResolver] = None,
                 parser: Optional[ParseFunction] = None,
                 diagnostics: Optional[Diagnostics] = None,
                 config: Optional[AnalysisConfig] = None):
        self.catalog = catalog
        self.graph = graph
        self.resolver = resolver or catalog.resolver
        self.config = config or self.resolver.config
        self.parse = parser or SqlParser().parse
        self.diagnostics = diagnostics if diagnostics is not None else graph.diagnostics
        self.tracker = DmlTargetTracker()
        self.current: Optional[SqlObject] = None

        self._handlers = {
            NodeKind.TABLE_REFERENCE: self._visit_table_reference,
            NodeKind.FUNCTION_TABLE_REFERENCE: self._visit_function_table_reference,
            NodeKind.FUNCTION_CALL: self._visit_function_call,
            NodeKind.EXECUTE_PROCEDURE: self._visit_execute_procedure,
            NodeKind.EXECUTE_DYNAMIC: self._visit_execute_dynamic,
        }
        for kind in DML_KINDS:
            self._handlers[kind] = self._visit_dml

    def set_current_node(self, obj: SqlObject) -> TraversalContext:
        """Make obj the object edges are attributed to, creating its node."""
        key = self.resolver.key_for(obj)
        self.graph.ensure_node(key, obj.kind, obj.catalog, obj.name)
        self.current = obj
        return TraversalContext(current_key=key, catalog=obj.catalog, schema=obj.schema)

    def analyze(self, obj: SqlObject):
        """Parse the definition of obj and record the edges found in it.

        An object whose definition does not parse keeps its node but
        contributes no edges.
        """
        context = self.set_current_node(obj)
        if obj.kind == ObjectType.TABLE or not obj.definition.strip():
            return

        logger.debug("Analyzing %s", context.current_key)
        tree, errors = self._parse(obj.definition)
        if errors:
            shown = "; ".join(str(error) for error in errors[:3])
            more = f" (+{len(errors) - 3} more)" if len(errors) > 3 else ""
            self.diagnostics.report(
                DiagnosticCode.PARSE_ERROR,
                f"Definition of {obj.qualified_name} does not parse: {shown}{more}",
                object_key=context.current_key, severity=Severity.ERROR)
            return
        self.traverse(tree, context)

    def traverse(self, node: SyntaxNode, context: TraversalContext):
        if node.cte_names:
            context = context.with_ctes(node.cte_names)
        handler = self._handlers.get(node.kind, self._visit_children)
        handler(node, context)

    def _parse(self, text: str) -> Tuple[Optional[Script], List[ParseError]]:
        try:
            return self.parse(text)
        except RecursionError:
            return None, [ParseError("Definition is nested too deeply to parse.")]

    # Resolution helpers

    def _resolve(self, name: ObjectName, context: TraversalContext) -> str:
        return self.resolver.resolve(name, context.catalog, context.schema)

    def _lookup(self, key: str) -> Optional[SqlObject]:
        obj = self.catalog.get(key)
        if obj is not None and key not in self.graph:
            # partitioned builds seed only their own objects
            self.graph.ensure_node(key, obj.kind, obj.catalog, obj.name)
        return obj

    @staticmethod
    def _is_local(name: ObjectName) -> bool:
        return name.base.startswith(('#', '@'))

    @staticmethod
    def _is_cte(name: ObjectName, context: TraversalContext) -> bool:
        return not name.is_qualified and name.base.lower() in context.cte_names

    def _report_invalid(self, node: SyntaxNode, context: TraversalContext):
        self.diagnostics.report(
            DiagnosticCode.INVALID_NAME,
            f"Reference without an object name at line {node.line}",
            object_key=context.current_key)

    def _report_unresolved(self, what: str, name: ObjectName, node: SyntaxNode,
                           context: TraversalContext):
        self.diagnostics.report(
            DiagnosticCode.UNRESOLVED_REFERENCE,
            f"{what} {name} at line {node.line} is not a cataloged object",
            object_key=context.current_key, severity=Severity.INFO)

    # Handlers

    def _visit_children(self, node: SyntaxNode, context: TraversalContext):
        for child in node.children:
            self.traverse(child, context)

    def _visit_table_reference(self, node, context: TraversalContext):
        name = node.name
        if name is None or not name.base:
            self._report_invalid(node, context)
        elif not self._is_local(name) and not self._is_cte(name, context):
            key = self._resolve(name, context)
            obj = self._lookup(key)
            if obj is None:
                self._report_unresolved("Table", name, node, context)
            elif obj.kind == ObjectType.FUNCTION or (
                    obj.kind == ObjectType.TABLE and not self.tracker.is_target(key)):
                self.graph.add_data_flow_edge(key, context.current_key)
        self._visit_children(node, context)

    def _visit_function_table_reference(self, node, context: TraversalContext):
        name = node.name
        if name is None or not name.base:
            self._report_invalid(node, context)
        else:
            key = self._resolve(name, context)
            obj = self._lookup(key)
            if obj is None:
                self._report_unresolved("Table-valued function", name, node, context)
            elif obj.kind == ObjectType.FUNCTION:
                self.graph.add_data_flow_edge(key, context.current_key)
        self._visit_children(node, context)

    def _visit_function_call(self, node, context: TraversalContext):
        # built-in functions never resolve and are not diagnosed
        name = node.name
        if name is not None and name.base:
            key = self._resolve(name, context)
            obj = self._lookup(key)
            if obj is not None and obj.kind == ObjectType.FUNCTION:
                self.graph.add_data_flow_edge(key, context.current_key)
        self._visit_children(node, context)

    def _visit_dml(self, node: DmlStatement, context: TraversalContext):
        target_key = None
        target = node.target
        if target is not None and target.kind == NodeKind.TABLE_REFERENCE:
            name = resolve_target_name(node)
            if name is None or not name.base:
                self._report_invalid(node, context)
            elif not self._is_local(name) and not self._is_cte(name, context):
                key = self._resolve(name, context)
                obj = self._lookup(key)
                if obj is None:
                    self._report_unresolved("Write target", name, node, context)
                else:
                    # non-table targets are reported by the graph and get no edge
                    self.graph.add_write_edge(context.current_key, key)
                    if obj.kind == ObjectType.TABLE:
                        target_key = key
        elif target is not None:
            # OPENQUERY(...) and similar rowset targets
            self._visit_children(target, context)

        with self.tracker.target(target_key):
            self._visit_children(node, context)

    def _visit_execute_procedure(self, node: ExecuteProcedure, context: TraversalContext):
        name = node.name
        if name is None or not name.base:
            self.diagnostics.report(
                DiagnosticCode.UNRESOLVED_REFERENCE,
                f"EXEC of a procedure named by a variable at line {node.line}",
                object_key=context.current_key, severity=Severity.INFO)
        elif self._is_dynamic_sql_procedure(name):
            statement = self._statement_argument(node.arguments)
            if statement is None:
                self.diagnostics.report(
                    DiagnosticCode.DYNAMIC_SQL_SKIPPED,
                    f"{name} at line {node.line} has no statement argument",
                    object_key=context.current_key)
            else:
                self._run_dynamic_sql(statement.children, statement.literal, node, context)
        else:
            key = self._resolve(name, context)
            obj = self._lookup(key)
            if obj is None:
                self._report_unresolved("Procedure", name, node, context)
            elif obj.kind in (ObjectType.PROCEDURE, ObjectType.FUNCTION):
                self.graph.add_call_edge(context.current_key, key)
        self._visit_children(node, context)

    def _visit_execute_dynamic(self, node, context: TraversalContext):
        self._run_dynamic_sql(node.children, node.literal, node, context)
        self._visit_children(node, context)

    # Dynamic SQL

    @staticmethod
    def _is_dynamic_sql_procedure(name: ObjectName) -> bool:
        return (name.base.lower() in DYNAMIC_SQL_PROCEDURES
                and (name.schema is None or name.schema.lower() == 'sys'))

    @staticmethod
    def _statement_argument(arguments: List[Argument]) -> Optional[Argument]:
        for argument in arguments:
            if argument.parameter and argument.parameter.lower() == '@stmt':
                return argument
        if arguments and arguments[0].parameter is None:
            return arguments[0]
        return None

    def _run_dynamic_sql(self, parts: List[SyntaxNode], literal: bool, node: SyntaxNode,
                         context: TraversalContext):
        """Parse a literal SQL string and walk it as part of the current object."""
        text = literal_text(parts) if literal else None
        if text is None:
            self.diagnostics.report(
                DiagnosticCode.DYNAMIC_SQL_SKIPPED,
                f"Dynamic SQL at line {node.line} is not a string literal",
                object_key=context.current_key, severity=Severity.INFO)
            return
        if not text.strip():
            self.diagnostics.report(
                DiagnosticCode.DYNAMIC_SQL_SKIPPED,
                f"Dynamic SQL at line {node.line} is empty",
                object_key=context.current_key, severity=Severity.INFO)
            return
        if context.depth >= self.config.max_dynamic_sql_depth:
            self.diagnostics.report(
                DiagnosticCode.RECURSION_LIMIT,
                f"Dynamic SQL at line {node.line} is nested deeper than "
                f"{self.config.max_dynamic_sql_depth} levels",
                object_key=context.current_key)
            return

        tree, errors = self._parse(text)
        if errors:
            self.diagnostics.report(
                DiagnosticCode.DYNAMIC_SQL_SKIPPED,
                f"Dynamic SQL at line {node.line} does not parse: {errors[0]}",
                object_key=context.current_key)
            return
        self.traverse(tree, context.nested())
