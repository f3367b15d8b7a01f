"""
SQL Object Dependency Graph Scanner - Syntax tree
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Node types produced by the parser. Every node carries a NodeKind tag; the
traversal engine dispatches on that tag and falls back to visiting children.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class NodeKind(Enum):
    SCRIPT = "script"
    BLOCK = "block"
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    MERGE = "merge"
    EXECUTE_PROCEDURE = "execute_procedure"
    EXECUTE_DYNAMIC = "execute_dynamic"
    ARGUMENT = "argument"
    TABLE_REFERENCE = "table_reference"
    FUNCTION_TABLE_REFERENCE = "function_table_reference"
    DERIVED_TABLE = "derived_table"
    QUALIFIED_JOIN = "qualified_join"
    FUNCTION_CALL = "function_call"
    COMMON_TABLE_EXPRESSION = "common_table_expression"
    STRING_LITERAL = "string_literal"
    VARIABLE = "variable"


DML_KINDS = (NodeKind.INSERT, NodeKind.UPDATE, NodeKind.DELETE, NodeKind.MERGE)


@dataclass(frozen=True)
class ObjectName:
    """Name of a schema object as written in SQL: any part but the base may be missing."""
    base: Optional[str]
    schema: Optional[str] = None
    catalog: Optional[str] = None

    @classmethod
    def from_parts(cls, parts: List[Optional[str]]) -> "ObjectName":
        """Build from dotted parts, e.g. ['cat', None, 'tbl'] for cat..tbl."""
        parts = list(parts)[-3:]
        while len(parts) < 3:
            parts.insert(0, None)
        catalog, schema, base = parts
        return cls(base=base or None, schema=schema or None, catalog=catalog or None)

    @property
    def is_qualified(self) -> bool:
        return self.schema is not None or self.catalog is not None

    def __str__(self):
        return ".".join(part or "" for part in (self.catalog, self.schema, self.base)
                        ).lstrip(".")


@dataclass
class SyntaxNode:
    kind: NodeKind
    children: List["SyntaxNode"] = field(default_factory=list)
    cte_names: Tuple[str, ...] = ()
    line: int = 0


@dataclass
class Script(SyntaxNode):
    kind: NodeKind = NodeKind.SCRIPT


@dataclass
class Block(SyntaxNode):
    """Any statement or expression without side effects on the graph."""
    kind: NodeKind = NodeKind.BLOCK


@dataclass
class Select(SyntaxNode):
    kind: NodeKind = NodeKind.SELECT


@dataclass
class DmlStatement(SyntaxNode):
    """INSERT, UPDATE, DELETE or MERGE.

    ``target`` is not part of ``children``: the engine handles it as a write
    target, never as a read. ``from_clause`` holds the UPDATE/DELETE FROM (or
    MERGE USING) sources; they are also present in ``children``.
    """
    target: Optional[SyntaxNode] = None
    from_clause: List[SyntaxNode] = field(default_factory=list)


@dataclass
class TableReference(SyntaxNode):
    kind: NodeKind = NodeKind.TABLE_REFERENCE
    name: Optional[ObjectName] = None
    alias: Optional[str] = None


@dataclass
class FunctionTableReference(SyntaxNode):
    kind: NodeKind = NodeKind.FUNCTION_TABLE_REFERENCE
    name: Optional[ObjectName] = None
    alias: Optional[str] = None


@dataclass
class DerivedTable(SyntaxNode):
    kind: NodeKind = NodeKind.DERIVED_TABLE
    alias: Optional[str] = None


@dataclass
class QualifiedJoin(SyntaxNode):
    """Two table sources joined; ``children`` is [first, second, *condition]."""
    kind: NodeKind = NodeKind.QUALIFIED_JOIN
    first: Optional[SyntaxNode] = None
    second: Optional[SyntaxNode] = None


@dataclass
class FunctionCall(SyntaxNode):
    kind: NodeKind = NodeKind.FUNCTION_CALL
    name: Optional[ObjectName] = None


@dataclass
class CommonTableExpression(SyntaxNode):
    kind: NodeKind = NodeKind.COMMON_TABLE_EXPRESSION
    alias: Optional[str] = None


@dataclass
class ExecuteProcedure(SyntaxNode):
    """EXEC name args; a name of None means EXEC @variable."""
    kind: NodeKind = NodeKind.EXECUTE_PROCEDURE
    name: Optional[ObjectName] = None
    arguments: List["Argument"] = field(default_factory=list)


@dataclass
class Argument(SyntaxNode):
    """One EXEC argument. ``literal`` is set when it is only string literals joined by +."""
    kind: NodeKind = NodeKind.ARGUMENT
    parameter: Optional[str] = None
    literal: bool = False


@dataclass
class ExecuteDynamic(SyntaxNode):
    """EXEC ( expression ) of a dynamic SQL string."""
    kind: NodeKind = NodeKind.EXECUTE_DYNAMIC
    literal: bool = False


@dataclass
class StringLiteral(SyntaxNode):
    """A string token as written, quotes and N prefix included."""
    kind: NodeKind = NodeKind.STRING_LITERAL
    value: str = ""


@dataclass
class Variable(SyntaxNode):
    kind: NodeKind = NodeKind.VARIABLE
    value: str = ""
    alias: Optional[str] = None


def walk(node: SyntaxNode):
    """Yield the node and all of its descendants, depth first."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))
