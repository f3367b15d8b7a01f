"""
SQL Object Dependency Graph Scanner - DML target tracking
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
from contextlib import contextmanager
from typing import Iterator, List, Optional

from .syntax import DmlStatement, NodeKind, ObjectName, SyntaxNode


class DmlTargetTracker:
    """Scoped record of the table written by the innermost DML statement.

    A table reference whose key equals the current target denotes the write
    target itself and must not be recorded as a read.
    """

    def __init__(self):
        self._stack: List[Optional[str]] = []

    @contextmanager
    def target(self, key: Optional[str]) -> Iterator[Optional[str]]:
        """Make key the current target for the duration of the block."""
        self._stack.append(key)
        try:
            yield key
        finally:
            self._stack.pop()

    @property
    def current(self) -> Optional[str]:
        return self._stack[-1] if self._stack else None

    @property
    def depth(self) -> int:
        return len(self._stack)

    def is_target(self, key: str) -> bool:
        return key is not None and key == self.current


def resolve_target_name(statement: DmlStatement) -> Optional[ObjectName]:
    """Name of the table a DML statement writes to.

    An unqualified UPDATE/DELETE target may be an alias of a table in the
    statement's own FROM clause; it is looked up there first, depth first and
    left to right. Without a match the written name is returned unchanged.
    """
    target = statement.target
    if target is None or target.kind != NodeKind.TABLE_REFERENCE or target.name is None:
        return None
    name = target.name
    if name.is_qualified or not name.base or statement.kind not in (NodeKind.UPDATE, NodeKind.DELETE):
        return name

    match = _find_alias(statement.from_clause, name.base.lower())
    return match if match is not None else name


def _find_alias(sources: List[SyntaxNode], alias: str) -> Optional[ObjectName]:
    for source in sources:
        if source is None:
            continue
        if source.kind == NodeKind.TABLE_REFERENCE:
            if source.alias and source.alias.lower() == alias:
                return source.name
        elif source.kind == NodeKind.QUALIFIED_JOIN:
            found = _find_alias([source.first, source.second], alias)
            if found is not None:
                return found
        elif source.kind == NodeKind.BLOCK:
            found = _find_alias(source.children, alias)
            if found is not None:
                return found
    return None
