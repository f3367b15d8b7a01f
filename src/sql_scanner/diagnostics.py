"""
SQL Object Dependency Graph Scanner - Diagnostics
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)


class DiagnosticCode(Enum):
    """Recoverable conditions met while building a graph."""
    PARSE_ERROR = "parse_error"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    DUPLICATE_OBJECT = "duplicate_object"
    DYNAMIC_SQL_SKIPPED = "dynamic_sql_skipped"
    MISSING_ENDPOINT = "missing_endpoint"
    INVALID_NAME = "invalid_name"
    UNSUPPORTED_WRITE_TARGET = "unsupported_write_target"
    RECURSION_LIMIT = "recursion_limit"


class Severity(Enum):
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


@dataclass(frozen=True)
class Diagnostic:
    code: DiagnosticCode
    message: str
    object_key: Optional[str] = None
    severity: Severity = Severity.WARNING

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'code': self.code.value,
            'severity': self.severity.name.lower(),
            'object': self.object_key,
            'message': self.message
        }


class Diagnostics:
    """Collects diagnostics of one run and mirrors them to the log."""

    def __init__(self, items: Optional[Iterable[Diagnostic]] = None):
        self._items: List[Diagnostic] = list(items or [])

    def report(self, code: DiagnosticCode, message: str,
               object_key: Optional[str] = None,
               severity: Severity = Severity.WARNING) -> Diagnostic:
        """Record a diagnostic.

        Args:
            code: Kind of condition
            message: Human readable description
            object_key: Canonical key of the object being analyzed, if any
            severity: Log level of the condition

        Returns:
            The recorded diagnostic
        """
        diagnostic = Diagnostic(code, message, object_key, severity)
        self._items.append(diagnostic)
        if object_key:
            logger.log(severity.value, "%s: %s", object_key, message)
        else:
            logger.log(severity.value, "%s", message)
        return diagnostic

    def extend(self, other: Iterable[Diagnostic]):
        self._items.extend(other)

    def by_code(self, code: DiagnosticCode) -> List[Diagnostic]:
        return [d for d in self._items if d.code == code]

    def to_list(self) -> List[Dict[str, Optional[str]]]:
        return [d.to_dict() for d in self._items]

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)
