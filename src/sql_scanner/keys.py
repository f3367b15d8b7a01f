"""
SQL Object Dependency Graph Scanner - Canonical keys
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Every graph vertex is identified by a key of the form [catalog].[schema].[name],
lower-cased so that names differing only in case meet on the same vertex.
"""
import re
from typing import Optional

from .config import AnalysisConfig
from .models import SqlObject
from .syntax import ObjectName

_SEGMENT = r"\[((?:[^\]]|\]\])*)\]"
_BRACKETED_KEY = re.compile(r"\.".join([_SEGMENT] * 3))


def _segment(part: str) -> str:
    return "[" + part.strip().lower().replace("]", "]]") + "]"


def format_key(catalog: str, schema: str, name: str) -> str:
    """Render a canonical key from its three parts."""
    return ".".join(_segment(part) for part in (catalog, schema, name))


def normalize_key(key: str) -> str:
    """Canonical form of a key typed by a user, e.g. "[Cat].[dbo].[Orders]".

    Bracketed or plain three-part names are re-rendered with format_key;
    anything else is only trimmed and lower-cased.
    """
    text = key.strip()
    match = _BRACKETED_KEY.fullmatch(text)
    if match:
        parts = [part.replace("]]", "]") for part in match.groups()]
    else:
        parts = text.split(".")
    if len(parts) != 3:
        return text.lower()
    return format_key(*parts)


class KeyResolver:
    """Computes canonical keys for objects and for names found in SQL text."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def key_for(self, obj: SqlObject) -> str:
        """Key of a cataloged object, using its own catalog and schema."""
        return format_key(obj.catalog, obj.schema, obj.name)

    def resolve(self, name: Optional[ObjectName], context_catalog: Optional[str] = None,
                context_schema: Optional[str] = None) -> str:
        """Resolve a possibly partial name against the current object's context.

        Args:
            name: Name as written in SQL; catalog and schema may be missing
            context_catalog: Catalog of the object whose body is analyzed
            context_schema: Schema of the object whose body is analyzed

        Returns:
            Canonical key; the invalid-name sentinel when there is no base name
        """
        catalog = self._pick(name.catalog if name else None, context_catalog,
                             self.config.unknown_catalog)
        schema = self._pick(name.schema if name else None, context_schema,
                            self.config.default_schema)
        if name is None or not name.base or not name.base.strip():
            return format_key(catalog, schema, self.config.invalid_name)
        return format_key(catalog, schema, name.base)

    def invalid_key(self, context_catalog: Optional[str] = None,
                    context_schema: Optional[str] = None) -> str:
        return self.resolve(None, context_catalog, context_schema)

    def is_invalid(self, key: str) -> bool:
        return key.endswith("." + _segment(self.config.invalid_name))

    @staticmethod
    def _pick(*candidates: Optional[str]) -> str:
        for candidate in candidates:
            if candidate and candidate.strip():
                return candidate
        return ""
