"""Database object models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Set

from .config import DEFAULT_SCHEMA, UNKNOWN_CATALOG


class ObjectType(Enum):
    """Types of database objects."""
    TABLE = "table"
    FUNCTION = "function"
    PROCEDURE = "procedure"

    @classmethod
    def from_value(cls, value) -> "ObjectType":
        """Coerce an enum member, a value string or a sys.objects type code."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            code = _TYPE_CODES.get(text.upper())
            if code is not None:
                return code
            try:
                return cls(text.lower())
            except ValueError:
                pass
        raise ValueError(f"Unknown object type: {value!r}")


# sys.objects.type codes
_TYPE_CODES = {
    'U': ObjectType.TABLE,
    'P': ObjectType.PROCEDURE,
    'PC': ObjectType.PROCEDURE,
    'FN': ObjectType.FUNCTION,
    'IF': ObjectType.FUNCTION,
    'TF': ObjectType.FUNCTION,
    'FS': ObjectType.FUNCTION,
    'FT': ObjectType.FUNCTION,
}


class EdgeKind(Enum):
    """Kinds of dependency between two objects."""
    DATA_FLOW = "reads"
    WRITE = "writes"
    CALL = "calls"


@dataclass(frozen=True)
class SqlObject:
    """One analyzable database object."""
    name: str
    kind: ObjectType
    definition: str = ""
    schema: str = DEFAULT_SCHEMA
    catalog: str = UNKNOWN_CATALOG

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("SqlObject name must be a non-empty string")
        kind = ObjectType.from_value(self.kind)
        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'kind', kind)
        object.__setattr__(self, 'definition', self.definition or "")
        object.__setattr__(self, 'schema', self.schema or DEFAULT_SCHEMA)
        object.__setattr__(self, 'catalog', self.catalog or UNKNOWN_CATALOG)
        if kind != ObjectType.TABLE and not self.definition.strip():
            raise ValueError(
                f"{kind.value.capitalize()} {self.schema}.{self.name} has no definition")

    @property
    def qualified_name(self) -> str:
        return f"{self.catalog}.{self.schema}.{self.name}"


@dataclass
class GraphNode:
    """Snapshot of one vertex of the dependency graph."""
    name: str
    kind: ObjectType
    catalog: str
    in_nodes: Set[str] = field(default_factory=set)   # objects feeding or calling this one
    out_nodes: Set[str] = field(default_factory=set)  # objects this one feeds, writes or calls
