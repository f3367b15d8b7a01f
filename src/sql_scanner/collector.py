"""
SQL Object Dependency Graph Scanner - Object metadata collection
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details

Objects come either from a live SQL Server (through any DB-API 2 connection,
e.g. pyodbc or pymssql) or from a JSON file of object records.
"""
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import AnalysisConfig
from .models import ObjectType, SqlObject

logger = logging.getLogger(__name__)

OBJECT_TYPE_CODES = ('U', 'P', 'FN', 'IF', 'TF')


class CollectorError(Exception):
    """Metadata could not be read from the server."""


def _quote(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


class SqlServerCollector:
    """Reads tables, procedures and functions from SQL Server catalog views."""

    def __init__(self, conn, config: Optional[AnalysisConfig] = None,
                 driver_error: type = Exception):
        """
        Args:
            conn: Open DB-API 2 connection
            config: Analysis settings
            driver_error: Exception class raised by the driver
        """
        self.conn = conn
        self.config = config or AnalysisConfig()
        self.driver_error = driver_error

    def collect_catalogs(self) -> List[str]:
        """Names of the online user databases."""
        query = """
            SELECT name
            FROM sys.databases
            WHERE database_id > 4
              AND state_desc = 'ONLINE'
            ORDER BY name
        """
        return self._execute_query(query, lambda row: row[0])

    def collect_objects(self, catalog: Optional[str] = None) -> List[SqlObject]:
        """User tables, procedures and functions of one database.

        Args:
            catalog: Database to read; the connection's current database if None

        Returns:
            Objects with their module definitions
        """
        if catalog is None:
            names = self._execute_query("SELECT DB_NAME()", lambda row: row[0])
            catalog = names[0] if names and names[0] else self.config.unknown_catalog
            prefix = ""
        else:
            prefix = _quote(catalog) + "."

        codes = ", ".join(f"'{code}'" for code in OBJECT_TYPE_CODES)
        query = f"""
            SELECT s.name AS schema_name,
                   o.name AS object_name,
                   RTRIM(o.type) AS object_type,
                   m.definition
            FROM {prefix}sys.objects o
            JOIN {prefix}sys.schemas s ON s.schema_id = o.schema_id
            LEFT JOIN {prefix}sys.sql_modules m ON m.object_id = o.object_id
            WHERE o.is_ms_shipped = 0
              AND o.type IN ({codes})
            ORDER BY s.name, o.name
        """
        objects = self._execute_query(query, lambda row: self._create_object(row, catalog))
        objects = [obj for obj in objects if obj is not None]
        logger.info("Collected %d objects from %s", len(objects), catalog)
        return objects

    def collect_all(self) -> List[SqlObject]:
        """Objects of every online user database."""
        objects = []
        for catalog in self.collect_catalogs():
            objects.extend(self.collect_objects(catalog))
        return objects

    def _execute_query(self, query: str, factory_method: Callable[[tuple], Any]) -> List[Any]:
        """Run a query and build one result per row with factory_method."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(query)
            return [factory_method(row) for row in cursor.fetchall()]
        except self.driver_error as e:
            logger.error("Query failed: %s", e)
            raise CollectorError(f"Query failed: {e}") from e
        finally:
            cursor.close()

    def _create_object(self, row: tuple, catalog: str) -> Optional[SqlObject]:
        schema, name, type_code, definition = row
        kind = ObjectType.from_value(type_code)
        if kind != ObjectType.TABLE and not definition:
            logger.warning("Skipping %s.%s.%s: definition is not available (encrypted?)",
                           catalog, schema, name)
            return None
        return SqlObject(name=name, kind=kind, definition=definition or "",
                         schema=schema, catalog=catalog)


def objects_from_records(records: Union[Iterable[Dict[str, Any]], Dict[str, Any]],
                         config: Optional[AnalysisConfig] = None) -> List[SqlObject]:
    """Build objects from JSON-style records.

    Records look like {"name", "schema", "catalog", "type", "definition"};
    a {"objects": [...]} wrapper is accepted too.

    Raises:
        ValueError: If the payload or one of its records is malformed
    """
    config = config or AnalysisConfig()
    if isinstance(records, dict):
        if 'objects' not in records:
            raise ValueError("Expected a list of objects or {\"objects\": [...]}")
        records = records['objects']
    if records is None or isinstance(records, (str, bytes)):
        raise ValueError("Expected a list of objects")

    objects = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValueError(f"Object record {index} is not an object")
        try:
            objects.append(SqlObject(
                name=record['name'],
                kind=record.get('type', record.get('kind')),
                definition=record.get('definition') or "",
                schema=record.get('schema') or config.default_schema,
                catalog=record.get('catalog') or config.unknown_catalog
            ))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Object record {index} is invalid: {e}") from e
    return objects


def load_objects(path: str, config: Optional[AnalysisConfig] = None) -> List[SqlObject]:
    """Read objects from a JSON file."""
    with open(path, encoding='utf-8') as f:
        data = json.load(f)
    return objects_from_records(data, config)
