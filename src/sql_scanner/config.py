"""
SQL Object Dependency Graph Scanner - Configuration
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import configparser
import os
from dataclasses import dataclass, fields
from typing import Optional

# Defaults used when an object or a reference omits part of its name
ANALYSIS_CONFIG = {
    'default_schema': 'dbo',          # SQL Server default schema
    'unknown_catalog': 'Unknown',     # Catalog of objects supplied without one
    'invalid_name': '<invalid>',      # Base name of keys that could not be computed
    'max_dynamic_sql_depth': 8,       # EXEC('...EXEC(''...'')...') nesting limit
    'max_workers': None               # Thread pool size for partitioned builds
}

# Graph plot settings
GRAPH_CONFIG = {
    'node_size': 2000,
    'font_size': 8,
    'arrow_size': 20,
    'width': 16,
    'height': 9
}

# Colours per object kind
OBJECT_COLORS = {
    'table': '#4CAF50',      # Green
    'function': '#FFC107',   # Yellow
    'procedure': '#2196F3'   # Blue
}

DEFAULT_SCHEMA = ANALYSIS_CONFIG['default_schema']
UNKNOWN_CATALOG = ANALYSIS_CONFIG['unknown_catalog']


@dataclass(frozen=True)
class AnalysisConfig:
    """Settings of one analysis run."""
    default_schema: str = ANALYSIS_CONFIG['default_schema']
    unknown_catalog: str = ANALYSIS_CONFIG['unknown_catalog']
    invalid_name: str = ANALYSIS_CONFIG['invalid_name']
    max_dynamic_sql_depth: int = ANALYSIS_CONFIG['max_dynamic_sql_depth']
    max_workers: Optional[int] = ANALYSIS_CONFIG['max_workers']


_INT_OPTIONS = ('max_dynamic_sql_depth', 'max_workers')


def load_config(config_path: Optional[str] = None) -> AnalysisConfig:
    """Load analysis settings from the [analysis] section of an INI file.

    Args:
        config_path: Path to the configuration file

    Returns:
        AnalysisConfig with file values over the defaults
    """
    if not config_path or not os.path.exists(config_path):
        return AnalysisConfig()

    parser = configparser.ConfigParser()
    parser.read(config_path)
    if not parser.has_section('analysis'):
        return AnalysisConfig()

    section = parser['analysis']
    values = {}
    for field in fields(AnalysisConfig):
        if field.name not in section:
            continue
        raw = section[field.name].strip()
        if field.name in _INT_OPTIONS:
            if field.name == 'max_workers' and raw.lower() in ('', 'none'):
                values[field.name] = None
                continue
            try:
                values[field.name] = int(raw)
            except ValueError:
                raise ValueError(f"Option '{field.name}' in {config_path} must be an integer, got {raw!r}")
        else:
            values[field.name] = raw

    return AnalysisConfig(**values)
