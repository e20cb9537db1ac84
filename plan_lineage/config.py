from __future__ import annotations

import csv
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .core.catalog import InMemoryCatalog
from .core.plan import DEFAULT_DATABASE
from .utils import normalize_identifier

logger = logging.getLogger("plan_lineage.config")

TableSpec = Tuple[List[str], List[str]]

_TRUE = {"1", "true", "yes", "y", "t"}


@dataclass(frozen=True)
class LineageConfig:
    dialect: str = "spark"
    default_database: str = DEFAULT_DATABASE
    session_catalog: str = "spark_catalog"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LineageConfig":
        env = os.environ if environ is None else environ
        return cls(
            dialect=env.get("LINEAGE_DIALECT", cls.dialect).lower(),
            default_database=env.get("LINEAGE_DEFAULT_DATABASE", cls.default_database).lower(),
            session_catalog=env.get("LINEAGE_SESSION_CATALOG", cls.session_catalog).lower(),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )


def flatten_schema(raw: Dict[str, Any]) -> Dict[str, TableSpec]:
    """Flatten nested schema dicts into a table -> (columns, partition columns) mapping.

    Input may look like { db: { table: { col: type }}}, { table: [col1, col2] }
    or { table: {"columns": [...], "partitioned_by": [...]} }.
    We keep dotted naming for multi-level keys (db.table).
    """
    flat: Dict[str, TableSpec] = {}

    def columns_of(node) -> List[str]:
        if isinstance(node, dict):
            return [normalize_identifier(c) for c in node.keys()]
        return [normalize_identifier(c) for c in node]

    def walk(prefix: str, node):
        if isinstance(node, list):
            flat[prefix] = (columns_of(node), [])
        elif isinstance(node, dict):
            if isinstance(node.get("columns"), (list, dict)):
                flat[prefix] = (columns_of(node["columns"]), columns_of(node.get("partitioned_by") or []))
            # If dict values are primitives treat keys as column names
            elif node and all(not isinstance(v, (dict, list)) for v in node.values()):
                flat[prefix] = (columns_of(node), [])
            else:
                for k, v in node.items():
                    key = f"{prefix}.{k}" if prefix else k
                    walk(key, v)

    for k, v in raw.items():
        walk(k, v)
    # remove empty keys
    return {k: v for k, v in flat.items() if k}


def apply_schema(catalog: InMemoryCatalog, raw: Dict[str, Any]) -> int:
    """Register every table of a schema dict; returns the number of tables."""
    tables = flatten_schema(raw)
    for name, (columns, partitions) in tables.items():
        catalog.register_table(name, columns, partitions)
    if tables:
        logger.debug("Registered %d tables from schema", len(tables))
    return len(tables)


def load_schema_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        schema = json.load(f)
    if not isinstance(schema, dict):
        raise ValueError(f"Schema file {path} must contain a JSON object")
    return schema


def load_schema_csv(path: str) -> Dict[str, Any]:
    """Read ``database,table,column,data_type[,is_partition]`` rows (first row is the header)."""
    schema: Dict[str, Any] = {}
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        next(reader, None)
        for row in reader:
            if not row or all(not c.strip() for c in row):
                continue
            # Pad or trim row length
            if len(row) < 5:
                row = row + ["" for _ in range(5 - len(row))]
            db, tbl, col, dtype, is_partition = [c.strip() for c in row[:5]]
            if not tbl or not col:
                continue
            ref = schema.setdefault(db.lower(), {}) if db else schema
            table = ref.setdefault(tbl.lower(), {"columns": {}, "partitioned_by": []})
            table["columns"][col.lower()] = dtype.lower() if dtype else "unknown"
            if is_partition.lower() in _TRUE:
                table["partitioned_by"].append(col.lower())
    return schema
