import argparse
import csv
import glob
import json
import os
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlglot.errors import SqlglotError

from .config import LineageConfig, load_schema_csv, load_schema_file
from .extractor import LineageExtractor
from .logger import get_logger
from .models import CSV_HEADER, Lineage

FileLineage = Tuple[str, int, Lineage]


def find_sql_files(folder: str) -> List[str]:
    pattern = os.path.join(folder, "**", "*.sql")
    return sorted(glob.glob(pattern, recursive=True))


def write_csv(path: str, records: List[FileLineage]) -> int:
    count = 0
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for file, statement, lineage in records:
            for row in lineage.as_csv_rows(file, statement):
                writer.writerow(row)
                count += 1
    return count


def write_json(path: str, records: List[FileLineage]) -> int:
    payload = []
    for file, statement, lineage in records:
        entry = {"file": file, "statement": statement}
        entry.update(lineage.to_dict())
        payload.append(entry)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return len(payload)


def _file_schema(path: str, base: Dict[str, Any], logger) -> Dict[str, Any]:
    # <name>_schema.json beside a SQL file overrides base entries (shallow merge)
    schema_file = path[: -len(".sql")] + "_schema.json"
    if not os.path.exists(schema_file):
        return base
    try:
        local_schema = load_schema_file(schema_file)
    except (json.JSONDecodeError, ValueError) as e:
        logger.debug(f"Error loading schema from {schema_file}: {e}")
        return base
    merged = dict(base)
    merged.update(local_schema)
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Column-level lineage for Spark SQL using sqlglot")
    parser.add_argument("--sql-folder", default="sql", help="Folder containing .sql files")
    parser.add_argument(
        "--engine",
        default=os.getenv("LINEAGE_DIALECT", "spark"),
        help="Comma-separated sqlglot dialects tried in order (e.g., spark,hive)",
    )
    parser.add_argument("--output", default="output.csv", help="Path to output file")
    parser.add_argument("--format", choices=("csv", "json"), default="csv", help="Output format")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument(
        "--schema",
        default=None,
        help="JSON string of schema dict, e.g., '{\"db\": {\"t\": [\"col1\", \"col2\"]}}'",
    )
    parser.add_argument("--schema-file", default=None, help="Path to JSON file containing schema dict")
    parser.add_argument(
        "--schema-csv",
        default=None,
        help="Path to CSV file with columns: database,table,column,data_type[,is_partition]",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = get_logger(level=args.log_level)
    config = LineageConfig.from_env()

    schema: Dict[str, Any] = {}
    # CSV schema has highest precedence
    try:
        if args.schema_csv:
            schema = load_schema_csv(args.schema_csv)
            logger.info(f"Loaded schema from CSV {args.schema_csv} with {len(schema)} top-level entries")
        elif args.schema_file:
            schema = load_schema_file(args.schema_file)
        elif args.schema:
            schema = json.loads(args.schema)
            if not isinstance(schema, dict):
                raise ValueError("--schema must be a JSON object")
    except (OSError, ValueError) as e:
        logger.error(f"Error loading schema: {e}")
        return 1

    sql_files = find_sql_files(args.sql_folder)
    if not sql_files:
        logger.error(f"No SQL files found in {args.sql_folder}")
        return 2

    engines = [e.strip() for e in args.engine.split(",") if e.strip()] or [config.dialect]
    records: List[FileLineage] = []

    for path in sql_files:
        file_schema = _file_schema(path, schema, logger)
        parsed = False
        for eng in engines:
            try:
                extractor = LineageExtractor(engine=eng, schema=file_schema, config=config, logger=logger)
                found = list(extractor.iter_file(path))
            except SqlglotError as e:
                logger.debug(f"Failed to parse {path} with engine {eng}: {e}")
                continue
            records.extend((path, idx, lineage) for idx, lineage in found)
            logger.info(f"Successfully parsed {path} with engine {eng}")
            parsed = True
            break
        if not parsed:
            logger.error(f"Failed to parse {path} with any engine")

    for path, idx, lineage in records:
        logger.debug(f"{path}#{idx}: sources={list(lineage.sources)} targets={list(lineage.targets)}")

    if args.format == "json":
        written = write_json(args.output, records)
    else:
        written = write_csv(args.output, records)
    logger.info(f"Wrote lineage to {args.output} with {written} {args.format} entries")
    return 0


if __name__ == "__main__":
    sys.exit(main())
