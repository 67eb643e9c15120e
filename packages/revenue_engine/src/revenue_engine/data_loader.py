"""Read the input tables for one run.

Each table is a CSV or Excel file in the input directory whose stem is the
table name (``subscriptions.csv``, ``organizations.xlsx``...). Columns are
resolved to canonical names here, once.
"""

from __future__ import annotations

from pathlib import Path

import pandas as pd
from loguru import logger

from revenue_engine.column_map import OPTIONAL_TABLES, REQUIRED_TABLES, resolve_columns
from revenue_engine.exceptions import DataError

TABLE_SUFFIXES = (".csv", ".xlsx", ".xls")
SNAPSHOT_TABLE = "arr_snapshot"


def find_table_file(input_dir: Path, table: str) -> Path | None:
    for suffix in TABLE_SUFFIXES:
        path = input_dir / f"{table}{suffix}"
        if path.exists():
            return path
    return None


def read_table(path: Path) -> pd.DataFrame:
    """Read a CSV or Excel file, every cell as text or native value."""
    suffix = path.suffix.lower()
    try:
        if suffix == ".csv":
            return pd.read_csv(path, dtype=str)
        return pd.read_excel(path, dtype=object, engine="openpyxl" if suffix == ".xlsx" else None)
    except Exception as e:
        raise DataError(f"Failed to read {path}: {e}", detail={"path": str(path)}) from e


def load_table(path: Path, table: str) -> pd.DataFrame:
    df = resolve_columns(read_table(path), table)
    logger.info(
        "Loaded {table}: {rows:,} rows from {name}",
        table=table,
        rows=len(df),
        name=path.name,
    )
    return df


def load_tables(input_dir: Path, snapshot_path: Path | None = None) -> dict[str, pd.DataFrame | None]:
    """Load required and optional tables. Missing optional tables map to None.

    Snapshot history is read from ``snapshot_path`` when that file exists,
    else from the input directory.

    Raises DataError naming the first missing required table.
    """
    if not input_dir.is_dir():
        raise DataError(f"Input directory not found: {input_dir}", detail={"path": str(input_dir)})

    tables: dict[str, pd.DataFrame | None] = {}
    for table in REQUIRED_TABLES:
        path = find_table_file(input_dir, table)
        if path is None:
            raise DataError(
                f"Required table '{table}' not found in {input_dir}",
                detail={"table": table, "input_dir": str(input_dir)},
            )
        tables[table] = load_table(path, table)

    for table in OPTIONAL_TABLES:
        path = None
        if table == SNAPSHOT_TABLE and snapshot_path is not None and snapshot_path.exists():
            path = snapshot_path
        path = path or find_table_file(input_dir, table)
        if path is None:
            logger.debug("Optional table '{table}' not present", table=table)
            tables[table] = None
            continue
        tables[table] = load_table(path, table)

    return tables
