"""Output tables: overwrite-per-run CSV/XLSX plus append-only snapshot history."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

import pandas as pd
from loguru import logger
from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from revenue_engine.aggregator import OrgRollup
from revenue_engine.coerce import is_blank
from revenue_engine.column_map import COLUMN_ALIASES, normalize_header
from revenue_engine.exceptions import OutputError
from revenue_engine.kpis import CohortConversion, ConversionMetrics, StageMetrics
from revenue_engine.projection import MrrProjection
from revenue_engine.records import SnapshotRow
from revenue_engine.retention import NetNewMonth, RetentionSummary
from revenue_engine.waterfall import WaterfallBucket, WaterfallFact

SNAPSHOT_COLUMNS = ["snapshot_date", "org_id", "bom_arr", "eom_arr", "org_name", "cohort_month"]
HEADER_FONT = Font(name="Calibri", bold=True)


def rollups_frame(rollups: Iterable[OrgRollup]) -> pd.DataFrame:
    return pd.DataFrame([r.to_row() for r in rollups])


def waterfall_facts_frame(facts: Iterable[WaterfallFact]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "snapshot_date": f.snapshot_date,
                "cohort_key": f.cohort_key,
                "cohort_month_subscription": f.cohort_month_subscription,
                "cohort_month_paid": f.cohort_month_paid,
                "org_id": f.org_id,
                "org_name": f.org_name,
                "metric": f.metric.value,
                "amount": round(f.amount, 2),
            }
            for f in facts
        ],
        columns=[
            "snapshot_date",
            "cohort_key",
            "cohort_month_subscription",
            "cohort_month_paid",
            "org_id",
            "org_name",
            "metric",
            "amount",
        ],
    )


def waterfall_buckets_frame(buckets: Iterable[WaterfallBucket], key_name: str) -> pd.DataFrame:
    rows = []
    for b in buckets:
        row = {key_name: b.key}
        if key_name == "org_id":
            row["org_name"] = b.label
        row.update(
            {
                "SOM": round(b.som, 2),
                "Upgrade": round(b.upgrade, 2),
                "Downgrade": round(b.downgrade, 2),
                "Churn": round(b.churn, 2),
                "EOM": round(b.eom, 2),
            }
        )
        rows.append(row)
    return pd.DataFrame(rows)


def retention_frame(summary: RetentionSummary) -> pd.DataFrame:
    return pd.DataFrame([{"metric": k, "value": v} for k, v in summary.to_dict().items()])


def net_new_frame(months: Iterable[NetNewMonth]) -> pd.DataFrame:
    return pd.DataFrame([asdict(m) for m in months])


def stage_metrics_frame(metrics: StageMetrics, conversion: ConversionMetrics | None) -> pd.DataFrame:
    rows = metrics.to_rows()
    if conversion is not None:
        rows += [
            {"block": "conversion", "measure": k, "value": v}
            for k, v in conversion.to_dict().items()
        ]
    return pd.DataFrame(rows, columns=["block", "measure", "value"])


CONVERSION_COHORT_COLUMNS = [
    "cohort_month",
    "orgs_signed_up",
    "orgs_converted",
    "conversion_rate",
    "orgs_converted_within_7d_trial_end",
    "conversion_rate_within_7d_trial_end",
]


def conversion_cohorts_frame(cohorts: Iterable[CohortConversion]) -> pd.DataFrame:
    return pd.DataFrame([c.to_row() for c in cohorts], columns=CONVERSION_COHORT_COLUMNS)


def projection_frame(projection: MrrProjection) -> pd.DataFrame:
    """Wide table: one row per org, one column per month key."""
    records = []
    for row in projection.rows:
        record = {
            "org_key": row.org_key,
            "org_id": row.org_id,
            "org_name": row.org_name,
            "owner_email": row.owner_email,
            "start_month": row.start_month,
        }
        record.update(dict(zip(projection.month_keys, row.values)))
        records.append(record)
    columns = ["org_key", "org_id", "org_name", "owner_email", "start_month", *projection.month_keys]
    return pd.DataFrame(records, columns=columns)


def snapshot_frame(rows: Iterable[SnapshotRow]) -> pd.DataFrame:
    return pd.DataFrame([asdict(r) for r in rows], columns=SNAPSHOT_COLUMNS)


def _replace_csv(df: pd.DataFrame, path: Path) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    df.to_csv(tmp, index=False)
    os.replace(tmp, path)


def write_excel(frames: Mapping[str, pd.DataFrame], path: Path) -> Path:
    """One sheet per table with a bold header row."""
    wb = Workbook()
    wb.remove(wb.active)
    for name, df in frames.items():
        ws = wb.create_sheet(title=name[:31])
        ws.append([str(c) for c in df.columns])
        for cell in ws[1]:
            cell.font = HEADER_FONT
        for values in df.itertuples(index=False, name=None):
            ws.append([_excel_value(v) for v in values])
        for idx, col in enumerate(df.columns, start=1):
            ws.column_dimensions[get_column_letter(idx)].width = min(40, max(10, len(str(col)) + 2))
    tmp = path.with_suffix(".tmp.xlsx")
    wb.save(tmp)
    os.replace(tmp, path)
    return path


def _excel_value(value):
    # openpyxl rejects NaN/NaT and tz-aware datetimes
    if not isinstance(value, str) and is_blank(value):
        return None
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


def write_tables(
    frames: Mapping[str, pd.DataFrame],
    output_dir: Path,
    csv: bool = True,
    excel_name: str | None = None,
) -> list[Path]:
    """Overwrite every output table. Returns the written paths."""
    written: list[Path] = []
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        if csv:
            for name, df in frames.items():
                path = output_dir / f"{name}.csv"
                _replace_csv(df, path)
                written.append(path)
        if excel_name:
            written.append(write_excel(frames, output_dir / excel_name))
    except OSError as e:
        raise OutputError(f"Failed writing outputs to {output_dir}: {e}") from e
    logger.info("Wrote {n} output file(s) to {dir}", n=len(written), dir=output_dir)
    return written


def _align_to_header(df: pd.DataFrame, path: Path) -> pd.DataFrame:
    """Lay ``df`` out in the column order of the existing file at ``path``.

    Header aliases map back to canonical snapshot fields; headers with no
    canonical counterpart are left empty and canonical fields the file lacks
    are dropped.
    """
    headers = list(pd.read_csv(path, nrows=0, dtype=str).columns)
    aliases = COLUMN_ALIASES["arr_snapshot"]
    aligned = pd.DataFrame(index=df.index)
    for header in headers:
        key = normalize_header(header)
        canonical = next((c for c, names in aliases.items() if key in names), None)
        aligned[header] = df[canonical] if canonical in df.columns else ""
    return aligned


def _ensure_trailing_newline(path: Path) -> None:
    with open(path, "rb+") as f:
        f.seek(-1, os.SEEK_END)
        if f.read(1) != b"\n":
            f.write(b"\n")


def append_snapshot_rows(path: Path, history: Iterable[SnapshotRow], new_rows: list[SnapshotRow]) -> int:
    """Append new snapshot rows to the history file.

    Rows are written under the file's own header. When the file does not
    exist yet (or is empty) it is created with the prior history followed
    by the new rows. Returns the number of rows appended.
    """
    if not new_rows:
        return 0
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.stat().st_size > 0:
            frame = _align_to_header(snapshot_frame(new_rows), path)
            _ensure_trailing_newline(path)
            frame.to_csv(path, mode="a", header=False, index=False)
        else:
            _replace_csv(snapshot_frame([*history, *new_rows]), path)
    except OSError as e:
        raise OutputError(f"Failed appending snapshot rows to {path}: {e}") from e
    logger.info("Appended {n} snapshot row(s) to {name}", n=len(new_rows), name=path.name)
    return len(new_rows)
