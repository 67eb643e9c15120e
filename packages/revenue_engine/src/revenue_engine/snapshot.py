"""ARR snapshot writer.

Builds one history row per paying org for a snapshot date. BOM carries
forward from the org's latest EOM in the previous calendar month, and orgs
that paid last month but no longer do get an explicit zero EOM row so churn
shows up in the waterfall.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date

from loguru import logger

from revenue_engine.aggregator import OrgRollup
from revenue_engine.coerce import month_key, shift_month_key
from revenue_engine.records import SnapshotRow


def snapshot_org_id(rollup: OrgRollup) -> str:
    return rollup.org_id or rollup.org_key


def previous_month_eom(history: Iterable[SnapshotRow], snapshot_date: date) -> dict[str, SnapshotRow]:
    """Latest row per org within the calendar month before ``snapshot_date``."""
    prev_key = shift_month_key(month_key(snapshot_date), -1)
    latest: dict[str, SnapshotRow] = {}
    for row in history:
        if month_key(row.snapshot_date) != prev_key:
            continue
        seen = latest.get(row.org_id)
        if seen is None or row.snapshot_date > seen.snapshot_date:
            latest[row.org_id] = row
    return latest


def build_snapshot_rows(
    rollups: Iterable[OrgRollup],
    snapshot_date: date,
    history: Iterable[SnapshotRow] = (),
) -> list[SnapshotRow]:
    history = list(history)
    carried = previous_month_eom(history, snapshot_date)

    rows: dict[str, SnapshotRow] = {}
    for rollup in rollups:
        eom = round(max(0.0, rollup.paid.arr), 2)
        org_id = snapshot_org_id(rollup)
        prev = carried.get(org_id)
        bom = prev.eom_arr if prev else 0.0
        if eom <= 0 and bom <= 0:
            continue
        rows[org_id] = SnapshotRow(
            snapshot_date=snapshot_date,
            org_id=org_id,
            bom_arr=bom,
            eom_arr=eom,
            org_name=rollup.org_name,
            cohort_month=rollup.trial_cohort_month or (prev.cohort_month if prev else ""),
        )

    for org_id, prev in carried.items():
        if org_id in rows or prev.eom_arr <= 0:
            continue
        rows[org_id] = SnapshotRow(
            snapshot_date=snapshot_date,
            org_id=org_id,
            bom_arr=prev.eom_arr,
            eom_arr=0.0,
            org_name=prev.org_name,
            cohort_month=prev.cohort_month,
        )

    return sorted(rows.values(), key=lambda r: r.org_id)


def new_rows_only(history: Iterable[SnapshotRow], candidates: Iterable[SnapshotRow]) -> list[SnapshotRow]:
    """Drop candidates whose ``(snapshot_date, org_id)`` already exists.

    The key set is read once up front, so appending the same batch twice
    is a no-op.
    """
    candidates = list(candidates)
    existing = {row.key for row in history}
    fresh: list[SnapshotRow] = []
    for row in candidates:
        if row.key in existing:
            continue
        existing.add(row.key)
        fresh.append(row)
    skipped = len(candidates) - len(fresh)
    if skipped:
        logger.info("Snapshot append: {n} row(s) already present, skipped", n=skipped)
    return fresh
