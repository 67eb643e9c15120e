"""Tests for revenue_engine.data_loader."""

from __future__ import annotations

import pandas as pd
import pytest

from revenue_engine.data_loader import find_table_file, load_tables, read_table
from revenue_engine.exceptions import ColumnMismatchError, DataError


def test_loads_all_tables(input_dir):
    tables = load_tables(input_dir)
    assert set(tables) == {
        "subscriptions",
        "organizations",
        "memberships",
        "users",
        "arr_snapshot",
        "promo_redemptions",
        "manual_changes",
    }
    assert "subscription_id" in tables["subscriptions"].columns
    assert list(tables["organizations"].columns) == ["org_id", "org_name", "created_at"]


def test_cells_read_as_text(input_dir):
    subs = load_tables(input_dir)["subscriptions"]
    assert subs.loc[0, "quantity"] == "3"


def test_optional_tables_missing(input_dir):
    (input_dir / "promo_redemptions.csv").unlink()
    (input_dir / "manual_changes.csv").unlink()
    tables = load_tables(input_dir)
    assert tables["promo_redemptions"] is None
    assert tables["manual_changes"] is None


def test_missing_required_table(input_dir):
    (input_dir / "users.csv").unlink()
    with pytest.raises(DataError, match="users"):
        load_tables(input_dir)


def test_missing_input_dir(tmp_path):
    with pytest.raises(DataError, match="not found"):
        load_tables(tmp_path / "nowhere")


def test_bad_columns(input_dir):
    pd.DataFrame({"id": ["o1"]}).to_csv(input_dir / "organizations.csv", index=False)
    with pytest.raises(ColumnMismatchError):
        load_tables(input_dir)


def test_snapshot_path_preferred(input_dir, tmp_path):
    history = tmp_path / "history.csv"
    pd.DataFrame(
        {"snapshot_date": ["2025-06-01"], "org_id": ["org_x"], "bom_arr": ["1"], "eom_arr": ["2"]}
    ).to_csv(history, index=False)
    snaps = load_tables(input_dir, history)["arr_snapshot"]
    assert list(snaps["org_id"]) == ["org_x"]


def test_snapshot_path_missing_falls_back(input_dir, tmp_path):
    snaps = load_tables(input_dir, tmp_path / "absent.csv")["arr_snapshot"]
    assert len(snaps) == 3


def test_excel_table(tmp_path, raw_organizations):
    path = tmp_path / "organizations.xlsx"
    raw_organizations.to_excel(path, index=False)
    assert find_table_file(tmp_path, "organizations") == path
    assert len(read_table(path)) == 3


def test_unreadable_file(tmp_path):
    path = tmp_path / "users.xlsx"
    path.write_text("not a workbook")
    with pytest.raises(DataError, match="Failed to read"):
        read_table(path)
