"""End-to-end engine runs over the CSV fixtures in ``input_dir``."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pandas as pd
import pytest

from revenue_engine import run_directory
from revenue_engine.config import LockConfig, OutputConfig
from revenue_engine.exceptions import LockTimeoutError
from revenue_engine.pipeline import run_engine
from revenue_engine.records import SnapshotRow
from revenue_engine.run_logger import load_history
from revenue_engine.stages import Stage

OUTPUT_TABLES = {
    "org_rollups.csv",
    "waterfall_facts.csv",
    "waterfall_by_cohort.csv",
    "waterfall_by_org.csv",
    "retention_summary.csv",
    "net_new_by_month.csv",
    "stage_metrics.csv",
    "conversion_by_cohort.csv",
    "mrr_projection.csv",
}


def utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


@pytest.fixture()
def result(engine_settings):
    return run_engine(engine_settings)


class TestFullRun:
    def test_succeeds(self, result):
        assert result.success
        assert [s.name for s in result.steps] == [
            "load", "normalize", "aggregate", "retention", "waterfall", "kpis", "projection", "export",
        ]

    def test_outputs_written(self, result, engine_settings):
        out = engine_settings.paths.output_dir
        assert OUTPUT_TABLES <= {p.name for p in out.iterdir()}
        assert not engine_settings.paths.snapshot_path.exists()
        assert not engine_settings.paths.lock_path.exists()

    def test_normalize_counts(self, result):
        subs = result.ctx.inputs.stats[0]
        assert (subs.rows_in, subs.kept, subs.excluded_flag, subs.skipped_malformed) == (6, 4, 1, 1)

    def test_rollups(self, result):
        agg = result.ctx.outputs.aggregation
        assert [r.org_key for r in agg.rollups] == [
            "org:org_acme", "org:org_beta", "email:stray@unknown.org", "org:org_idle",
        ]
        by_key = agg.by_key()

        acme = by_key["org:org_acme"]
        assert acme.stage is Stage.PAID
        assert acme.arr_total == pytest.approx(912.0)
        assert acme.mrr_total == pytest.approx(76.0)
        assert acme.seats_total == 3
        assert acme.has_paid_with_money_moved
        assert acme.trial_end == utc(2025, 1, 15)

        beta = by_key["org:org_beta"]
        assert beta.stage is Stage.PROMO_TRIAL
        assert beta.arr_total == 600.0
        assert beta.trial_end == utc(2025, 5, 12)
        assert beta.has_promo_conversion_eligible
        assert beta.owner_email == "admin@beta.io"

        stray = by_key["email:stray@unknown.org"]
        assert stray.unmapped
        assert stray.stage is Stage.FREE_TRIAL
        assert stray.arr_total == 240.0

        assert by_key["org:org_idle"].stage is Stage.OTHER

    def test_forever_free_tracked_but_not_rolled_up(self, result):
        agg = result.ctx.outputs.aggregation
        assert "email:friend@nowhere.com" not in agg.by_key()
        assert [f.id for f in agg.facts_by_key["email:friend@nowhere.com"]] == ["sub_courtesy"]

    def test_retention(self, result):
        r = result.ctx.outputs.retention
        assert r.latest_snapshot == date(2025, 6, 1)
        assert r.base_orgs == 2
        assert r.nrr == pytest.approx(1500 / 1800)
        assert r.grr == pytest.approx(1200 / 1800)
        assert r.logo_churn_rate == 0.5

    def test_waterfall_cohorts(self, result):
        out = result.ctx.outputs
        assert len(out.waterfall_facts) == 10
        assert [b.key for b in out.waterfall_by_cohort] == ["(blank)", "2025-01"]
        assert [b.key for b in out.waterfall_by_org] == ["org_acme", "org_gone"]

    def test_kpis(self, result):
        c = result.ctx.outputs.conversion
        assert (c.total_signed_up, c.paid_us, c.promo_pool, c.promo_to_paid) == (3, 1, 1, 0)
        assert result.ctx.outputs.stage_metrics.paid_arr == pytest.approx(912.0)

    def test_rollup_lifecycle(self, result):
        by_key = result.ctx.outputs.aggregation.by_key()

        acme = by_key["org:org_acme"]
        assert acme.current_status == "active"
        assert acme.churn_date is None
        assert acme.purchase_date == utc(2025, 1, 5)
        assert (acme.subscription_cohort_month, acme.paid_cohort_month) == ("2025-01", "2025-01")

        beta = by_key["org:org_beta"]
        assert beta.current_status == "trialing"
        assert beta.subscription_start_date == utc(2025, 2, 12)
        assert beta.churn_date == utc(2025, 3, 12)
        assert beta.paid_cohort_month == ""

        idle = by_key["org:org_idle"]
        assert (idle.current_status, idle.subscription_start_date) == ("", None)

    def test_waterfall_cohort_dimensions(self, result):
        dims = {
            (f.org_id, f.cohort_key, f.cohort_month_subscription, f.cohort_month_paid)
            for f in result.ctx.outputs.waterfall_facts
        }
        assert dims == {("org_acme", "2025-01", "2025-01", "2025-01"), ("org_gone", "(blank)", "", "")}

    def test_conversion_by_cohort(self, result, engine_settings):
        rows = [
            (c.cohort_month, c.orgs_signed_up, c.orgs_converted, c.orgs_converted_within_7d_trial_end)
            for c in result.ctx.outputs.conversion_by_cohort
        ]
        assert rows == [("2025-01", 1, 1, 1), ("2025-02", 1, 1, 0), ("2025-03", 1, 0, 0)]
        df = pd.read_csv(engine_settings.paths.output_dir / "conversion_by_cohort.csv")
        assert df["orgs_converted"].tolist() == [1, 1, 0]

    def test_projection(self, result):
        p = result.ctx.outputs.projection
        assert p.month_keys[0] == "2025-01"
        assert p.month_keys[-1] == "2027-07"
        rows = {r.org_key: r for r in p.rows}
        assert set(rows) == {"org:org_acme", "org:org_beta", "email:friend@nowhere.com"}
        assert rows["org:org_acme"].values[0] == pytest.approx(76.0)
        assert rows["org:org_beta"].values[5] is None
        assert rows["org:org_beta"].values[6] == 0.0
        assert set(rows["email:friend@nowhere.com"].values) == {0.0}

    def test_rollup_csv(self, result, engine_settings):
        df = pd.read_csv(engine_settings.paths.output_dir / "org_rollups.csv")
        assert df["org_key"].tolist()[0] == "org:org_acme"
        assert df.loc[0, "stage"] == "Paid"

    def test_run_history(self, result, engine_settings):
        history = load_history(engine_settings.paths.log_dir)
        assert history[0].step == "run"
        assert history[0].status == "ok"
        assert {r.step for r in history} >= {"load", "export"}


class TestSnapshot:
    def test_append_and_idempotent(self, engine_settings):
        first = run_engine(engine_settings, include_snapshot=True)
        assert first.success
        assert first.ctx.outputs.new_snapshot_rows == [
            SnapshotRow(date(2025, 7, 1), "org_acme", 1500.0, 912.0, "Acme", "2025-01")
        ]
        assert first.ctx.outputs.retention.latest_snapshot == date(2025, 7, 1)

        path = engine_settings.paths.snapshot_path
        assert len(pd.read_csv(path)) == 4

        second = run_engine(engine_settings, include_snapshot=True)
        assert second.success
        assert second.ctx.outputs.new_snapshot_rows == []
        assert len(pd.read_csv(path)) == 4

    def test_snapshot_only(self, engine_settings):
        result = run_engine(engine_settings, snapshot_only=True)
        assert result.success
        assert result.steps[-1].name == "append_snapshot"
        assert engine_settings.paths.snapshot_path.exists()
        assert not (engine_settings.paths.output_dir / "org_rollups.csv").exists()


class TestFailures:
    def test_missing_table_fails_before_writing(self, engine_settings, input_dir):
        (input_dir / "memberships.csv").unlink()
        result = run_engine(engine_settings)
        assert not result.success
        assert result.failed_step.name == "load"
        assert "memberships" in result.failed_step.error
        assert not (engine_settings.paths.output_dir / "org_rollups.csv").exists()
        assert not engine_settings.paths.lock_path.exists()

    def test_failed_run_keeps_previous_outputs(self, engine_settings, input_dir):
        assert run_engine(engine_settings).success
        rollups = engine_settings.paths.output_dir / "org_rollups.csv"
        before = rollups.read_text()
        (input_dir / "users.csv").unlink()
        assert not run_engine(engine_settings).success
        assert rollups.read_text() == before

    def test_lock_timeout_recorded_in_history(self, engine_settings):
        lock = engine_settings.paths.lock_path
        lock.parent.mkdir(parents=True, exist_ok=True)
        lock.write_text("999\n")
        settings = engine_settings.model_copy(update={"lock": LockConfig(timeout_seconds=0)})
        with pytest.raises(LockTimeoutError):
            run_engine(settings)
        history = load_history(settings.paths.log_dir)
        assert [(r.step, r.status) for r in history] == [("run", "error")]
        assert "LockTimeoutError" in history[0].error
        assert lock.exists()


class TestExcel:
    @pytest.fixture()
    def excel_settings(self, engine_settings):
        return engine_settings.model_copy(update={"outputs": OutputConfig(excel=True)})

    def test_workbook_written_as_last_step(self, excel_settings):
        result = run_engine(excel_settings)
        assert result.success
        assert result.steps[-1].name == "excel"
        assert (excel_settings.paths.output_dir / "revenue_report.xlsx").exists()

    def test_workbook_failure_keeps_run_successful(self, excel_settings):
        out = excel_settings.paths.output_dir
        (out / "revenue_report.xlsx").mkdir(parents=True)
        result = run_engine(excel_settings)
        excel = result.steps[-1]
        assert (excel.name, excel.success, excel.critical) == ("excel", False, False)
        assert result.success
        assert result.failed_step is None
        assert (out / "org_rollups.csv").exists()


def test_run_directory(input_dir, tmp_path):
    result = run_directory(input_dir, tmp_path / "out", as_of=date(2025, 7, 1))
    assert result.success
    assert (tmp_path / "out" / "org_rollups.csv").exists()
