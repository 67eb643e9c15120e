"""Engine steps. Each wraps one pure component around the pipeline context.

Nothing is written until ``step_export``; a failure in any earlier step
leaves previous outputs untouched.
"""

from __future__ import annotations

import pandas as pd
from loguru import logger

from revenue_engine import exports
from revenue_engine.aggregator import aggregate
from revenue_engine.data_loader import load_tables
from revenue_engine.identity import IdentityIndex
from revenue_engine.kpis import build_conversion_metrics, build_stage_metrics, conversion_by_cohort
from revenue_engine.normalizer import (
    ManualRules,
    SeatCredit,
    normalize_manual_changes,
    normalize_memberships,
    normalize_organizations,
    normalize_redemptions,
    normalize_snapshots,
    normalize_subscriptions,
    normalize_users,
)
from revenue_engine.pipeline.context import PipelineContext, RunInputs
from revenue_engine.pipeline.runner import PipelineStep
from revenue_engine.projection import OrgLabel, project_mrr
from revenue_engine.retention import compute_retention, net_new_by_month
from revenue_engine.snapshot import build_snapshot_rows, new_rows_only
from revenue_engine.waterfall import OrgCohorts, by_cohort, by_org, latest_facts


def _require_inputs(ctx: PipelineContext) -> RunInputs:
    if ctx.inputs is None:
        raise RuntimeError("Inputs not normalized; run the normalize step first")
    return ctx.inputs


def step_load(ctx: PipelineContext) -> None:
    paths = ctx.settings.paths
    ctx.tables = load_tables(paths.input_dir, paths.snapshot_path)
    rows = sum(len(df) for df in ctx.tables.values() if df is not None)
    ctx.row_counts["load"] = (rows, rows)


def step_normalize(ctx: PipelineContext) -> None:
    s = ctx.settings
    rules = ManualRules(
        excluded_terms=tuple(t.lower() for t in s.manual_rules.excluded_terms),
        free_seat_term=s.manual_rules.free_seat_term.lower(),
        seat_credit=SeatCredit(monthly=s.seat_credit.monthly, yearly=s.seat_credit.yearly),
    )
    manual, manual_stats = normalize_manual_changes(ctx.tables.get("manual_changes"))
    facts, sub_stats = normalize_subscriptions(ctx.tables["subscriptions"], manual, rules)
    orgs, org_stats = normalize_organizations(ctx.tables["organizations"])
    members, member_stats = normalize_memberships(ctx.tables["memberships"])
    users, user_stats = normalize_users(ctx.tables["users"])
    snapshots, snap_stats = normalize_snapshots(ctx.tables.get("arr_snapshot"))
    redemptions, promo_stats = normalize_redemptions(ctx.tables.get("promo_redemptions"))

    stats = (sub_stats, org_stats, member_stats, user_stats, snap_stats, promo_stats, manual_stats)
    for st in stats:
        if st.dropped:
            logger.info(
                "{table}: {kept}/{rows} rows kept, {dropped} dropped",
                table=st.table,
                kept=st.kept,
                rows=st.rows_in,
                dropped=st.dropped,
            )

    ctx.inputs = RunInputs(
        as_of=s.run_date,
        subscriptions=tuple(facts),
        organizations=tuple(orgs),
        memberships=tuple(members),
        users=tuple(users),
        snapshots=tuple(snapshots),
        redemptions=tuple(redemptions),
        manual_changes=manual,
        stats=stats,
        identity=IdentityIndex(users, members, orgs),
    )
    ctx.row_counts["normalize"] = (
        sum(st.rows_in for st in stats),
        sum(st.kept for st in stats),
    )


def step_aggregate(ctx: PipelineContext) -> None:
    inputs = _require_inputs(ctx)
    agg = aggregate(
        inputs.subscriptions,
        inputs.identity,
        inputs.organizations,
        inputs.redemptions,
        standard_days=ctx.settings.trial.standard_days,
    )
    ctx.outputs.aggregation = agg
    ctx.row_counts["aggregate"] = (len(inputs.subscriptions), len(agg.rollups))


def step_snapshot(ctx: PipelineContext) -> None:
    """Compute today's snapshot rows; they are appended in the export step."""
    inputs = _require_inputs(ctx)
    candidates = build_snapshot_rows(ctx.outputs.aggregation.rollups, inputs.as_of, inputs.snapshots)
    ctx.outputs.new_snapshot_rows = new_rows_only(inputs.snapshots, candidates)
    ctx.row_counts["snapshot"] = (len(candidates), len(ctx.outputs.new_snapshot_rows))


def step_retention(ctx: PipelineContext) -> None:
    history = ctx.snapshot_history
    ctx.outputs.retention = compute_retention(history)
    ctx.outputs.net_new = net_new_by_month(history)
    ctx.row_counts["retention"] = (len(history), len(ctx.outputs.net_new))


def step_waterfall(ctx: PipelineContext) -> None:
    history = ctx.snapshot_history
    cohorts = {
        r.org_id: OrgCohorts(r.trial_cohort_month, r.subscription_cohort_month, r.paid_cohort_month)
        for r in ctx.outputs.aggregation.rollups
        if r.org_id
    }
    facts = latest_facts(history, cohorts)
    ctx.outputs.waterfall_facts = facts
    ctx.outputs.waterfall_by_cohort = by_cohort(facts)
    ctx.outputs.waterfall_by_org = by_org(facts)
    ctx.row_counts["waterfall"] = (len(history), len(facts))


def step_kpis(ctx: PipelineContext) -> None:
    inputs = _require_inputs(ctx)
    rollups = ctx.outputs.aggregation.rollups
    ctx.outputs.stage_metrics = build_stage_metrics(rollups)
    ctx.outputs.conversion = build_conversion_metrics(rollups, inputs.organizations)
    ctx.outputs.conversion_by_cohort = conversion_by_cohort(rollups, inputs.organizations)
    ctx.row_counts["kpis"] = (len(rollups), 1)


def step_projection(ctx: PipelineContext) -> None:
    inputs = _require_inputs(ctx)
    agg = ctx.outputs.aggregation
    labels = {
        r.org_key: OrgLabel(org_id=r.org_id, org_name=r.org_name, owner_email=r.owner_email)
        for r in agg.rollups
    }
    for key in agg.facts_by_key:
        if key not in labels and key.startswith("org:"):
            org_id = key[len("org:"):]
            labels[key] = OrgLabel(
                org_id=org_id,
                org_name=inputs.identity.org_names.get(org_id, ""),
                owner_email=inputs.identity.owner_email(org_id),
            )
    cfg = ctx.settings.projection
    ctx.outputs.projection = project_mrr(
        agg.facts_by_key,
        labels,
        inputs.as_of,
        forecast_months=cfg.forecast_months,
        backfill_start_month=cfg.backfill_start_month,
    )
    ctx.row_counts["projection"] = (len(agg.facts_by_key), len(ctx.outputs.projection.rows))


def output_frames(ctx: PipelineContext) -> dict[str, pd.DataFrame]:
    out = ctx.outputs
    return {
        "org_rollups": exports.rollups_frame(out.aggregation.rollups),
        "waterfall_facts": exports.waterfall_facts_frame(out.waterfall_facts),
        "waterfall_by_cohort": exports.waterfall_buckets_frame(out.waterfall_by_cohort, "cohort_key"),
        "waterfall_by_org": exports.waterfall_buckets_frame(out.waterfall_by_org, "org_id"),
        "retention_summary": exports.retention_frame(out.retention),
        "net_new_by_month": exports.net_new_frame(out.net_new),
        "stage_metrics": exports.stage_metrics_frame(out.stage_metrics, out.conversion),
        "conversion_by_cohort": exports.conversion_cohorts_frame(out.conversion_by_cohort),
        "mrr_projection": exports.projection_frame(out.projection),
    }


def step_export(ctx: PipelineContext) -> None:
    s = ctx.settings
    frames = output_frames(ctx)
    ctx.written = exports.write_tables(frames, s.paths.output_dir, csv=s.outputs.csv)
    appended = step_append_snapshot(ctx)
    ctx.row_counts["export"] = (sum(len(df) for df in frames.values()), len(ctx.written) + appended)


def step_excel(ctx: PipelineContext) -> None:
    """Workbook of every output table. Non-critical: CSVs are already written."""
    s = ctx.settings
    frames = output_frames(ctx)
    written = exports.write_tables(frames, s.paths.output_dir, csv=False, excel_name=s.outputs.excel_name)
    ctx.written += written
    ctx.row_counts["excel"] = (sum(len(df) for df in frames.values()), len(written))


def step_append_snapshot(ctx: PipelineContext) -> int:
    inputs = _require_inputs(ctx)
    appended = exports.append_snapshot_rows(
        ctx.settings.paths.snapshot_path, inputs.snapshots, ctx.outputs.new_snapshot_rows
    )
    ctx.row_counts["append_snapshot"] = (len(ctx.outputs.new_snapshot_rows), appended)
    return appended


def build_steps(include_snapshot: bool = False, excel: bool = False) -> list[PipelineStep]:
    """Full run: load -> normalize -> aggregate -> analytics -> export."""
    steps = [
        PipelineStep("load", step_load),
        PipelineStep("normalize", step_normalize),
        PipelineStep("aggregate", step_aggregate),
    ]
    if include_snapshot:
        steps.append(PipelineStep("snapshot", step_snapshot))
    steps += [
        PipelineStep("retention", step_retention),
        PipelineStep("waterfall", step_waterfall),
        PipelineStep("kpis", step_kpis),
        PipelineStep("projection", step_projection),
        PipelineStep("export", step_export),
    ]
    if excel:
        steps.append(PipelineStep("excel", step_excel, critical=False))
    return steps


def build_snapshot_steps() -> list[PipelineStep]:
    """Snapshot only: append today's ARR rows to the history."""
    return [
        PipelineStep("load", step_load),
        PipelineStep("normalize", step_normalize),
        PipelineStep("aggregate", step_aggregate),
        PipelineStep("snapshot", step_snapshot),
        PipelineStep("append_snapshot", step_append_snapshot),
    ]
