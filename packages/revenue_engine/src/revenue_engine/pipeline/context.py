"""Typed pipeline context.

``RunInputs`` is built once per run from the loaded tables and never
mutated; every component receives what it needs from it explicitly.
``PipelineContext`` carries the run's mutable state between steps.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

import pandas as pd

from revenue_engine.aggregator import Aggregation
from revenue_engine.config import EngineSettings
from revenue_engine.identity import IdentityIndex
from revenue_engine.kpis import CohortConversion, ConversionMetrics, StageMetrics
from revenue_engine.normalizer import NormalizeStats
from revenue_engine.projection import MrrProjection
from revenue_engine.records import (
    ManualChange,
    Membership,
    Organization,
    PromoRedemption,
    SnapshotRow,
    SubscriptionFact,
    UserIdentity,
)
from revenue_engine.retention import NetNewMonth, RetentionSummary
from revenue_engine.waterfall import WaterfallBucket, WaterfallFact


@dataclass(frozen=True)
class RunInputs:
    """Read-once snapshot of every input table, normalized."""

    as_of: date
    subscriptions: tuple[SubscriptionFact, ...]
    organizations: tuple[Organization, ...]
    memberships: tuple[Membership, ...]
    users: tuple[UserIdentity, ...]
    snapshots: tuple[SnapshotRow, ...] = ()
    redemptions: tuple[PromoRedemption, ...] = ()
    manual_changes: Mapping[str, ManualChange] = field(default_factory=dict)
    stats: tuple[NormalizeStats, ...] = ()
    identity: IdentityIndex | None = None

    @property
    def rows_in(self) -> int:
        return sum(s.rows_in for s in self.stats)


@dataclass
class RunOutputs:
    """Everything computed in memory before the export step."""

    aggregation: Aggregation | None = None
    new_snapshot_rows: list[SnapshotRow] = field(default_factory=list)
    retention: RetentionSummary | None = None
    net_new: list[NetNewMonth] = field(default_factory=list)
    waterfall_facts: list[WaterfallFact] = field(default_factory=list)
    waterfall_by_cohort: list[WaterfallBucket] = field(default_factory=list)
    waterfall_by_org: list[WaterfallBucket] = field(default_factory=list)
    stage_metrics: StageMetrics | None = None
    conversion: ConversionMetrics | None = None
    conversion_by_cohort: list[CohortConversion] = field(default_factory=list)
    projection: MrrProjection | None = None


@dataclass
class PipelineContext:
    settings: EngineSettings
    run_id: str
    include_snapshot: bool = False
    tables: dict[str, pd.DataFrame | None] = field(default_factory=dict)
    inputs: RunInputs | None = None
    outputs: RunOutputs = field(default_factory=RunOutputs)
    row_counts: dict[str, tuple[int, int]] = field(default_factory=dict)
    written: list[Path] = field(default_factory=list)

    @property
    def snapshot_history(self) -> list[SnapshotRow]:
        """Stored history plus rows this run will append."""
        stored = list(self.inputs.snapshots) if self.inputs else []
        return stored + self.outputs.new_snapshot_rows
