"""Run orchestration: lock, steps, run records."""

from __future__ import annotations

import time
from dataclasses import dataclass

from loguru import logger

from revenue_engine.config import EngineSettings
from revenue_engine.exceptions import LockTimeoutError
from revenue_engine.locking import run_lock
from revenue_engine.pipeline.context import PipelineContext
from revenue_engine.pipeline.runner import StepResult, run_pipeline
from revenue_engine.pipeline.steps import build_snapshot_steps, build_steps
from revenue_engine.run_logger import RunRecord, generate_run_id, log_run, now_iso


@dataclass
class EngineResult:
    ctx: PipelineContext
    steps: list[StepResult]

    @property
    def success(self) -> bool:
        return bool(self.steps) and not any(r.blocking for r in self.steps)

    @property
    def failed_step(self) -> StepResult | None:
        return next((r for r in self.steps if r.blocking), None)


def run_engine(
    settings: EngineSettings,
    include_snapshot: bool = False,
    snapshot_only: bool = False,
) -> EngineResult:
    """Run the whole pipeline under the advisory lock.

    Raises LockTimeoutError when another run holds the lock; the failed
    attempt is still written to the run history. Step failures
    do not raise; inspect ``EngineResult.failed_step``.
    """
    ctx = PipelineContext(
        settings=settings,
        run_id=generate_run_id(),
        include_snapshot=include_snapshot or snapshot_only,
    )
    steps = build_snapshot_steps() if snapshot_only else build_steps(include_snapshot, settings.outputs.excel)

    start = time.perf_counter()
    try:
        with run_lock(
            settings.paths.lock_path,
            timeout_seconds=settings.lock.timeout_seconds,
            poll_seconds=settings.lock.poll_seconds,
        ):
            results = run_pipeline(ctx, steps)
    except LockTimeoutError as exc:
        log_run(
            RunRecord(
                run_id=ctx.run_id,
                timestamp=now_iso(),
                step="run",
                status="error",
                seconds=round(time.perf_counter() - start, 3),
                error=f"{type(exc).__name__}: {exc}",
            ),
            settings.paths.log_dir,
        )
        raise

    result = EngineResult(ctx=ctx, steps=results)
    if not result.success:
        logger.error("Run {run_id} failed at step '{step}'", run_id=ctx.run_id, step=result.failed_step.name)
    return result


__all__ = ["EngineResult", "run_engine"]
