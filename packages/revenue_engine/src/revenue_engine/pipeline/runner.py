"""Pipeline runner -- executes steps in order with per-step isolation."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from revenue_engine.logging_setup import get_username
from revenue_engine.pipeline.context import PipelineContext
from revenue_engine.run_logger import RunRecord, log_run, now_iso


@dataclass(frozen=True)
class PipelineStep:
    """A single pipeline step.

    critical: if True, failure aborts the pipeline.
              if False, failure is logged and execution continues.
    """

    name: str
    execute: Callable[[PipelineContext], None]
    critical: bool = True


@dataclass
class StepResult:
    name: str
    success: bool
    elapsed_seconds: float
    rows_in: int = 0
    rows_out: int = 0
    error: str = ""
    exception: Exception | None = None
    critical: bool = True

    @property
    def blocking(self) -> bool:
        """A critical step that failed; the run as a whole failed."""
        return self.critical and not self.success


def _record(ctx: PipelineContext, result: StepResult) -> None:
    log_run(
        RunRecord(
            run_id=ctx.run_id,
            timestamp=now_iso(),
            step=result.name,
            status="ok" if result.success else "error",
            rows_in=result.rows_in,
            rows_out=result.rows_out,
            seconds=round(result.elapsed_seconds, 3),
            error=result.error,
        ),
        ctx.settings.paths.log_dir,
    )


def run_pipeline(ctx: PipelineContext, steps: list[PipelineStep]) -> list[StepResult]:
    """Execute steps in order. Stops on the first critical failure.

    Every attempted step, and the run as a whole, is appended to the run
    history.
    """
    results: list[StepResult] = []

    logger.info("Pipeline start: run {run_id}, {n} steps", run_id=ctx.run_id, n=len(steps))
    logger.log(
        "AUDIT",
        "user={user} | action=pipeline_start | run={run_id} | steps={n}",
        user=get_username(),
        run_id=ctx.run_id,
        n=len(steps),
    )

    for step in steps:
        logger.info("Step '{name}' starting", name=step.name)
        t0 = time.perf_counter()

        try:
            step.execute(ctx)
            elapsed = time.perf_counter() - t0
            rows_in, rows_out = ctx.row_counts.get(step.name, (0, 0))
            result = StepResult(step.name, True, elapsed, rows_in, rows_out, critical=step.critical)
            logger.info(
                "Step '{name}' completed in {t:.2f}s ({rows_in} in, {rows_out} out)",
                name=step.name,
                t=elapsed,
                rows_in=rows_in,
                rows_out=rows_out,
            )
        except Exception as exc:
            elapsed = time.perf_counter() - t0
            error_msg = f"{type(exc).__name__}: {exc}"
            result = StepResult(
                step.name, False, elapsed, error=error_msg, exception=exc, critical=step.critical
            )
            if step.critical:
                logger.error(
                    "Step '{name}' FAILED (critical) after {t:.2f}s: {err}",
                    name=step.name,
                    t=elapsed,
                    err=error_msg,
                )
            else:
                logger.warning(
                    "Step '{name}' failed (non-critical) after {t:.2f}s: {err}",
                    name=step.name,
                    t=elapsed,
                    err=error_msg,
                )

        results.append(result)
        _record(ctx, result)
        if result.blocking:
            break

    ok = not any(r.blocking for r in results)
    total_time = sum(r.elapsed_seconds for r in results)
    failed = next((r for r in results if not r.success), None)
    summary = StepResult(
        name="run",
        success=ok,
        elapsed_seconds=total_time,
        rows_in=results[0].rows_in if results else 0,
        rows_out=results[-1].rows_out if results else 0,
        error=failed.error if failed else "",
    )
    _record(ctx, summary)

    logger.info(
        "Pipeline done: run {run_id} -- {ok}/{total} steps in {t:.2f}s",
        run_id=ctx.run_id,
        ok=sum(1 for r in results if r.success),
        total=len(results),
        t=total_time,
    )
    logger.log(
        "AUDIT",
        "user={user} | action=pipeline_done | run={run_id} | status={status} | elapsed={t:.2f}s",
        user=get_username(),
        run_id=ctx.run_id,
        status="OK" if ok else "FAILED",
        t=total_time,
    )
    return results
