"""Revenue engine CLI -- Typer application with Rich output."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from revenue_engine.config import DEFAULT_CONFIG_PATH, EngineSettings
from revenue_engine.exceptions import ConfigError, DataError, EngineError, LockTimeoutError
from revenue_engine.logging_setup import setup_logging
from revenue_engine.pipeline import EngineResult, run_engine
from revenue_engine.pipeline.runner import StepResult

console = Console()
app = typer.Typer(
    name="revenue",
    help="Revenue rollup & cohort analytics -- batch pipeline over billing exports.",
    no_args_is_help=True,
)

_GUIDANCE: list[tuple[type[Exception], str, str]] = [
    (ConfigError, "Configuration problem", "Check the YAML file and REVENUE_* environment variables."),
    (DataError, "Input data problem", "Check the input directory holds every required table with its columns."),
    (LockTimeoutError, "Another run is in progress", "Wait for it to finish, or remove a stale lock file."),
]


def _display_error(exc: Exception) -> None:
    title, guidance = "Unexpected error", "See logs/errors.log for the traceback."
    for exc_type, t, g in _GUIDANCE:
        if isinstance(exc, exc_type):
            title, guidance = t, g
            break
    console.print(Panel(
        f"[bold red]{title}[/bold red]\n\n{exc}\n\n[dim]{guidance}[/dim]",
        title="Error",
        border_style="red",
    ))


def _load_settings(
    config: Path,
    input_dir: Path | None,
    output_dir: Path | None,
    as_of: datetime | None,
    excel: bool | None = None,
) -> EngineSettings:
    overrides = {
        "as_of": as_of.date() if as_of else None,
        "paths.input_dir": input_dir,
        "paths.output_dir": output_dir,
        "outputs.excel": excel,
    }
    return EngineSettings.from_yaml(config, **overrides)


def _display_results(results: list[StepResult], json_output: bool = False) -> None:
    if json_output:
        data = [
            {
                "name": r.name,
                "success": r.success,
                "elapsed": round(r.elapsed_seconds, 3),
                "rows_in": r.rows_in,
                "rows_out": r.rows_out,
                "error": r.error,
            }
            for r in results
        ]
        console.print_json(json.dumps({"steps": data}))
        return

    table = Table(title="Pipeline Results")
    table.add_column("Step", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Rows in", justify="right")
    table.add_column("Rows out", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Error", style="red")
    for r in results:
        if r.success:
            status = "[green]OK[/green]"
        elif r.critical:
            status = "[red]FAIL[/red]"
        else:
            status = "[yellow]WARN[/yellow]"
        table.add_row(r.name, status, f"{r.rows_in:,}", f"{r.rows_out:,}", f"{r.elapsed_seconds:.2f}s", r.error)
    console.print(table)


def _display_summary(result: EngineResult) -> None:
    out = result.ctx.outputs
    if out.aggregation is None:
        return
    table = Table(title="Revenue Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    rollups = out.aggregation.rollups
    table.add_row("Org rollups", f"{len(rollups):,}")
    table.add_row("Unmapped rollups", f"{len(out.aggregation.unmapped):,}")
    table.add_row("ARR total", f"${sum(r.arr_total for r in rollups):,.2f}")
    if out.retention is not None and out.retention.latest_snapshot:
        table.add_row("Latest snapshot", str(out.retention.latest_snapshot))
        table.add_row("NRR", f"{out.retention.nrr:.1%}")
        table.add_row("GRR", f"{out.retention.grr:.1%}")
        table.add_row("Logo churn", f"{out.retention.logo_churn_rate:.1%}")
    if out.new_snapshot_rows:
        table.add_row("Snapshot rows appended", f"{len(out.new_snapshot_rows):,}")
    console.print(table)


def _execute(settings: EngineSettings, verbose: bool, json_output: bool, **kwargs) -> None:
    setup_logging(
        settings.paths.log_dir,
        verbose=verbose,
        level=settings.logging.level,
        rotation=settings.logging.rotation,
        retention_days=settings.logging.retention_days,
    )
    try:
        result = run_engine(settings, **kwargs)
    except EngineError as exc:
        _display_error(exc)
        raise typer.Exit(1)

    _display_results(result.steps, json_output=json_output)
    if not result.success:
        failed = result.failed_step
        if failed is not None and failed.exception is not None and not json_output:
            _display_error(failed.exception)
        raise typer.Exit(1)
    if not json_output:
        _display_summary(result)


@app.command()
def run(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config file"),
    input_dir: Path | None = typer.Option(None, "--input", "-i", help="Directory of input tables"),
    output_dir: Path | None = typer.Option(None, "--output", "-o", help="Output directory"),
    as_of: datetime | None = typer.Option(None, "--as-of", formats=["%Y-%m-%d"], help="Run date"),
    snapshot: bool = typer.Option(False, "--snapshot", help="Also append today's ARR snapshot"),
    excel: bool | None = typer.Option(None, "--excel/--no-excel", help="Write the XLSX workbook"),
    json_output: bool = typer.Option(False, "--json", help="Output structured JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Full pipeline: load, compute every output, export."""
    try:
        settings = _load_settings(config, input_dir, output_dir, as_of, excel)
    except ConfigError as exc:
        _display_error(exc)
        raise typer.Exit(1)
    _execute(settings, verbose, json_output, include_snapshot=snapshot)


@app.command("snapshot")
def snapshot_cmd(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config file"),
    input_dir: Path | None = typer.Option(None, "--input", "-i", help="Directory of input tables"),
    output_dir: Path | None = typer.Option(None, "--output", "-o", help="Output directory"),
    as_of: datetime | None = typer.Option(None, "--as-of", formats=["%Y-%m-%d"], help="Snapshot date"),
    json_output: bool = typer.Option(False, "--json", help="Output structured JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Append today's ARR snapshot rows to the history (idempotent)."""
    try:
        settings = _load_settings(config, input_dir, output_dir, as_of)
    except ConfigError as exc:
        _display_error(exc)
        raise typer.Exit(1)
    _execute(settings, verbose, json_output, snapshot_only=True)


@app.command("config")
def show_config(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="YAML config file"),
    json_output: bool = typer.Option(False, "--json", help="Output structured JSON"),
) -> None:
    """Show the resolved settings."""
    try:
        settings = EngineSettings.from_yaml(config)
    except ConfigError as exc:
        _display_error(exc)
        raise typer.Exit(1)

    data = settings.model_dump(mode="json")
    if json_output:
        console.print_json(json.dumps(data))
        return

    table = Table(title=f"Configuration -- {config}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for section, value in data.items():
        if isinstance(value, dict):
            for key, sub in value.items():
                table.add_row(f"{section}.{key}", str(sub))
        else:
            table.add_row(section, "(today)" if value is None else str(value))
    console.print(table)


if __name__ == "__main__":
    app()
