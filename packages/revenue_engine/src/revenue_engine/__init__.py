"""Revenue rollup & cohort analytics engine."""

from __future__ import annotations

from pathlib import Path

__version__ = "1.0.0"


def run_directory(
    input_dir: str | Path,
    output_dir: str | Path = "output/",
    include_snapshot: bool = False,
    **kwargs,
):
    """Convenience entry-point for Jupyter / REPL usage.

    Usage::

        from revenue_engine import run_directory
        result = run_directory("data/exports", "output/")
    """
    from revenue_engine.config import EngineSettings
    from revenue_engine.pipeline import run_engine

    settings = EngineSettings(
        paths={"input_dir": Path(input_dir), "output_dir": Path(output_dir)},
        **kwargs,
    )
    return run_engine(settings, include_snapshot=include_snapshot)
