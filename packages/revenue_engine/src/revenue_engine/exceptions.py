"""Exception hierarchy for the revenue engine."""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for all revenue engine errors."""

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = detail or {}

    def __repr__(self) -> str:
        if self.detail:
            return f"{type(self).__name__}({self!s}, detail={self.detail})"
        return f"{type(self).__name__}({self!s})"


class ConfigError(EngineError):
    """Invalid or missing configuration."""


class DataError(EngineError):
    """A required input table is missing or unreadable."""


class ColumnMismatchError(DataError):
    """Required columns missing from an input table."""

    def __init__(self, table: str, missing: set[str], available: set[str]) -> None:
        self.table = table
        self.missing = missing
        self.available = available
        super().__init__(
            f"Table '{table}' missing required columns: {sorted(missing)}",
            detail={"table": table, "missing": sorted(missing)},
        )


class LockTimeoutError(EngineError):
    """The run lock could not be acquired within the configured wait."""


class OutputError(EngineError):
    """Writing an output table failed."""
