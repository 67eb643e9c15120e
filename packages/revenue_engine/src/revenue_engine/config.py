"""Pydantic settings for the revenue engine -- YAML config + environment."""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from revenue_engine.exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path("revenue_config.yaml")


class PathsConfig(BaseModel):
    """File system locations.

    ``snapshot_path``, ``log_dir`` and ``lock_path`` default to locations
    under ``output_dir`` when left unset.
    """

    input_dir: Path = Path("data")
    output_dir: Path = Path("output")
    snapshot_path: Path | None = None
    log_dir: Path | None = None
    lock_path: Path | None = None

    @model_validator(mode="after")
    def _derive_paths(self) -> PathsConfig:
        out = self.output_dir
        if self.snapshot_path is None:
            object.__setattr__(self, "snapshot_path", out / "arr_snapshot.csv")
        if self.log_dir is None:
            object.__setattr__(self, "log_dir", out / "logs")
        if self.lock_path is None:
            object.__setattr__(self, "lock_path", out / ".revenue.lock")
        return self


class TrialConfig(BaseModel):
    standard_days: int = Field(default=14, ge=0)


class SeatCreditConfig(BaseModel):
    """Per-seat amount credited for manual free-seat changes."""

    monthly: float = Field(default=30.0, ge=0)
    yearly: float = Field(default=288.0, ge=0)


class ManualRulesConfig(BaseModel):
    """Reason keywords on manual subscription changes."""

    excluded_terms: tuple[str, ...] = ("internal", "testing", "duplicate")
    free_seat_term: str = "free seat"


class ProjectionConfig(BaseModel):
    forecast_months: int = Field(default=24, ge=0, le=120)
    backfill_start_month: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")


class LockConfig(BaseModel):
    timeout_seconds: float = Field(default=300.0, ge=0)
    poll_seconds: float = Field(default=0.5, gt=0)


class OutputConfig(BaseModel):
    """Output format toggles."""

    csv: bool = True
    excel: bool = False
    excel_name: str = "revenue_report.xlsx"


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    rotation: str = "10 MB"
    retention_days: int = Field(default=30, ge=1)


class EngineSettings(BaseSettings):
    """Engine configuration -- immutable after creation.

    Values passed to the constructor (YAML file plus CLI overrides) win over
    ``REVENUE_*`` environment variables, which win over defaults. Nested
    fields use ``__`` in env names, e.g. ``REVENUE_TRIAL__STANDARD_DAYS``.
    """

    model_config = SettingsConfigDict(
        env_prefix="REVENUE_",
        env_nested_delimiter="__",
        frozen=True,
        extra="forbid",
    )

    as_of: date | None = None
    paths: PathsConfig = PathsConfig()
    trial: TrialConfig = TrialConfig()
    seat_credit: SeatCreditConfig = SeatCreditConfig()
    manual_rules: ManualRulesConfig = ManualRulesConfig()
    projection: ProjectionConfig = ProjectionConfig()
    lock: LockConfig = LockConfig()
    outputs: OutputConfig = OutputConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def run_date(self) -> date:
        return self.as_of or date.today()

    @classmethod
    def from_yaml(cls, config_path: Path = DEFAULT_CONFIG_PATH, **cli_overrides) -> EngineSettings:
        """Load from YAML, merge CLI overrides (highest priority).

        Overrides may use dotted keys (``paths.input_dir``) for nested fields.
        """
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            data = {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        # an empty section such as a bare `paths:` parses to None
        data = {k: v for k, v in data.items() if v is not None}

        for key, value in cli_overrides.items():
            if value is None:
                continue
            section, _, field = key.partition(".")
            if field:
                if not isinstance(data.get(section, {}), dict):
                    raise ConfigError(f"Config section '{section}' in {config_path} must be a mapping")
                data.setdefault(section, {})[field] = value
            else:
                data[key] = value
        try:
            return cls(**data)
        except Exception as e:
            raise ConfigError(f"Configuration error: {e}") from e
