"""Project configuration: project.yml and sources.yml parsing and defaults."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from strata.engine.errors import LoadError
from strata.engine.utils import parse_duration


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")
    path: str = "warehouse.duckdb"


class TargetConfig(BaseModel):
    """Where and how models are materialized."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    schema_name: str = Field(default="analytics", alias="schema")
    catalog: str | None = None  # attached DuckDB database name, for three-part names
    threads: int = Field(default=4, ge=1)

    @property
    def schema(self) -> str:
        return self.schema_name


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")
    models: str = "models"
    macros: str = "macros"
    target: str = "target"


class QualityConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")
    sample_size: int = Field(default=5, ge=0)
    fail_on_stale_error: bool = True


class EnvironmentConfig(BaseModel):
    """A single environment override (e.g. dev, prod)."""
    model_config = ConfigDict(extra="ignore")

    database: dict[str, Any] = Field(default_factory=dict)  # {"path": "dev.duckdb"}
    target: dict[str, Any] = Field(default_factory=dict)  # {"schema": "dev_analytics"}


class FreshnessConfig(BaseModel):
    """Warn/error age thresholds, in hours. Accepts 12h / 30m / 2d / numbers."""
    model_config = ConfigDict(extra="ignore")

    warn_after: float | None = None
    error_after: float | None = None

    @field_validator("warn_after", "error_after", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float | None:
        if value is None:
            return None
        return parse_duration(value).total_seconds() / 3600


class SourceColumn(BaseModel):
    """A column in a source table."""
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""


class SourceTable(BaseModel):
    """A declared external source table."""
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    columns: list[SourceColumn] = Field(default_factory=list)
    loaded_at_column: str | None = None
    freshness: FreshnessConfig | None = None
    freshness_disabled: bool = False  # explicit `freshness: null` on the table


class SourceConfig(BaseModel):
    """An external data source declaration."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    schema_name: str = Field(default="raw", alias="schema")
    description: str = ""
    loaded_at_column: str | None = None
    freshness: FreshnessConfig | None = None
    tables: list[SourceTable] = Field(default_factory=list)

    @property
    def schema(self) -> str:
        return self.schema_name


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    name: str = "default"
    description: str = ""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)
    active_environment: str | None = None
    sources: list[SourceConfig] = Field(default_factory=list)
    project_dir: Path = Field(default_factory=Path.cwd)

    @property
    def db_path(self) -> str:
        if self.database.path == ":memory:":
            return self.database.path
        return str(self.project_dir / self.database.path)

    @property
    def models_dir(self) -> Path:
        return self.project_dir / self.paths.models

    @property
    def macros_dir(self) -> Path:
        return self.project_dir / self.paths.macros

    @property
    def target_dir(self) -> Path:
        return self.project_dir / self.paths.target


def _expand_env_vars(value: Any) -> Any:
    """Expand ${ENV_VAR} references in string values."""
    if isinstance(value, str):
        return re.sub(
            r"\$\{(\w+)\}",
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise LoadError(f"Invalid YAML in {path.name}: {e}") from e
    if not isinstance(raw, dict):
        raise LoadError(f"{path.name} must contain a mapping at the top level")
    return _expand_env_vars(raw)


def _parse_sources(project_dir: Path) -> list[SourceConfig]:
    """Parse sources.yml if it exists."""
    sources_path = project_dir / "sources.yml"
    if not sources_path.exists():
        return []
    raw = _read_yaml(sources_path)
    sources = []
    try:
        for src_raw in raw.get("sources", []):
            tables = []
            for t_raw in src_raw.get("tables", []):
                disabled = "freshness" in t_raw and t_raw["freshness"] is None
                tables.append(SourceTable(
                    name=t_raw.get("name", ""),
                    description=t_raw.get("description", ""),
                    columns=[
                        SourceColumn(name=c.get("name", ""), description=c.get("description", ""))
                        for c in t_raw.get("columns", [])
                    ],
                    loaded_at_column=t_raw.get("loaded_at_column"),
                    freshness=t_raw.get("freshness") or None,
                    freshness_disabled=disabled,
                ))
            sources.append(SourceConfig(
                name=src_raw.get("name", ""),
                schema=src_raw.get("schema", "raw"),
                description=src_raw.get("description", ""),
                loaded_at_column=src_raw.get("loaded_at_column"),
                freshness=src_raw.get("freshness") or None,
                tables=tables,
            ))
    except (ValidationError, ValueError) as e:
        raise LoadError(f"Invalid sources.yml: {e}") from e
    return sources


def load_project(project_dir: Path | None = None, env: str | None = None) -> ProjectConfig:
    """Load project.yml (and sources.yml) from the given directory (or cwd).

    Args:
        project_dir: Path to the project directory.
        env: Environment name to activate (e.g. "dev", "prod").
             If environments are defined and env is None, defaults to "dev".
    """
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    config_path = project_dir / "project.yml"

    if not config_path.exists():
        return ProjectConfig(project_dir=project_dir, sources=_parse_sources(project_dir))

    raw = _read_yaml(config_path)

    try:
        database = DatabaseConfig(**(raw.get("database") or {}))
        target_raw = dict(raw.get("target") or {})
        environments = {
            name: EnvironmentConfig(**(env_raw or {}))
            for name, env_raw in (raw.get("environments") or {}).items()
        }

        # Apply environment overrides
        active_env = env
        if environments and active_env is None:
            active_env = "dev" if "dev" in environments else None
        if active_env and active_env not in environments:
            raise LoadError(
                f"Unknown environment '{active_env}'. "
                f"Available: {', '.join(sorted(environments)) or '(none)'}"
            )
        if active_env:
            env_cfg = environments[active_env]
            if "path" in env_cfg.database:
                database = DatabaseConfig(path=env_cfg.database["path"])
            target_raw.update(env_cfg.target)

        config = ProjectConfig(
            name=raw.get("name", project_dir.name),
            description=raw.get("description", ""),
            database=database,
            target=TargetConfig(**target_raw),
            paths=PathsConfig(**(raw.get("paths") or {})),
            quality=QualityConfig(**(raw.get("quality") or {})),
            environments=environments,
            active_environment=active_env,
            sources=_parse_sources(project_dir),
            project_dir=project_dir,
        )
    except ValidationError as e:
        raise LoadError(f"Invalid project.yml: {e}") from e

    return config
