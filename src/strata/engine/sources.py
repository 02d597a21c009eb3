"""Source registry: raw tables available to models, with their freshness contracts."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta

from strata.config import FreshnessConfig, SourceConfig
from strata.engine.errors import LoadError
from strata.engine.utils import validate_identifier


@dataclass(frozen=True)
class Source:
    """A raw, externally populated table."""

    source_name: str  # e.g. "shop"
    table_name: str  # e.g. "orders"
    schema: str  # physical schema, e.g. "raw"
    loaded_at_column: str | None = None
    warn_after: timedelta | None = None
    error_after: timedelta | None = None
    description: str = ""

    @property
    def name(self) -> str:
        return f"{self.source_name}.{self.table_name}"

    @property
    def relation(self) -> str:
        return f"{self.schema}.{self.table_name}"

    @property
    def has_freshness(self) -> bool:
        return self.loaded_at_column is not None and (
            self.warn_after is not None or self.error_after is not None
        )


class SourceRegistry:
    """Lookup of declared sources by ``(source, table)``."""

    def __init__(self, sources: list[Source] | None = None) -> None:
        self._sources: dict[tuple[str, str], Source] = {}
        for s in sources or []:
            key = (s.source_name, s.table_name)
            if key in self._sources:
                raise LoadError(f"Duplicate source table '{s.name}'")
            self._sources[key] = s

    def get(self, source_name: str, table_name: str) -> Source:
        try:
            return self._sources[(source_name, table_name)]
        except KeyError:
            raise LoadError(f"Unknown source '{source_name}.{table_name}'") from None

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._sources

    def __iter__(self) -> Iterator[Source]:
        return iter(sorted(self._sources.values(), key=lambda s: s.name))

    def __len__(self) -> int:
        return len(self._sources)


def _thresholds(freshness: FreshnessConfig | None) -> tuple[timedelta | None, timedelta | None]:
    if freshness is None:
        return None, None
    warn = timedelta(hours=freshness.warn_after) if freshness.warn_after is not None else None
    error = timedelta(hours=freshness.error_after) if freshness.error_after is not None else None
    return warn, error


def build_source_registry(configs: list[SourceConfig]) -> SourceRegistry:
    """Flatten sources.yml declarations into a registry.

    Table-level freshness and loaded_at_column override the source-level defaults;
    a table declared with ``freshness: null`` opts out of freshness checks.
    """
    sources: list[Source] = []
    for src in configs:
        try:
            validate_identifier(src.name, "source name")
            validate_identifier(src.schema, f"schema for source {src.name}")
        except ValueError as e:
            raise LoadError(str(e)) from e
        for table in src.tables:
            try:
                validate_identifier(table.name, f"table name in source {src.name}")
            except ValueError as e:
                raise LoadError(str(e)) from e

            loaded_at = table.loaded_at_column or src.loaded_at_column
            if loaded_at:
                try:
                    validate_identifier(loaded_at, f"loaded_at_column for {src.name}.{table.name}")
                except ValueError as e:
                    raise LoadError(str(e)) from e

            if table.freshness_disabled:
                warn, error = None, None
            else:
                warn, error = _thresholds(table.freshness or src.freshness)
            if warn is not None and error is not None and warn > error:
                raise LoadError(
                    f"Source '{src.name}.{table.name}': warn_after ({warn}) "
                    f"exceeds error_after ({error})"
                )
            if (warn is not None or error is not None) and not loaded_at:
                raise LoadError(
                    f"Source '{src.name}.{table.name}' declares freshness "
                    "but no loaded_at_column"
                )
            sources.append(Source(
                source_name=src.name,
                table_name=table.name,
                schema=src.schema,
                loaded_at_column=loaded_at,
                warn_after=warn,
                error_after=error,
                description=table.description,
            ))
    return SourceRegistry(sources)
