"""Source freshness monitoring against warn/error SLAs."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

import duckdb

from strata.engine.sources import Source, SourceRegistry

from .models import FreshnessResult

logger = logging.getLogger("strata.transform")


def _hours(delta: timedelta | None) -> float | None:
    return round(delta.total_seconds() / 3600, 3) if delta is not None else None


def _as_utc(value: datetime | date) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        # Naive timestamps in the store are taken to be UTC
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def classify(age: timedelta, warn_after: timedelta | None, error_after: timedelta | None) -> str:
    """fresh below warn, stale-warn from warn up to error, stale-error at or past error."""
    if error_after is not None and age >= error_after:
        return "stale-error"
    if warn_after is not None and age >= warn_after:
        return "stale-warn"
    return "fresh"


def check_source_freshness(
    conn: duckdb.DuckDBPyConnection,
    source: Source,
    now: datetime | None = None,
) -> FreshnessResult:
    """Measure the age of the newest record in one source table."""
    now = _as_utc(now or datetime.now(timezone.utc))
    result = FreshnessResult(
        source=source.name,
        relation=source.relation,
        state="fresh",
        warn_after_hours=_hours(source.warn_after),
        error_after_hours=_hours(source.error_after),
    )
    try:
        row = conn.execute(
            f'SELECT max("{source.loaded_at_column}") FROM {source.relation}'
        ).fetchone()
    except duckdb.Error as e:
        logger.warning("Freshness check failed for %s: %s", source.name, e)
        result.state = "error"
        result.error = str(e)
        return result

    newest = row[0] if row else None
    if newest is None:
        result.state = "stale-error"
        result.error = "no records"
        return result
    if not isinstance(newest, (datetime, date)):
        result.state = "error"
        result.error = f"{source.loaded_at_column} is not a timestamp column"
        return result

    newest_utc = _as_utc(newest)
    age = now - newest_utc
    result.max_loaded_at = newest_utc
    result.age_hours = _hours(age)
    result.state = classify(age, source.warn_after, source.error_after)
    if result.state != "fresh":
        logger.warning("Source %s is %s (%.1fh old)", source.name, result.state, result.age_hours)
    return result


def check_freshness(
    conn: duckdb.DuckDBPyConnection,
    sources: SourceRegistry,
    now: datetime | None = None,
) -> list[FreshnessResult]:
    """Check every source that declares a freshness contract, independently."""
    now = now or datetime.now(timezone.utc)
    return [check_source_freshness(conn, s, now) for s in sources if s.has_freshness]
