"""Period keys: the canonical day or hour a credit covers.

Keys are derived only from a caller-supplied clock reading, so two
independently triggered runs agree on the period without talking to each other.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from profit_service.utils.constants import KIND_PERIOD_UNIT, PeriodUnit, PositionKind

UNIT_DELTA: dict[PeriodUnit, timedelta] = {
    PeriodUnit.DAY: timedelta(days=1),
    PeriodUnit.HOUR: timedelta(hours=1),
}


@dataclass(frozen=True)
class Period:
    """One crediting interval [start, end)."""
    kind: PositionKind
    unit: PeriodUnit
    key: str
    start: datetime
    end: datetime


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite and TIMESTAMP columns) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate(value: datetime, unit: PeriodUnit) -> datetime:
    value = as_utc(value)
    if unit == PeriodUnit.DAY:
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    return value.replace(minute=0, second=0, microsecond=0)


def format_key(start: datetime, unit: PeriodUnit) -> str:
    if unit == PeriodUnit.DAY:
        return start.strftime("%Y-%m-%d")
    return start.strftime("%Y-%m-%dT%H:00Z")


def period_for(kind: PositionKind | str, now: datetime) -> Period:
    """Derive the period containing ``now`` for the kind's crediting cadence."""
    kind = PositionKind(kind)
    unit = KIND_PERIOD_UNIT[kind]
    start = truncate(now, unit)
    return Period(
        kind=kind,
        unit=unit,
        key=format_key(start, unit),
        start=start,
        end=start + UNIT_DELTA[unit],
    )


def advance(started_at: datetime, unit: PeriodUnit | str, periods: int) -> datetime:
    """Moment at which the period after ``periods`` credited periods begins."""
    return as_utc(started_at) + UNIT_DELTA[PeriodUnit(unit)] * periods
