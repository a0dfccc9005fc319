from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Iterable, Iterator, Sequence, TypeVar

from sqlalchemy import DateTime

from tenantvault.domain.models import Base


T = TypeVar("T")


def to_utc(value: datetime) -> datetime:
    # Treat naive timestamps (sqlite round-trips) as UTC so comparisons stay consistent.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    # Accept ISO-8601 strings with a trailing Z as emitted by other exporters.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        return to_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported timestamp value: {value!r}")


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc(value).isoformat()
    return value


def row_to_dict(row: Base, *, exclude: Iterable[str] = ()) -> dict[str, Any]:
    # Serialize every mapped column into JSON-safe primitives keyed by column name.
    skipped = set(exclude)
    return {
        column.key: _json_value(getattr(row, column.key))
        for column in row.__table__.columns
        if column.key not in skipped
    }


def copy_columns(row: Base, target: type[Base]) -> dict[str, Any]:
    # Carry raw column values between twin tables; columns the target lacks are dropped.
    return {
        column.key: getattr(row, column.key)
        for column in target.__table__.columns
        if hasattr(row, column.key)
    }


def coerce_record(
    model: type[Base],
    payload: dict[str, Any],
    *,
    exclude: Iterable[str] = (),
) -> dict[str, Any]:
    """Project a snapshot record onto ``model`` columns.

    Keys that are not columns are dropped, and datetime columns are parsed from
    their ISO form. Missing keys are left out so column defaults apply.
    """
    skipped = set(exclude)
    values: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.key in skipped or column.key not in payload:
            continue
        value = payload[column.key]
        if isinstance(column.type, DateTime):
            value = parse_timestamp(value)
        if value is None and column.server_default is not None:
            continue
        values[column.key] = value
    return values


def chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    # Slice large id lists so IN-clauses stay within driver parameter limits.
    step = max(1, int(size))
    for start in range(0, len(items), step):
        yield items[start : start + step]
