"""
Shared utility functions.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from adsync.errors import DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def truncate_to_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _get(item: Any, name: str) -> Any:
    return item.get(name) if isinstance(item, dict) else getattr(item, name)


def _set(item: Any, name: str, value: Any) -> None:
    if isinstance(item, dict):
        item[name] = value
    else:
        setattr(item, name, value)


def field_key(name: str) -> Callable[[Any], Any]:
    """Key extractor that works on both dicts and attribute objects."""
    return lambda item: _get(item, name)


def merge_fields(target: Any, incoming: Any, fields: Iterable[str]) -> Any:
    """
    Copy the named fields present in ``incoming`` onto ``target``; others stay untouched.
    Absent dict keys and ``None`` attributes count as not present.
    """
    for name in fields:
        if isinstance(incoming, dict):
            if name not in incoming:
                continue
            value = incoming[name]
        else:
            value = getattr(incoming, name, None)
            if value is None:
                continue
        _set(target, name, value)
    return target


def upsert_by_key(
    items: list,
    incoming: Iterable[Any],
    key: Callable[[Any], Any],
    fields: Iterable[str],
    create: Callable[[Any], Any],
    stamp: Optional[Callable[[Any], None]] = None,
) -> list:
    """
    Merge ``incoming`` records into ``items`` by key.

    Existing items get only ``fields`` overwritten; unknown keys are appended
    via ``create``. ``stamp`` runs on every touched item (e.g. to bump a sync time).
    Returns the touched items in the order they arrived.
    """
    fields = tuple(fields)
    index = {key(item): item for item in items}
    touched = []
    for record in incoming:
        k = key(record)
        existing = index.get(k)
        if existing is not None:
            merge_fields(existing, record, fields)
        else:
            existing = create(record)
            items.append(existing)
            index[k] = existing
        if stamp is not None:
            stamp(existing)
        touched.append(existing)
    return touched


async def with_deadline(awaitable: Awaitable[T], deadline: Optional[float]) -> T:
    """Await under an optional timeout in seconds; raises DeadlineExceeded when it elapses."""
    if deadline is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline)
    except asyncio.TimeoutError as exc:
        raise DeadlineExceeded(deadline) from exc
