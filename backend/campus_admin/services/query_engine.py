"""Query Engine: (entities, criteria) -> filtered, stably sorted, paginated view.

All functions here are pure. They read the entity collection and never mutate
it; the filtered list only ever holds references to the input records.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from campus_admin.services.entity_kinds import (
    BOOL,
    DATE,
    NUMBER,
    EntityKind,
    parse_date,
    to_bool,
    to_date,
    to_number,
    to_text,
)
from campus_admin.services.filter_state import (
    DateBucket,
    FilterCriteria,
    FilterState,
    Page,
    SortDirection,
    SortSpec,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def _as_entity_list(entities: Any) -> list[Any]:
    if not isinstance(entities, (list, tuple)):
        return []
    return [entity for entity in entities if entity is not None]


def _matches_search(entity: Any, kind: EntityKind, terms: list[str], fields: Sequence[str]) -> bool:
    if not terms:
        return True
    haystacks = [kind.text(entity, name).lower() for name in fields]
    return all(any(term in hay for hay in haystacks) for term in terms)


def _equality_text(kind: EntityKind, field_name: str, value: Any) -> str:
    if kind.field(field_name).type == BOOL:
        flag = to_bool(value)
        return "" if flag is None else ("true" if flag else "false")
    return to_text(value)


def _matches_filters(entity: Any, kind: EntityKind, filters: Iterable[tuple[str, str]]) -> bool:
    for field_name, expected in filters:
        if expected == "":
            continue
        actual = _equality_text(kind, field_name, kind.value(entity, field_name))
        if actual != _equality_text(kind, field_name, expected):
            return False
    return True


def _week_bounds(now: datetime) -> tuple[datetime, datetime]:
    # Sunday 00:00 to the next Sunday 00:00, in now's own timezone.
    days_since_sunday = (now.weekday() + 1) % 7
    start = (now - timedelta(days=days_since_sunday)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=7)


def matches_date_bucket(
    entity: Any,
    kind: EntityKind,
    bucket: DateBucket,
    now: datetime,
) -> bool:
    if bucket == DateBucket.NONE:
        return True
    if kind.start_field is None:
        return False
    start = parse_date(kind.value(entity, kind.start_field))
    if start is None:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if bucket == DateBucket.UPCOMING:
        return start > now
    if bucket == DateBucket.PAST:
        return start < now
    if bucket == DateBucket.ONGOING:
        end = None
        if kind.end_field is not None:
            end = parse_date(kind.value(entity, kind.end_field))
        if end is None:
            end = start
        return start <= now <= end
    if bucket == DateBucket.THIS_WEEK:
        week_start, week_end = _week_bounds(now)
        return week_start <= start < week_end
    if bucket == DateBucket.THIS_MONTH:
        local = start.astimezone(now.tzinfo)
        return local.year == now.year and local.month == now.month
    return False


def filter_entities(
    entities: Any,
    criteria: FilterCriteria,
    kind: EntityKind,
    *,
    now: Optional[datetime] = None,
    search_fields: Optional[Sequence[str]] = None,
) -> list[Any]:
    """Keep the entities matching search, equality filters and date bucket."""
    items = _as_entity_list(entities)
    terms = criteria.search_terms
    fields = tuple(search_fields) if search_fields is not None else kind.search_fields
    bucket = criteria.date_bucket
    if bucket != DateBucket.NONE and now is None:
        now = utc_now()

    out = []
    for entity in items:
        try:
            keep = (
                _matches_search(entity, kind, terms, fields)
                and _matches_filters(entity, kind, criteria.equality_filters)
                and (bucket == DateBucket.NONE or matches_date_bucket(entity, kind, bucket, now))
            )
        except Exception:
            logger.debug("Dropping malformed %s entity during filtering", kind.name, exc_info=True)
            continue
        if keep:
            out.append(entity)
    return out


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------


def sort_key(kind: EntityKind, field_name: str) -> Callable[[Any], Any]:
    spec = kind.field(field_name)

    if spec.type in (NUMBER, BOOL):
        return lambda entity: to_number(spec.read(entity))
    if spec.type == DATE:
        return lambda entity: to_date(spec.read(entity))
    return lambda entity: to_text(spec.read(entity)).casefold()


def sort_entities(entities: Sequence[Any], sort: Optional[SortSpec], kind: EntityKind) -> list[Any]:
    """Stable, type-aware sort. No sort field keeps the input order."""
    items = list(entities)
    if sort is None or not sort.active:
        return items
    # sorted() keeps equal keys in input order even with reverse=True.
    return sorted(items, key=sort_key(kind, sort.field), reverse=sort.direction == SortDirection.DESC)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PageSlice:
    items: list[Any]
    total_pages: int
    current_page: int
    total_count: int


def total_pages_for(count: int, size: int) -> int:
    return max(1, math.ceil(count / size))


def paginate(entities: Sequence[Any], page: Page) -> PageSlice:
    total = len(entities)
    pages = total_pages_for(total, page.size)
    try:
        index = int(page.index)
    except (TypeError, ValueError):
        index = 1
    current = min(max(index, 1), pages)
    start = (current - 1) * page.size
    return PageSlice(
        items=list(entities[start : start + page.size]),
        total_pages=pages,
        current_page=current,
        total_count=total,
    )


def unique_values(entities: Any, kind: EntityKind, field_name: str) -> list[str]:
    """Distinct non-empty values of one field, sorted case-insensitively."""
    seen: dict[str, None] = {}
    for entity in _as_entity_list(entities):
        text = to_text(kind.value(entity, field_name)).strip()
        if text:
            seen.setdefault(text, None)
    return sorted(seen, key=lambda value: (value.casefold(), value))


# ---------------------------------------------------------------------------
# Memoized per-kind engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryView:
    items: list[Any]
    total_count: int
    total_pages: int
    current_page: int
    sorted_items: list[Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total_count": self.total_count,
            "total_pages": self.total_pages,
            "current_page": self.current_page,
        }


class QueryEngine:
    """One engine per entity kind.

    Caches the last derived view keyed on the source collection's identity and
    the full filter snapshot, so asking again with nothing changed is free.
    Date buckets are judged against the clock floored to ``clock_resolution``.
    """

    def __init__(
        self,
        kind: EntityKind,
        *,
        clock: Clock = utc_now,
        search_fields: Optional[Sequence[str]] = None,
        clock_resolution: timedelta = timedelta(minutes=1),
    ) -> None:
        self.kind = kind
        self.clock = clock
        self.clock_resolution = clock_resolution
        self.search_fields = tuple(search_fields) if search_fields is not None else None
        self._cache_source: Any = None
        self._cache_key: Optional[tuple] = None
        self._cache_sorted: Optional[list[Any]] = None
        self.compute_count = 0

    def _bucket_now(self) -> datetime:
        """Clock reading floored to the resolution, so date-bucket views stay cacheable."""
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        step = self.clock_resolution.total_seconds()
        if step <= 0:
            return now
        stamp = now.timestamp()
        return datetime.fromtimestamp(stamp - stamp % step, tz=now.tzinfo)

    def filtered(self, entities: Any, criteria: FilterCriteria) -> list[Any]:
        """Filtered and sorted, pagination ignored. Used by exports."""
        now = self._bucket_now() if criteria.date_bucket != DateBucket.NONE else None
        key = (criteria, now)
        if self._cache_sorted is not None and self._cache_source is entities and self._cache_key == key:
            return self._cache_sorted

        self.compute_count += 1
        matched = filter_entities(entities, criteria, self.kind, now=now, search_fields=self.search_fields)
        result = sort_entities(matched, criteria.sort, self.kind)
        self._cache_source = entities
        self._cache_key = key
        self._cache_sorted = result
        return result

    def view(self, entities: Any, criteria: FilterCriteria, page: Page) -> QueryView:
        sorted_items = self.filtered(entities, criteria)
        sliced = paginate(sorted_items, page)
        return QueryView(
            items=sliced.items,
            total_count=sliced.total_count,
            total_pages=sliced.total_pages,
            current_page=sliced.current_page,
            sorted_items=sorted_items,
        )

    def view_state(self, entities: Any, state: FilterState) -> QueryView:
        criteria, page = state.snapshot()
        return self.view(entities, criteria, page)
