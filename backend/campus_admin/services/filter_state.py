"""FilterState: the current query of one console page.

``FilterCriteria``, ``SortSpec`` and ``Page`` are frozen values; ``FilterState``
is the mutable holder that UI callbacks poke at. Every change to the criteria
snaps the page cursor back to 1, and ``snapshot()`` gives a hashable key used
to memoize the derived view.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class DateBucket(str, Enum):
    NONE = "none"
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    PAST = "past"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"

    @classmethod
    def parse(cls, value: Any) -> "DateBucket":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        if not raw:
            return cls.NONE
        try:
            return cls(raw)
        except ValueError as exc:
            raise ValueError(f"Unknown date bucket: {value}") from exc


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def parse(cls, value: Any) -> "SortDirection":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        if raw in ("", "asc", "ascending"):
            return cls.ASC
        if raw in ("desc", "descending"):
            return cls.DESC
        raise ValueError(f"Unknown sort direction: {value}")


@dataclass(frozen=True)
class SortSpec:
    field: Optional[str] = None
    direction: SortDirection = SortDirection.ASC

    @property
    def active(self) -> bool:
        return bool(self.field)


@dataclass(frozen=True)
class Page:
    index: int = 1
    size: int = 10

    def __post_init__(self) -> None:
        if not isinstance(self.size, int) or self.size <= 0:
            raise ValueError("page size must be a positive integer")


def _normalize_filters(filters: Optional[Mapping[str, Any]]) -> tuple[tuple[str, str], ...]:
    if not filters:
        return ()
    pairs = []
    for key, value in filters.items():
        if value is None:
            continue
        text = str(value)
        if text == "":
            continue
        pairs.append((str(key), text))
    return tuple(sorted(pairs))


@dataclass(frozen=True)
class FilterCriteria:
    search_text: str = ""
    equality_filters: tuple[tuple[str, str], ...] = ()
    date_bucket: DateBucket = DateBucket.NONE
    sort: SortSpec = field(default_factory=SortSpec)

    @classmethod
    def build(
        cls,
        *,
        search_text: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        date_bucket: Any = DateBucket.NONE,
        sort_field: Optional[str] = None,
        direction: Any = SortDirection.ASC,
    ) -> "FilterCriteria":
        return cls(
            search_text=search_text or "",
            equality_filters=_normalize_filters(filters),
            date_bucket=DateBucket.parse(date_bucket),
            sort=SortSpec(field=sort_field or None, direction=SortDirection.parse(direction)),
        )

    @property
    def filters(self) -> dict[str, str]:
        return dict(self.equality_filters)

    @property
    def search_terms(self) -> list[str]:
        return (self.search_text or "").lower().split()

    @property
    def has_active_filters(self) -> bool:
        return bool(self.search_terms or self.equality_filters or self.date_bucket != DateBucket.NONE)


class FilterState:
    def __init__(self, *, page_size: int = 10) -> None:
        self._default_page_size = page_size
        self.criteria = FilterCriteria()
        self.page = Page(1, page_size)

    # -- criteria events --------------------------------------------------

    def _set_criteria(self, criteria: FilterCriteria) -> None:
        self.criteria = criteria
        self.page = replace(self.page, index=1)

    def set_search_text(self, text: str) -> None:
        self._set_criteria(replace(self.criteria, search_text=text or ""))

    def set_filter(self, field_name: str, value: Any) -> None:
        current = self.criteria.filters
        if value is None or str(value) == "":
            current.pop(field_name, None)
        else:
            current[field_name] = value
        self._set_criteria(replace(self.criteria, equality_filters=_normalize_filters(current)))

    def set_filters(self, filters: Mapping[str, Any]) -> None:
        self._set_criteria(replace(self.criteria, equality_filters=_normalize_filters(filters)))

    def set_date_bucket(self, bucket: Any) -> None:
        self._set_criteria(replace(self.criteria, date_bucket=DateBucket.parse(bucket)))

    def set_sort(self, field_name: Optional[str], direction: Any = SortDirection.ASC) -> None:
        sort = SortSpec(field=field_name or None, direction=SortDirection.parse(direction))
        self._set_criteria(replace(self.criteria, sort=sort))

    def sort_by(self, field_name: str) -> None:
        """Column click: same column flips direction, a new column starts ascending."""
        sort = self.criteria.sort
        if sort.field == field_name:
            direction = SortDirection.DESC if sort.direction == SortDirection.ASC else SortDirection.ASC
        else:
            direction = SortDirection.ASC
        self.set_sort(field_name, direction)

    # -- page events ------------------------------------------------------

    def set_page(self, index: int) -> None:
        self.page = replace(self.page, index=index)

    def set_page_size(self, size: int) -> None:
        self.page = Page(1, size)

    def reset(self) -> None:
        self.criteria = FilterCriteria()
        self.page = Page(1, self._default_page_size)

    # -- derived ----------------------------------------------------------

    @property
    def has_active_filters(self) -> bool:
        return self.criteria.has_active_filters

    def snapshot(self) -> tuple[FilterCriteria, Page]:
        return (self.criteria, self.page)

    def filter_summary(self, labels: Optional[Mapping[str, str]] = None) -> str:
        labels = labels or {}
        active = []
        if self.criteria.search_text.strip():
            active.append(f'Search: "{self.criteria.search_text.strip()}"')
        for key, value in self.criteria.equality_filters:
            active.append(f"{labels.get(key, key)}: {value}")
        if self.criteria.date_bucket != DateBucket.NONE:
            active.append(f"Date: {self.criteria.date_bucket.value}")
        return ", ".join(active)

    def descriptor(self) -> dict[str, str]:
        """Active criteria as key -> value, in a stable order, for filenames."""
        out: dict[str, str] = {}
        if self.criteria.search_text.strip():
            out["search"] = self.criteria.search_text.strip()
        for key, value in self.criteria.equality_filters:
            out[key] = value
        if self.criteria.date_bucket != DateBucket.NONE:
            out["date"] = self.criteria.date_bucket.value
        return out

