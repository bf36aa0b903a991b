"""Report Builder: filtered entities -> in-memory Workbook.

The primary sheet is one row per entity, projected through the kind's report
columns. Optional sheets group the same entities by one categorical field,
count them into caller-declared numeric buckets, or list overall statistics.
Inputs are only read; every derived value is computed into new rows.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from campus_admin.core.config import get_settings
from campus_admin.core.errors import ExportError
from campus_admin.services.entity_kinds import (
    BOOL,
    DATE,
    NUMBER,
    ACTIVITY,
    ACTIVITY_PARTICIPANT,
    AUDIT_EVENT,
    DEPARTMENT,
    STAFF,
    STUDENT,
    TEACHER,
    TIMESTAMP,
    EntityKind,
    ReportColumn,
    completion_ranges,
    parse_date,
    to_bool,
    to_number,
    to_text,
)

logger = logging.getLogger(__name__)

FORMULA_PREFIXES = ("=", "+", "-", "@")

INDEX_LABEL = "#"


# ---------------------------------------------------------------------------
# Workbook values
# ---------------------------------------------------------------------------


@dataclass
class Sheet:
    name: str
    rows: list[dict[str, Any]]
    column_width_hints: tuple[int, ...] = ()

    @property
    def headers(self) -> list[str]:
        if not self.rows:
            return []
        return list(self.rows[0].keys())


@dataclass
class Workbook:
    sheets: list[Sheet] = field(default_factory=list)

    @property
    def sheet_names(self) -> list[str]:
        return [sheet.name for sheet in self.sheets]

    def sheet(self, name: str) -> Optional[Sheet]:
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        return None


# ---------------------------------------------------------------------------
# Cell rendering
# ---------------------------------------------------------------------------


def sanitize_cell(value: Any) -> Any:
    """Neutralize strings a spreadsheet would evaluate as a formula."""
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def _finite(value: float) -> bool:
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _plain_number(value: float) -> Any:
    if not _finite(value):
        return 0
    if value == int(value):
        return int(value)
    return round(value, 2)


def format_percent(numerator: float, denominator: float) -> str:
    if not denominator or not _finite(numerator) or not _finite(denominator):
        return "0%"
    share = numerator / denominator * 100
    if not _finite(share):
        return "0%"
    return f"{share:.1f}%"


def format_average(total: float, count: float) -> str:
    if not count or not _finite(total) or not _finite(count):
        return "N/A"
    return f"{total / count:.1f}"


def format_ratio(smaller: float, larger: float) -> str:
    """``1:N`` ratio, e.g. teachers to students."""
    if not smaller or not larger or not _finite(smaller) or not _finite(larger):
        return "N/A"
    ratio = larger / smaller
    if not _finite(ratio):
        return "N/A"
    return f"1:{round(ratio)}"


def render_cell(kind: EntityKind, entity: Any, field_name: str) -> Any:
    settings = get_settings()
    spec = kind.field(field_name)
    raw = spec.read(entity)
    placeholder = settings.report_null_placeholder

    if spec.type == DATE:
        parsed = parse_date(raw)
        return parsed.strftime(settings.report_date_format) if parsed else placeholder
    if spec.type == BOOL:
        flag = to_bool(raw)
        if flag is None:
            return placeholder
        return settings.report_yes_token if flag else settings.report_no_token
    if spec.type == NUMBER:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return placeholder
        return _plain_number(to_number(raw))

    text = to_text(raw).strip()
    if not text:
        return placeholder
    return sanitize_cell(text)


# ---------------------------------------------------------------------------
# Declarative sheet specs
# ---------------------------------------------------------------------------

COUNT = "count"
SUM = "sum"
AVERAGE = "average"
COUNT_IF = "count_if"
PERCENT_IF = "percent_if"
PERCENT_OF_TOTAL = "percent_of_total"
SHARE = "share"
RATIO = "ratio"
DISTINCT = "distinct"
MAX = "max"
MIN = "min"

EntityTest = Callable[[Any], bool]


@dataclass(frozen=True)
class Metric:
    """One derived column of a grouped sheet (or one row of a stats sheet).

    ``SHARE`` is sum(field) / sum(other); ``RATIO`` renders sum(field) to
    sum(other) as ``1:N``; ``MAX``/``MIN`` name the entity with the extreme
    value of ``field``.
    """

    label: str
    op: str
    field: Optional[str] = None
    other: Optional[str] = None
    test: Optional[EntityTest] = None


@dataclass(frozen=True)
class GroupSpec:
    sheet_name: str
    by: str
    label: str
    metrics: tuple[Metric, ...] = ()
    missing_label: str = "Unspecified"
    column_width_hints: tuple[int, ...] = ()


@dataclass(frozen=True)
class Bucket:
    label: str
    low: float
    high: Optional[float] = None

    def contains(self, value: float) -> bool:
        if value < self.low:
            return False
        return self.high is None or value <= self.high


@dataclass(frozen=True)
class BucketSpec:
    sheet_name: str
    field: str
    label: str
    buckets: tuple[Bucket, ...]
    count_label: str = "Count"
    percent_label: str = "Percent"
    other_label: str = "Other"


@dataclass(frozen=True)
class StatsSpec:
    sheet_name: str
    metrics: tuple[Metric, ...]
    label_header: str = "Statistic"
    value_header: str = "Value"


@dataclass(frozen=True)
class ReportSpec:
    label: str
    kind: EntityKind
    primary_sheet_name: Optional[str] = None
    columns: Optional[tuple[ReportColumn, ...]] = None
    include_index: bool = True
    groups: tuple[GroupSpec, ...] = ()
    buckets: tuple[BucketSpec, ...] = ()
    stats: Optional[StatsSpec] = None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _sum(kind: EntityKind, entities: Sequence[Any], field_name: Optional[str]) -> float:
    if field_name is None:
        return 0.0
    return sum(kind.number(entity, field_name) for entity in entities)


def _extreme(kind: EntityKind, entities: Sequence[Any], field_name: str, pick_max: bool) -> str:
    if not entities:
        return "N/A"
    best = entities[0]
    best_value = kind.number(best, field_name)
    for entity in entities[1:]:
        value = kind.number(entity, field_name)
        if (value > best_value) if pick_max else (value < best_value):
            best, best_value = entity, value
    name = to_text(kind.display_name(best)).strip() or get_settings().report_null_placeholder
    return sanitize_cell(f"{name} ({_plain_number(best_value)})")


def compute_metric(
    kind: EntityKind,
    metric: Metric,
    entities: Sequence[Any],
    all_entities: Sequence[Any],
) -> Any:
    count = len(entities)
    op = metric.op
    if op == COUNT:
        return count
    if op == SUM:
        return _plain_number(_sum(kind, entities, metric.field))
    if op == AVERAGE:
        return format_average(_sum(kind, entities, metric.field), count)
    if op in (COUNT_IF, PERCENT_IF):
        hits = sum(1 for entity in entities if metric.test is not None and metric.test(entity))
        return hits if op == COUNT_IF else format_percent(hits, count)
    if op == PERCENT_OF_TOTAL:
        return format_percent(count, len(all_entities))
    if op == SHARE:
        return format_percent(_sum(kind, entities, metric.field), _sum(kind, entities, metric.other))
    if op == RATIO:
        return format_ratio(_sum(kind, entities, metric.field), _sum(kind, entities, metric.other))
    if op == DISTINCT:
        return len({value for value in (kind.text(entity, metric.field).strip() for entity in entities) if value})
    if op in (MAX, MIN):
        return _extreme(kind, list(entities), metric.field, op == MAX)
    raise ValueError(f"Unknown metric op: {op}")


def build_primary_sheet(
    kind: EntityKind,
    entities: Sequence[Any],
    *,
    name: str,
    columns: Sequence[ReportColumn],
    include_index: bool = True,
) -> Sheet:
    rows = []
    for position, entity in enumerate(entities, start=1):
        row: dict[str, Any] = {}
        if include_index:
            row[INDEX_LABEL] = position
        for column in columns:
            row[column.label] = render_cell(kind, entity, column.field)
        rows.append(row)
    widths = ((8,) if include_index else ()) + tuple(column.width for column in columns)
    return Sheet(name=name, rows=rows, column_width_hints=widths)


def _group_key(kind: EntityKind, entity: Any, spec: GroupSpec) -> str:
    field_spec = kind.field(spec.by)
    raw = field_spec.read(entity)
    if field_spec.type == BOOL:
        flag = to_bool(raw)
        if flag is None:
            return spec.missing_label
        settings = get_settings()
        return settings.report_yes_token if flag else settings.report_no_token
    text = to_text(raw).strip()
    return text or spec.missing_label


def group_entities(kind: EntityKind, entities: Sequence[Any], spec: GroupSpec) -> dict[str, list[Any]]:
    """Partition entities by the group field, in first-seen order."""
    groups: dict[str, list[Any]] = {}
    for entity in entities:
        groups.setdefault(_group_key(kind, entity, spec), []).append(entity)
    return groups


def build_group_sheet(kind: EntityKind, entities: Sequence[Any], spec: GroupSpec) -> Sheet:
    rows = []
    for key, members in group_entities(kind, entities, spec).items():
        row: dict[str, Any] = {spec.label: sanitize_cell(key)}
        for metric in spec.metrics:
            row[metric.label] = compute_metric(kind, metric, members, entities)
        rows.append(row)
    return Sheet(name=spec.sheet_name, rows=rows, column_width_hints=spec.column_width_hints)


def build_bucket_sheet(kind: EntityKind, entities: Sequence[Any], spec: BucketSpec) -> Sheet:
    counts = {bucket.label: 0 for bucket in spec.buckets}
    other = 0
    for entity in entities:
        value = kind.number(entity, spec.field)
        for bucket in spec.buckets:
            if bucket.contains(value):
                counts[bucket.label] += 1
                break
        else:
            other += 1
    if other:
        counts[spec.other_label] = other

    total = len(entities)
    rows = [
        {spec.label: label, spec.count_label: count, spec.percent_label: format_percent(count, total)}
        for label, count in counts.items()
    ]
    return Sheet(name=spec.sheet_name, rows=rows, column_width_hints=(25, 15, 12))


def build_stats_sheet(kind: EntityKind, entities: Sequence[Any], spec: StatsSpec) -> Sheet:
    rows = [
        {spec.label_header: metric.label, spec.value_header: compute_metric(kind, metric, entities, entities)}
        for metric in spec.metrics
    ]
    return Sheet(name=spec.sheet_name, rows=rows, column_width_hints=(30, 40))


def build(entities: Sequence[Any], spec: ReportSpec) -> Workbook:
    """Build the workbook for an already filtered and sorted entity list."""
    items = [entity for entity in (entities or ()) if entity is not None]
    if not items:
        raise ExportError("There is no data to export")

    kind = spec.kind
    workbook = Workbook()
    workbook.sheets.append(
        build_primary_sheet(
            kind,
            items,
            name=spec.primary_sheet_name or spec.label,
            columns=spec.columns if spec.columns is not None else kind.columns,
            include_index=spec.include_index,
        )
    )
    for group in spec.groups:
        sheet = build_group_sheet(kind, items, group)
        if sheet.rows:
            workbook.sheets.append(sheet)
    for bucket_spec in spec.buckets:
        workbook.sheets.append(build_bucket_sheet(kind, items, bucket_spec))
    if spec.stats is not None:
        workbook.sheets.append(build_stats_sheet(kind, items, spec.stats))

    logger.info("Built %s report rows=%s sheets=%s", kind.name, len(items), len(workbook.sheets))
    return workbook


# ---------------------------------------------------------------------------
# Report specs per kind
# ---------------------------------------------------------------------------


def _is_active(kind: EntityKind) -> EntityTest:
    return lambda entity: to_bool(kind.value(entity, "is_active")) is True


def _attendance_is(level: str) -> EntityTest:
    return lambda entity: ACTIVITY_PARTICIPANT.text(entity, "attendance") == level


def _has_completed_activities(entity: Any) -> bool:
    return to_bool(STUDENT.value(entity, "requirement_met")) is True


def completion_buckets() -> tuple[Bucket, ...]:
    required = get_settings().required_activities
    return tuple(Bucket(band.label, band.low, band.high) for band in completion_ranges(required))


def department_report(include_summary: bool = True, include_stats: bool = True, **_: Any) -> ReportSpec:
    faculty_summary = GroupSpec(
        sheet_name="Faculty summary",
        by="faculty_name",
        label="Faculty",
        missing_label="No faculty",
        metrics=(
            Metric("Departments", COUNT),
            Metric("Teachers", SUM, "teacher_count"),
            Metric("Students", SUM, "student_count"),
            Metric("Personnel total", SUM, "personnel_total"),
            Metric("Teacher:student ratio", RATIO, "teacher_count", "student_count"),
            Metric("Teachers (%)", SHARE, "teacher_count", "personnel_total"),
            Metric("Students (%)", SHARE, "student_count", "personnel_total"),
            Metric("Share of departments", PERCENT_OF_TOTAL),
        ),
        column_width_hints=(35, 12, 15, 15, 15, 20, 15, 15, 15),
    )
    stats = StatsSpec(
        sheet_name="Statistics",
        metrics=(
            Metric("Departments", COUNT),
            Metric("Faculties", DISTINCT, "faculty_name"),
            Metric("Teachers", SUM, "teacher_count"),
            Metric("Students", SUM, "student_count"),
            Metric("Personnel total", SUM, "personnel_total"),
            Metric("Teacher:student ratio", RATIO, "teacher_count", "student_count"),
            Metric("Average teachers per department", AVERAGE, "teacher_count"),
            Metric("Average students per department", AVERAGE, "student_count"),
            Metric("Most teachers", MAX, "teacher_count"),
            Metric("Fewest teachers", MIN, "teacher_count"),
            Metric("Most students", MAX, "student_count"),
            Metric("Fewest students", MIN, "student_count"),
        ),
    )
    return ReportSpec(
        label="Departments",
        kind=DEPARTMENT,
        groups=(faculty_summary,) if include_summary else (),
        stats=stats if include_stats else None,
    )


def _student_group(sheet_name: str, by: str, label: str) -> GroupSpec:
    return GroupSpec(
        sheet_name=sheet_name,
        by=by,
        label=label,
        metrics=(
            Metric("Students", COUNT),
            Metric("Departments", DISTINCT, "department"),
            Metric("Active", COUNT_IF, test=_is_active(STUDENT)),
            Metric("Active (%)", PERCENT_IF, test=_is_active(STUDENT)),
            Metric("Average activities", AVERAGE, "completed_activities"),
            Metric("Completed requirement", COUNT_IF, test=_has_completed_activities),
            Metric("Completed (%)", PERCENT_IF, test=_has_completed_activities),
            Metric("Share of students", PERCENT_OF_TOTAL),
        ),
        column_width_hints=(35, 12, 12, 12, 12, 18, 22, 15, 15),
    )


def student_report(
    include_summary: bool = True,
    include_distribution: bool = True,
    **_: Any,
) -> ReportSpec:
    groups: tuple[GroupSpec, ...] = ()
    if include_summary:
        groups = (
            _student_group("Faculty summary", "faculty", "Faculty"),
            _student_group("Academic year summary", "academic_year", "Academic year"),
        )
    buckets: tuple[BucketSpec, ...] = ()
    if include_distribution:
        buckets = (
            BucketSpec(
                sheet_name="Activity distribution",
                field="completed_activities",
                label="Completed activities",
                buckets=completion_buckets(),
                count_label="Students",
            ),
        )
    return ReportSpec(label="Students", kind=STUDENT, groups=groups, buckets=buckets)


def teacher_report(include_summary: bool = True, **_: Any) -> ReportSpec:
    summary = GroupSpec(
        sheet_name="Faculty summary",
        by="faculty",
        label="Faculty",
        metrics=(
            Metric("Teachers", COUNT),
            Metric("Departments", DISTINCT, "department"),
            Metric("Active", COUNT_IF, test=_is_active(TEACHER)),
            Metric("Active (%)", PERCENT_IF, test=_is_active(TEACHER)),
            Metric("Deans", COUNT_IF, test=lambda entity: to_bool(TEACHER.value(entity, "is_dean")) is True),
            Metric("Share of teachers", PERCENT_OF_TOTAL),
        ),
        column_width_hints=(35, 12, 12, 10, 12, 10, 15),
    )
    return ReportSpec(label="Teachers", kind=TEACHER, groups=(summary,) if include_summary else ())


def staff_report(include_summary: bool = True, **_: Any) -> ReportSpec:
    summary = GroupSpec(
        sheet_name="Status summary",
        by="is_active",
        label="Active",
        metrics=(Metric("Staff", COUNT), Metric("Share of staff", PERCENT_OF_TOTAL)),
        column_width_hints=(15, 12, 15),
    )
    return ReportSpec(label="Staff", kind=STAFF, groups=(summary,) if include_summary else ())


def activity_report(**_: Any) -> ReportSpec:
    return ReportSpec(label="Activities", kind=ACTIVITY)


def audit_event_report(include_summary: bool = True, **_: Any) -> ReportSpec:
    groups: tuple[GroupSpec, ...] = ()
    if include_summary:
        groups = (
            GroupSpec(
                sheet_name="By edit type",
                by="edit_type",
                label="Edit type",
                metrics=(Metric("Events", COUNT), Metric("Share of events", PERCENT_OF_TOTAL)),
                column_width_hints=(30, 12, 15),
            ),
            GroupSpec(
                sheet_name="By source table",
                by="source_table",
                label="Source table",
                metrics=(Metric("Events", COUNT), Metric("Share of events", PERCENT_OF_TOTAL)),
                column_width_hints=(20, 12, 15),
            ),
        )
    return ReportSpec(label="Audit log", kind=AUDIT_EVENT, groups=groups)


def participant_report(include_summary: bool = True, **_: Any) -> ReportSpec:
    groups: tuple[GroupSpec, ...] = ()
    if include_summary:
        groups = (
            GroupSpec(
                sheet_name="Attendance summary",
                by="attendance",
                label="Attendance",
                metrics=(Metric("Participants", COUNT), Metric("Share of participants", PERCENT_OF_TOTAL)),
                column_width_hints=(20, 15, 20),
            ),
            GroupSpec(
                sheet_name="Department summary",
                by="department",
                label="Department",
                missing_label="No department",
                metrics=(
                    Metric("Participants", COUNT),
                    Metric("Checked out", COUNT_IF, test=_attendance_is("completed")),
                    Metric("Checked out (%)", PERCENT_IF, test=_attendance_is("completed")),
                    Metric("Share of participants", PERCENT_OF_TOTAL),
                ),
                column_width_hints=(35, 15, 15, 18, 20),
            ),
        )
    return ReportSpec(label="Participants", kind=ACTIVITY_PARTICIPANT, groups=groups)


def timestamp_report(include_summary: bool = True, include_stats: bool = True, **_: Any) -> ReportSpec:
    groups: tuple[GroupSpec, ...] = ()
    if include_summary:
        groups = (
            GroupSpec(
                sheet_name="By event type",
                by="event_type",
                label="Event type",
                metrics=(
                    Metric("Events", COUNT),
                    Metric("Users", DISTINCT, "email"),
                    Metric("Share of events", PERCENT_OF_TOTAL),
                ),
                column_width_hints=(30, 12, 12, 15),
            ),
            GroupSpec(
                sheet_name="By user type",
                by="user_type",
                label="User type",
                metrics=(Metric("Events", COUNT), Metric("Share of events", PERCENT_OF_TOTAL)),
                column_width_hints=(20, 12, 15),
            ),
        )
    stats = StatsSpec(
        sheet_name="Statistics",
        metrics=(
            Metric("Events", COUNT),
            Metric("Unique users", DISTINCT, "email"),
            Metric("Unique IP addresses", DISTINCT, "ip_address"),
            Metric("Event types", DISTINCT, "event_type"),
        ),
    )
    return ReportSpec(
        label="Timestamps",
        kind=TIMESTAMP,
        groups=groups,
        stats=stats if include_stats else None,
    )


REPORT_SPECS: dict[str, Callable[..., ReportSpec]] = {
    "activity": activity_report,
    "activity_participant": participant_report,
    "department": department_report,
    "student": student_report,
    "teacher": teacher_report,
    "staff": staff_report,
    "audit_event": audit_event_report,
    "timestamp": timestamp_report,
}


def report_spec_for(
    kind_name: str,
    *,
    include_summary: bool = True,
    include_stats: bool = True,
    include_distribution: bool = True,
) -> ReportSpec:
    factory = REPORT_SPECS.get(kind_name)
    if factory is None:
        raise ExportError(f"No report is defined for {kind_name}")
    return factory(
        include_summary=include_summary,
        include_stats=include_stats,
        include_distribution=include_distribution,
    )
