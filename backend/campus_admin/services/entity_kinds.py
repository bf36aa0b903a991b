"""Entity kinds: one tagged variant per record type handled by the console.

Each kind carries its field accessor table (used by search, filtering,
sorting and date buckets) and its report projection. Records themselves stay
opaque mappings as returned by the upstream server; a field is read through
its declared name first and then through its aliases (upstream column names,
camelCase keys).
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from campus_admin.core.config import get_settings

TEXT = "text"
NUMBER = "number"
DATE = "date"
BOOL = "bool"
FIELD_TYPES = (TEXT, NUMBER, DATE, BOOL)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%d/%m/%Y %H:%M", "%d/%m/%Y")


def _lookup(entity: Any, key: str) -> Any:
    if isinstance(entity, Mapping):
        return entity.get(key)
    return getattr(entity, key, None)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return str(value)
    except ValueError:
        # int wider than the interpreter's str conversion limit
        return ""


def to_number(value: Any) -> float:
    """Numeric value for sorting and totals. Anything non-finite reads as 0."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        if isinstance(value, (int, float)):
            parsed = float(value)
        else:
            parsed = float(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date-like value into an aware UTC datetime, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            dt = None
            for fmt in _DATE_FORMATS:
                try:
                    dt = datetime.strptime(raw, fmt)
                    break
                except ValueError:
                    continue
            if dt is None:
                return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_date(value: Any) -> datetime:
    return parse_date(value) or EPOCH


def to_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    raw = str(value).strip().lower()
    if raw in {"1", "true", "yes", "y", "t"}:
        return True
    if raw in {"0", "false", "no", "n", "f", ""}:
        return False
    return None


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = TEXT
    aliases: tuple[str, ...] = ()
    derive: Optional[Callable[[Any], Any]] = None

    def read(self, entity: Any) -> Any:
        if entity is None:
            return None
        if self.derive is not None:
            try:
                return self.derive(entity)
            except Exception:
                return None
        for key in (self.name, *self.aliases):
            value = _lookup(entity, key)
            if value is not None:
                return value
        return None

    def key_for(self, entity: Any) -> str:
        """Key this record actually stores the field under, falling back to the name."""
        if isinstance(entity, Mapping):
            for key in (self.name, *self.aliases):
                if key in entity:
                    return key
        return self.name


@dataclass(frozen=True)
class ReportColumn:
    label: str
    field: str
    width: int = 15


@dataclass(frozen=True, eq=False)
class EntityKind:
    name: str
    label: str
    id_field: str
    fields: Mapping[str, FieldSpec]
    search_fields: tuple[str, ...] = ()
    filter_fields: tuple[str, ...] = ()
    start_field: Optional[str] = None
    end_field: Optional[str] = None
    display_field: Optional[str] = None
    columns: tuple[ReportColumn, ...] = ()
    source_table: Optional[str] = None
    status_field: Optional[str] = None
    # Kind whose record id scopes the collection, e.g. one activity's participants.
    parent_kind: Optional[str] = None

    def field(self, name: str) -> FieldSpec:
        spec = self.fields.get(name)
        if spec is None:
            return FieldSpec(name)
        return spec

    def value(self, entity: Any, name: str) -> Any:
        return self.field(name).read(entity)

    def text(self, entity: Any, name: str) -> str:
        return to_text(self.value(entity, name))

    def number(self, entity: Any, name: str) -> float:
        return to_number(self.value(entity, name))

    def date(self, entity: Any, name: str) -> datetime:
        return to_date(self.value(entity, name))

    def entity_id(self, entity: Any) -> Any:
        return self.value(entity, self.id_field)

    def display_name(self, entity: Any) -> str:
        if self.display_field is None:
            return to_text(self.entity_id(entity))
        return self.text(entity, self.display_field)


def _fields(*specs: FieldSpec) -> dict[str, FieldSpec]:
    return {spec.name: spec for spec in specs}


def _full_name(first: FieldSpec, last: FieldSpec) -> Callable[[Any], Any]:
    def _derive(entity: Any) -> Any:
        parts = [to_text(first.read(entity)).strip(), to_text(last.read(entity)).strip()]
        joined = " ".join(p for p in parts if p)
        return joined or None

    return _derive


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

_ACTIVITY_FIELDS = _fields(
    FieldSpec("id", NUMBER, ("Activity_ID", "activityId")),
    FieldSpec("title", TEXT, ("Activity_Title",)),
    FieldSpec("description", TEXT, ("Activity_Description",)),
    FieldSpec("location", TEXT, ("locationDetail", "Activity_LocationDetail")),
    FieldSpec("type_name", TEXT, ("typeName", "ActivityType_Name")),
    FieldSpec("status_name", TEXT, ("statusName", "ActivityStatus_Name")),
    FieldSpec("start_time", DATE, ("startTime", "Activity_StartTime")),
    FieldSpec("end_time", DATE, ("endTime", "Activity_EndTime")),
    FieldSpec("regis_time", DATE, ("regisTime", "Activity_RegisTime")),
    FieldSpec("update_time", DATE, ("updateTime", "Activity_UpdateTime")),
    FieldSpec("is_required", BOOL, ("isRequire", "Activity_IsRequire")),
)

ACTIVITY = EntityKind(
    name="activity",
    label="Activities",
    id_field="id",
    fields=_ACTIVITY_FIELDS,
    search_fields=("title", "description", "location"),
    filter_fields=("type_name", "status_name"),
    start_field="start_time",
    end_field="end_time",
    display_field="title",
    source_table="Activity",
    columns=(
        ReportColumn("Title", "title", 40),
        ReportColumn("Type", "type_name", 25),
        ReportColumn("Status", "status_name", 15),
        ReportColumn("Start", "start_time", 20),
        ReportColumn("End", "end_time", 20),
        ReportColumn("Location", "location", 30),
        ReportColumn("Required", "is_required", 15),
        ReportColumn("Created", "regis_time", 20),
    ),
)


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------

_DEPT_TEACHERS = FieldSpec("teacher_count", NUMBER, ("teacherCount",))
_DEPT_STUDENTS = FieldSpec("student_count", NUMBER, ("studentCount",))

_DEPARTMENT_FIELDS = _fields(
    FieldSpec("id", NUMBER, ("Department_ID", "departmentId")),
    FieldSpec("department_name", TEXT, ("Department_Name", "name")),
    FieldSpec("faculty_name", TEXT, ("Faculty_Name", "facultyName")),
    _DEPT_TEACHERS,
    _DEPT_STUDENTS,
    FieldSpec(
        "personnel_total",
        NUMBER,
        derive=lambda e: to_number(_DEPT_TEACHERS.read(e)) + to_number(_DEPT_STUDENTS.read(e)),
    ),
)

DEPARTMENT = EntityKind(
    name="department",
    label="Departments",
    id_field="id",
    fields=_DEPARTMENT_FIELDS,
    search_fields=("department_name", "faculty_name", "id"),
    filter_fields=("faculty_name",),
    display_field="department_name",
    columns=(
        ReportColumn("Department id", "id", 12),
        ReportColumn("Department", "department_name", 40),
        ReportColumn("Faculty", "faculty_name", 35),
        ReportColumn("Teachers", "teacher_count", 15),
        ReportColumn("Students", "student_count", 15),
        ReportColumn("Personnel total", "personnel_total", 15),
    ),
)


# ---------------------------------------------------------------------------
# People: students, teachers, staff
# ---------------------------------------------------------------------------

def _person_fields(prefix: str) -> dict[str, FieldSpec]:
    first = FieldSpec("first_name", TEXT, ("firstName", f"{prefix}_FirstName"))
    last = FieldSpec("last_name", TEXT, ("lastName", f"{prefix}_LastName"))
    return _fields(
        FieldSpec("id", NUMBER, ("Users_ID", "userId")),
        FieldSpec("code", TEXT, (f"{prefix.lower()}Code", f"{prefix}_Code")),
        first,
        last,
        FieldSpec("full_name", TEXT, derive=_full_name(first, last)),
        FieldSpec("email", TEXT, ("Users_Email",)),
        FieldSpec("is_active", BOOL, ("isActive", "Users_IsActive")),
        FieldSpec("regis_time", DATE, ("regisTime", "Users_RegisTime")),
    )


@dataclass(frozen=True)
class CompletionRange:
    level: str
    low: int
    high: Optional[int] = None

    @property
    def label(self) -> str:
        if self.high is None:
            return f"{self.low}+ activities (complete)"
        if self.low == self.high:
            return f"{self.low} activities"
        return f"{self.low}-{self.high} activities"


_PARTIAL_LEVELS = ("very_low", "low", "moderate")


def completion_ranges(required: int) -> tuple[CompletionRange, ...]:
    """Completion bands for a required-activity threshold.

    Zero, then 1..required-1 cut into up to three even bands, then
    ``required``+. A threshold of 10 gives 0 / 1-3 / 4-6 / 7-9 / 10+.
    """
    if required <= 0:
        return (CompletionRange("complete", 0),)
    ranges = [CompletionRange("critical", 0, 0)]
    span = required - 1
    if span > 0:
        step = math.ceil(span / len(_PARTIAL_LEVELS))
        low = 1
        for level in _PARTIAL_LEVELS:
            if low > span:
                break
            high = min(low + step - 1, span)
            ranges.append(CompletionRange(level, low, high))
            low = high + 1
    ranges.append(CompletionRange("complete", required))
    return tuple(ranges)


def completion_level(completed: float, required: int) -> str:
    ranges = completion_ranges(required)
    level = ranges[0].level
    for band in ranges:
        if completed >= band.low:
            level = band.level
    return level


def _activity_progress(entity: Any) -> float:
    required = get_settings().required_activities
    completed = to_number(_STUDENT_COMPLETED.read(entity))
    if required <= 0:
        return 100.0
    return min(100.0, round(completed / required * 100))



def _completion_level(entity: Any) -> str:
    return completion_level(to_number(_STUDENT_COMPLETED.read(entity)), get_settings().required_activities)


def _requirement_met(entity: Any) -> bool:
    return to_number(_STUDENT_COMPLETED.read(entity)) >= get_settings().required_activities

_STUDENT_COMPLETED = FieldSpec("completed_activities", NUMBER, ("completedActivities",))

_STUDENT_FIELDS = {
    **_person_fields("Student"),
    **_fields(
        FieldSpec("faculty", TEXT, ("Faculty_Name", "facultyName")),
        FieldSpec("department", TEXT, ("Department_Name", "departmentName")),
        FieldSpec("academic_year", TEXT, ("academicYear", "Student_AcademicYear")),
        FieldSpec("study_year", TEXT, ("studentYear", "Student_Year")),
        _STUDENT_COMPLETED,
        FieldSpec("activity_progress", NUMBER, derive=_activity_progress),
        FieldSpec("completion_level", TEXT, derive=_completion_level),
        FieldSpec("requirement_met", BOOL, derive=_requirement_met),
    ),
}

STUDENT = EntityKind(
    name="student",
    label="Students",
    id_field="id",
    fields=_STUDENT_FIELDS,
    search_fields=("code", "first_name", "last_name", "email"),
    filter_fields=(
        "faculty",
        "department",
        "academic_year",
        "study_year",
        "is_active",
        "completion_level",
        "requirement_met",
    ),
    display_field="full_name",
    source_table="Student",
    status_field="is_active",
    columns=(
        ReportColumn("Student code", "code", 15),
        ReportColumn("Name", "full_name", 30),
        ReportColumn("Email", "email", 30),
        ReportColumn("Faculty", "faculty", 30),
        ReportColumn("Department", "department", 30),
        ReportColumn("Academic year", "academic_year", 15),
        ReportColumn("Year level", "study_year", 12),
        ReportColumn("Active", "is_active", 10),
        ReportColumn("Completed activities", "completed_activities", 20),
        ReportColumn("Progress (%)", "activity_progress", 15),
    ),
)

_TEACHER_FIELDS = {
    **_person_fields("Teacher"),
    **_fields(
        FieldSpec("faculty", TEXT, ("Faculty_Name", "facultyName")),
        FieldSpec("department", TEXT, ("Department_Name", "departmentName")),
        FieldSpec("is_dean", BOOL, ("isDean", "Teacher_IsDean")),
    ),
}

TEACHER = EntityKind(
    name="teacher",
    label="Teachers",
    id_field="id",
    fields=_TEACHER_FIELDS,
    search_fields=("code", "first_name", "last_name", "email"),
    filter_fields=("faculty", "department", "is_active"),
    display_field="full_name",
    source_table="Teacher",
    status_field="is_active",
    columns=(
        ReportColumn("Teacher code", "code", 15),
        ReportColumn("Name", "full_name", 30),
        ReportColumn("Email", "email", 30),
        ReportColumn("Faculty", "faculty", 30),
        ReportColumn("Department", "department", 30),
        ReportColumn("Dean", "is_dean", 10),
        ReportColumn("Active", "is_active", 10),
    ),
)

STAFF = EntityKind(
    name="staff",
    label="Staff",
    id_field="id",
    fields=_person_fields("Staff"),
    search_fields=("code", "first_name", "last_name", "email"),
    filter_fields=("is_active",),
    start_field="regis_time",
    display_field="full_name",
    source_table="Staff",
    status_field="is_active",
    columns=(
        ReportColumn("Staff code", "code", 15),
        ReportColumn("Name", "full_name", 30),
        ReportColumn("Email", "email", 30),
        ReportColumn("Active", "is_active", 10),
        ReportColumn("Registered", "regis_time", 20),
    ),
)


# ---------------------------------------------------------------------------
# Audit events (data-edit log)
# ---------------------------------------------------------------------------

_AUDIT_FIELDS = _fields(
    FieldSpec("id", NUMBER, ("DataEdit_ID",)),
    FieldSpec("name", TEXT, ("DataEdit_Name",)),
    FieldSpec("edit_type", TEXT, ("DataEditType_Name", "editType")),
    FieldSpec("source_table", TEXT, ("DataEdit_SourceTable", "sourceTable")),
    FieldSpec("this_id", NUMBER, ("DataEdit_ThisId", "thisId")),
    FieldSpec("actor_email", TEXT, ("Users_Email",)),
    FieldSpec("actor_code", TEXT, ("Staff_Code",)),
    FieldSpec("actor_first_name", TEXT, ("Staff_FirstName",)),
    FieldSpec("actor_last_name", TEXT, ("Staff_LastName",)),
    FieldSpec("ip_address", TEXT, ("DataEdit_IP_Address", "ipAddress")),
    FieldSpec("regis_time", DATE, ("DataEdit_RegisTime", "regisTime")),
)

AUDIT_EVENT = EntityKind(
    name="audit_event",
    label="Audit log",
    id_field="id",
    fields=_AUDIT_FIELDS,
    search_fields=(
        "name",
        "actor_email",
        "actor_code",
        "actor_first_name",
        "actor_last_name",
        "ip_address",
        "edit_type",
        "source_table",
        "this_id",
    ),
    filter_fields=("edit_type", "source_table"),
    start_field="regis_time",
    display_field="name",
    columns=(
        ReportColumn("Description", "name", 45),
        ReportColumn("Edit type", "edit_type", 25),
        ReportColumn("Source table", "source_table", 15),
        ReportColumn("Record id", "this_id", 12),
        ReportColumn("Actor email", "actor_email", 30),
        ReportColumn("Actor code", "actor_code", 15),
        ReportColumn("IP address", "ip_address", 18),
        ReportColumn("Time", "regis_time", 20),
    ),
)


# ---------------------------------------------------------------------------
# Activity participants (registrations of one activity)
# ---------------------------------------------------------------------------

_CHECK_IN = FieldSpec("check_in_time", DATE, ("Registration_CheckInTime", "checkInTime"))
_CHECK_OUT = FieldSpec("check_out_time", DATE, ("Registration_CheckOutTime", "checkOutTime"))


def _attendance(entity: Any) -> str:
    if parse_date(_CHECK_OUT.read(entity)) is not None:
        return "completed"
    if parse_date(_CHECK_IN.read(entity)) is not None:
        return "checked_in"
    return "pending"


def _participant_type(entity: Any) -> Optional[str]:
    if to_bool(_lookup(entity, "isTeacher")):
        return "teacher"
    if to_bool(_lookup(entity, "isStudent")):
        return "student"
    return to_text(_lookup(entity, "Users_Type")).strip().lower() or None


_PARTICIPANT_FIRST = FieldSpec("first_name", TEXT, ("FirstName", "firstName"))
_PARTICIPANT_LAST = FieldSpec("last_name", TEXT, ("LastName", "lastName"))

_PARTICIPANT_FIELDS = _fields(
    FieldSpec("id", NUMBER, ("Users_ID", "userId")),
    FieldSpec("code", TEXT, ("Code",)),
    _PARTICIPANT_FIRST,
    _PARTICIPANT_LAST,
    FieldSpec("full_name", TEXT, derive=_full_name(_PARTICIPANT_FIRST, _PARTICIPANT_LAST)),
    FieldSpec("email", TEXT, ("Users_Email",)),
    FieldSpec("user_type", TEXT, derive=_participant_type),
    FieldSpec("department", TEXT, ("Department_Name", "departmentName")),
    FieldSpec("faculty", TEXT, ("Faculty_Name", "facultyName")),
    FieldSpec("regis_time", DATE, ("Registration_RegisTime", "regisTime")),
    _CHECK_IN,
    _CHECK_OUT,
    FieldSpec("attendance", TEXT, derive=_attendance),
    FieldSpec("registration_status", TEXT, ("RegistrationStatus_Name",)),
)

ACTIVITY_PARTICIPANT = EntityKind(
    name="activity_participant",
    label="Participants",
    id_field="id",
    fields=_PARTICIPANT_FIELDS,
    search_fields=("first_name", "last_name", "code", "email", "department"),
    filter_fields=("attendance", "user_type", "department", "faculty"),
    start_field="regis_time",
    display_field="full_name",
    parent_kind="activity",
    columns=(
        ReportColumn("First name", "first_name", 20),
        ReportColumn("Last name", "last_name", 20),
        ReportColumn("Code", "code", 15),
        ReportColumn("Email", "email", 30),
        ReportColumn("Type", "user_type", 12),
        ReportColumn("Department", "department", 30),
        ReportColumn("Faculty", "faculty", 30),
        ReportColumn("Registered", "regis_time", 20),
        ReportColumn("Check-in", "check_in_time", 20),
        ReportColumn("Check-out", "check_out_time", 20),
        ReportColumn("Status", "registration_status", 18),
    ),
)


# ---------------------------------------------------------------------------
# Timestamps (sign-in and page-event log)
# ---------------------------------------------------------------------------


def _calendar_day(field_spec: FieldSpec) -> Callable[[Any], Any]:
    def _derive(entity: Any) -> Any:
        parsed = parse_date(field_spec.read(entity))
        return parsed.strftime("%Y-%m-%d") if parsed else None

    return _derive


_TIMESTAMP_TIME = FieldSpec("regis_time", DATE, ("Timestamp_RegisTime", "regisTime"))

TIMESTAMP = EntityKind(
    name="timestamp",
    label="Timestamps",
    id_field="id",
    fields=_fields(
        FieldSpec("id", NUMBER, ("Timestamp_ID",)),
        FieldSpec("name", TEXT, ("Timestamp_Name",)),
        FieldSpec("email", TEXT, ("Users_Email",)),
        FieldSpec("ip_address", TEXT, ("Timestamp_IP_Address", "ipAddress")),
        FieldSpec("user_type", TEXT, ("Users_Type", "userType")),
        FieldSpec("event_type", TEXT, ("TimestampType_Name", "eventType")),
        _TIMESTAMP_TIME,
        FieldSpec("day", TEXT, derive=_calendar_day(_TIMESTAMP_TIME)),
    ),
    search_fields=("name", "email", "ip_address", "user_type", "event_type"),
    filter_fields=("user_type", "event_type", "day"),
    start_field="regis_time",
    display_field="name",
    columns=(
        ReportColumn("Description", "name", 45),
        ReportColumn("Email", "email", 30),
        ReportColumn("User type", "user_type", 12),
        ReportColumn("Event type", "event_type", 25),
        ReportColumn("IP address", "ip_address", 18),
        ReportColumn("Time", "regis_time", 20),
    ),
)


ENTITY_KINDS: dict[str, EntityKind] = {
    kind.name: kind
    for kind in (
        ACTIVITY,
        ACTIVITY_PARTICIPANT,
        DEPARTMENT,
        STUDENT,
        TEACHER,
        STAFF,
        AUDIT_EVENT,
        TIMESTAMP,
    )
}


def get_kind(name: str) -> Optional[EntityKind]:
    return ENTITY_KINDS.get((name or "").strip().lower())
