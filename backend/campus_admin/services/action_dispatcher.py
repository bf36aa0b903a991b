"""Action Dispatcher: permission-gated execution of one user action.

    Idle -> Validating -> Denied
                       -> (Confirming, destructive only) -> Cancelled
                       -> Executing -> Succeeded | Failed -> Idle

``dispatch`` always returns an ``ActionResult``; nothing raised by a
collaborator escapes it. Nothing has side effects before Executing except the
confirmation prompt itself.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from campus_admin.core.config import get_settings
from campus_admin.core.errors import (
    ActionPermissionError,
    ActionValidationError,
    ConsoleError,
    ErrorKind,
    classify_error,
)
from campus_admin.core.permissions import (
    CAN_ADD,
    CAN_DELETE,
    CAN_EDIT,
    CAN_EXPORT,
    CAN_TOGGLE_STATUS,
    CAN_VIEW,
    EntityPredicate,
    can_perform,
    can_perform_on_entity,
    denial_reason,
    scoped,
)
from campus_admin.services.audit import AuditEventType, AuditRecord, SourceTable
from campus_admin.services.entity_kinds import EntityKind

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    TOGGLE_STATUS = "toggleStatus"
    EXPORT = "export"
    ADD = "add"


DESTRUCTIVE_ACTIONS = frozenset({ActionKind.DELETE, ActionKind.TOGGLE_STATUS})

# Actions that address one existing record and therefore need a target id.
TARGETED_ACTIONS = frozenset({ActionKind.VIEW, ActionKind.EDIT, ActionKind.DELETE, ActionKind.TOGGLE_STATUS})

DEFAULT_CAPABILITY = {
    ActionKind.VIEW: CAN_VIEW,
    ActionKind.EDIT: CAN_EDIT,
    ActionKind.DELETE: CAN_DELETE,
    ActionKind.TOGGLE_STATUS: CAN_TOGGLE_STATUS,
    ActionKind.EXPORT: CAN_EXPORT,
    ActionKind.ADD: CAN_ADD,
}


class DispatchState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    DENIED = "denied"
    CONFIRMING = "confirming"
    CANCELLED = "cancelled"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _kind_value(kind: Any) -> str:
    return str(getattr(kind, "value", kind))


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ActionRequest:
    kind: ActionKind
    required_capability: str
    target_id: Any = None
    payload: Optional[dict[str, Any]] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ActionKind):
            try:
                object.__setattr__(self, "kind", ActionKind(self.kind))
            except ValueError:
                pass

    @classmethod
    def for_kind(
        cls,
        action: ActionKind | str,
        entity_kind: Optional[str] = None,
        *,
        target_id: Any = None,
        payload: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> "ActionRequest":
        """Request with the default capability for the action, scoped to a kind."""
        action = ActionKind(action)
        return cls(
            kind=action,
            required_capability=scoped(DEFAULT_CAPABILITY[action], entity_kind),
            target_id=target_id,
            payload=payload,
            description=description,
        )


@dataclass(frozen=True)
class ActionResult:
    status: ResultStatus
    request: ActionRequest
    value: Any = None
    error: Optional[ConsoleError] = None
    audited: bool = False
    trace: tuple[DispatchState, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCEEDED

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "action": _kind_value(self.request.kind),
            "target_id": self.request.target_id,
            "error": self.error.to_dict() if self.error is not None else None,
            "audited": self.audited,
        }


class AuditSink(Protocol):
    async def record(self, record: AuditRecord) -> Any: ...


Confirm = Callable[[str], Awaitable[bool]]
Execute = Callable[[ActionRequest], Awaitable[Any]]
Refresh = Callable[[ActionRequest, Any], Awaitable[None]]


@dataclass
class DispatchContext:
    capabilities: Any
    execute: Execute
    confirm: Optional[Confirm] = None
    audit_sink: Optional[AuditSink] = None
    refresh: Optional[Refresh] = None
    actor: Optional[str] = None
    entity_kind: Optional[EntityKind] = None
    entity: Any = None
    entity_predicate: Optional[EntityPredicate] = None
    confirm_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit mapping
# ---------------------------------------------------------------------------

_PEOPLE_UPDATE_TYPES = {
    "student": AuditEventType.STUDENT_DATA_UPDATE,
    "teacher": AuditEventType.TEACHER_DATA_UPDATE,
    "staff": AuditEventType.STAFF_DATA_UPDATE,
}


def audit_event_for(action: ActionKind, entity_kind: EntityKind) -> Optional[tuple[AuditEventType, SourceTable]]:
    """Event type and source table logged for an action, or None if not audited."""
    if entity_kind.source_table is None:
        return None
    table = SourceTable(entity_kind.source_table)

    if entity_kind.name == "activity":
        mapping = {
            ActionKind.ADD: AuditEventType.ACTIVITY_CREATE,
            ActionKind.EDIT: AuditEventType.ACTIVITY_UPDATE,
            ActionKind.DELETE: AuditEventType.ACTIVITY_DELETE,
            ActionKind.TOGGLE_STATUS: AuditEventType.ACTIVITY_STATUS_CHANGE,
        }
        return mapping.get(action, AuditEventType.SYSTEM_ACTION), table

    if action == ActionKind.TOGGLE_STATUS:
        return AuditEventType.USERS_STATUS_CHANGE, SourceTable.USERS
    if action == ActionKind.EDIT:
        return _PEOPLE_UPDATE_TYPES.get(entity_kind.name, AuditEventType.SYSTEM_ACTION), table
    return AuditEventType.SYSTEM_ACTION, table


def parse_record_id(raw: str) -> Optional[int]:
    """ASCII decimal string -> int, or None. ``"²"`` passes isdigit() but is not an id."""
    raw = raw.strip()
    if not raw.isascii() or not raw.isdecimal():
        return None
    return int(raw)


def _audit_entity_id(value: Any) -> Any:
    if isinstance(value, str):
        parsed = parse_record_id(value)
        if parsed is not None:
            return parsed
    return value


def _target_label(request: ActionRequest, entity_kind: Optional[EntityKind], entity: Any) -> str:
    noun = entity_kind.name if entity_kind is not None else "record"
    name = entity_kind.display_name(entity) if entity_kind is not None and entity is not None else ""
    label = f"{noun} {request.target_id}" if request.target_id is not None else noun
    if name:
        label = f"{label} ({name})"
    return label


def _default_description(request: ActionRequest, entity_kind: Optional[EntityKind], entity: Any) -> str:
    return f"{request.kind.value}: {_target_label(request, entity_kind, entity)}"


def build_audit_record(
    request: ActionRequest,
    context: DispatchContext,
    value: Any = None,
) -> Optional[AuditRecord]:
    kind = context.entity_kind
    if kind is None:
        return None
    event = audit_event_for(request.kind, kind)
    if event is None:
        return None
    target = request.target_id
    if target is None and value is not None:
        target = kind.entity_id(value)
    if target is None:
        return None
    event_type, table = event
    return AuditRecord(
        actor=context.actor,
        description=request.description or _default_description(request, kind, context.entity),
        entity_kind=kind.name,
        entity_id=_audit_entity_id(target),
        event_type=event_type,
        source_table=table,
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def validate_request(request: ActionRequest) -> None:
    settings = get_settings()
    if not isinstance(request.kind, ActionKind):
        raise ActionValidationError("Unknown action", field="kind")
    if not request.required_capability:
        raise ActionValidationError("Action has no required capability", field="required_capability")

    if request.kind in TARGETED_ACTIONS:
        raw = request.target_id
        if raw is None or isinstance(raw, bool):
            raise ActionValidationError("A record id is required", field="target_id")
        if isinstance(raw, str):
            raw = parse_record_id(raw)
            if raw is None:
                raise ActionValidationError("Invalid record id", field="target_id")
        if not isinstance(raw, int):
            raise ActionValidationError("Invalid record id", field="target_id")
        if raw <= 0 or raw > settings.max_entity_id:
            raise ActionValidationError("Record id is out of range", field="target_id")

    if request.kind in (ActionKind.EDIT, ActionKind.ADD):
        if not isinstance(request.payload, dict) or not request.payload:
            raise ActionValidationError("No changes were supplied", field="payload")


def _check_permission(request: ActionRequest, context: DispatchContext) -> None:
    capability = request.required_capability
    if context.entity_predicate is not None:
        allowed = can_perform_on_entity(
            context.capabilities, capability, context.entity, context.entity_predicate
        )
    else:
        allowed = can_perform(context.capabilities, capability)
    if not allowed:
        raise ActionPermissionError(denial_reason(capability), capability=capability)


def _confirm_message(request: ActionRequest, context: DispatchContext) -> str:
    if context.confirm_message:
        return context.confirm_message
    label = _target_label(request, context.entity_kind, context.entity)
    if request.kind == ActionKind.DELETE:
        return f"Delete {label}?"
    return f"Change the status of {label}?"


def _log_terminal(request: ActionRequest, result: ActionResult) -> None:
    level = logging.INFO if result.ok else logging.WARNING
    logger.log(
        level,
        "action_dispatch kind=%s status=%s target=%s error=%s",
        _kind_value(request.kind),
        result.status.value,
        request.target_id,
        result.error_kind.value if result.error_kind else None,
    )


async def dispatch(request: ActionRequest, context: DispatchContext) -> ActionResult:
    trace = [DispatchState.IDLE, DispatchState.VALIDATING]

    def _finish(status: ResultStatus, terminal: DispatchState, **kwargs: Any) -> ActionResult:
        trace.extend([terminal, DispatchState.IDLE])
        result = ActionResult(status=status, request=request, trace=tuple(trace), **kwargs)
        _log_terminal(request, result)
        return result

    try:
        validate_request(request)
    except ActionValidationError as exc:
        return _finish(ResultStatus.FAILED, DispatchState.FAILED, error=exc)

    try:
        _check_permission(request, context)
    except ActionPermissionError as exc:
        return _finish(ResultStatus.DENIED, DispatchState.DENIED, error=exc)

    if request.kind in DESTRUCTIVE_ACTIONS:
        trace.append(DispatchState.CONFIRMING)
        if context.confirm is None:
            return _finish(ResultStatus.CANCELLED, DispatchState.CANCELLED)
        try:
            confirmed = await context.confirm(_confirm_message(request, context))
        except Exception:
            logger.exception("Confirmation prompt failed for action=%s", request.kind.value)
            confirmed = False
        if confirmed is not True:
            return _finish(ResultStatus.CANCELLED, DispatchState.CANCELLED)

    trace.append(DispatchState.EXECUTING)
    try:
        value = await context.execute(request)
    except Exception as exc:
        error = classify_error(exc)
        if error.kind == ErrorKind.SERVER and getattr(error, "status_code", 500) >= 500:
            logger.exception("Action execution failed kind=%s", request.kind.value)
        return _finish(ResultStatus.FAILED, DispatchState.FAILED, error=error)

    audited = False
    if context.audit_sink is not None:
        record = build_audit_record(request, context, value)
        if record is not None:
            try:
                outcome = await context.audit_sink.record(record)
                audited = not isinstance(outcome, dict) or bool(outcome.get("success", True))
            except Exception:
                logger.exception("Audit sink failed for action=%s", request.kind.value)

    if context.refresh is not None:
        try:
            await context.refresh(request, value)
        except Exception:
            logger.exception("Collection refresh failed after action=%s", request.kind.value)

    return _finish(ResultStatus.SUCCEEDED, DispatchState.SUCCEEDED, value=value, audited=audited)
