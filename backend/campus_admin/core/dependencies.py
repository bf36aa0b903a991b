from typing import Optional

from fastapi import Header, HTTPException

from campus_admin.core.auth import CurrentUser
from campus_admin.core.config import get_settings
from campus_admin.core.permissions import EntityPredicate, same_value_scope
from campus_admin.services.audit import HttpAuditSink
from campus_admin.services.entity_kinds import EntityKind, get_kind
from campus_admin.services.upstream_client import UpstreamClient

# Kinds a department-bound teacher may only see within their own department.
DEPARTMENT_SCOPED_KINDS = {"student"}


def _forward_headers(authorization: Optional[str]) -> dict[str, str]:
    if not authorization:
        return {}
    return {"Authorization": authorization}


def get_upstream_client(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> UpstreamClient:
    return UpstreamClient(headers=_forward_headers(authorization))


def get_audit_sink(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[HttpAuditSink]:
    settings = get_settings()
    if not settings.audit_enabled:
        return None
    return HttpAuditSink(settings.upstream_base_url, headers=_forward_headers(authorization))


def resolve_kind(kind: str) -> EntityKind:
    entity_kind = get_kind(kind)
    if entity_kind is None:
        raise HTTPException(404, "Unknown record type")
    return entity_kind


def record_scope(user: CurrentUser, kind: EntityKind) -> Optional[EntityPredicate]:
    if user.role != "teacher" or not user.department:
        return None
    if kind.name not in DEPARTMENT_SCOPED_KINDS:
        return None
    field_spec = kind.field("department")
    return same_value_scope((field_spec.name, *field_spec.aliases), user.department)
