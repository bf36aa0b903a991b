"""Permission-gated actions on one entity kind.

Every route builds an ActionRequest and hands it to the dispatcher; the
dispatcher's result is mapped onto an HTTP status. Destructive routes take a
``confirm`` flag that answers the dispatcher's confirmation prompt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, Query, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from campus_admin.api.v1.collections import (
    build_filter_state,
    load_entities,
    resolve_parent_id,
    scoped_entities,
)
from campus_admin.core.auth import CurrentUser, get_capabilities, get_current_user
from campus_admin.core.dependencies import get_audit_sink, get_upstream_client, record_scope, resolve_kind
from campus_admin.core.errors import ActionPermissionError, ActionValidationError, http_status_for
from campus_admin.core.permissions import CapabilitySet, denial_reason
from campus_admin.schemas.console import ActionResultOut, ToggleStatusIn
from campus_admin.services.action_dispatcher import (
    ActionKind,
    ActionRequest,
    ActionResult,
    DispatchContext,
    ResultStatus,
    dispatch,
)
from campus_admin.services.audit import HttpAuditSink
from campus_admin.services.collection_store import CollectionStore
from campus_admin.services.entity_kinds import EntityKind, to_bool
from campus_admin.services.query_engine import QueryEngine
from campus_admin.services.report_builder import build, report_spec_for
from campus_admin.services.upstream_client import UpstreamClient
from campus_admin.services.workbook_writer import XLSX_MEDIA_TYPE, build_filename, write_xlsx

router = APIRouter()
logger = logging.getLogger(__name__)

CANCELLED_STATUS = 409


@dataclass(frozen=True)
class ExportFile:
    content: bytes
    filename: str
    rows: int


def _confirm_flag(flag: bool):
    async def _confirm(_message: str) -> bool:
        return flag

    return _confirm


def _actor(user: CurrentUser) -> str:
    return user.email or user.id


def _result_response(result: ActionResult, *, success_status: int = 200) -> JSONResponse:
    error = result.error.to_dict() if result.error is not None else None
    body = ActionResultOut(
        status=result.status.value,
        action=result.request.kind.value,
        target_id=result.request.target_id,
        value=jsonable_encoder(result.value),
        error=error,
        audited=result.audited,
    )
    if result.ok:
        status_code = success_status
    elif result.status == ResultStatus.CANCELLED:
        status_code = CANCELLED_STATUS
    else:
        status_code = http_status_for(result.error)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _scope_check(user: CurrentUser, kind: EntityKind, capability: str):
    """Record-level check applied once the record has been fetched."""
    scope = record_scope(user, kind)

    def _check(entity: Any) -> Any:
        if scope is not None and not scope(entity):
            raise ActionPermissionError(denial_reason(capability), capability=capability)
        return entity

    return _check


def _context(
    *,
    capabilities: CapabilitySet,
    user: CurrentUser,
    kind: EntityKind,
    execute,
    audit_sink: Optional[HttpAuditSink],
    confirm=None,
    refresh=None,
) -> DispatchContext:
    return DispatchContext(
        capabilities=capabilities,
        execute=execute,
        confirm=confirm,
        audit_sink=audit_sink,
        refresh=refresh,
        actor=_actor(user),
        entity_kind=kind,
    )


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@router.get("/{kind}/export")
async def export_entities(
    kind: str,
    search: str = Query("", max_length=256),
    filters: Optional[list[str]] = Query(None, alias="filter"),
    date_bucket: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, max_length=64),
    direction: Optional[str] = Query(None),
    include_summary: bool = Query(True),
    include_stats: bool = Query(True),
    include_distribution: bool = Query(True),
    parent: Optional[str] = Query(None, max_length=20),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.EXPORT, entity_kind.name)

    async def _execute(_request: ActionRequest) -> ExportFile:
        parent_id = resolve_parent_id(entity_kind, parent)
        state = build_filter_state(
            entity_kind,
            search=search,
            filters=filters or [],
            date_bucket=date_bucket,
            sort=sort,
            direction=direction,
        )
        spec = report_spec_for(
            entity_kind.name,
            include_summary=include_summary,
            include_stats=include_stats,
            include_distribution=include_distribution,
        )
        entities = await load_entities(entity_kind, upstream, current_user, parent_id=parent_id)
        rows = QueryEngine(entity_kind).filtered(entities, state.criteria)
        workbook = build(rows, spec)
        content = write_xlsx(workbook)
        filename = build_filename(spec.label, state.descriptor(), datetime.now(timezone.utc))
        return ExportFile(content=content, filename=filename, rows=len(rows))

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
        ),
    )
    if not result.ok:
        return _result_response(result)

    export: ExportFile = result.value
    ascii_name = export.filename.encode("ascii", "ignore").decode("ascii") or "report.xlsx"
    disposition = f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(export.filename)}"
    return Response(
        content=export.content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": disposition},
    )


# ---------------------------------------------------------------------------
# Add
# ---------------------------------------------------------------------------


@router.post("/{kind}")
async def add_entity(
    kind: str,
    payload: dict[str, Any] = Body(...),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.ADD, entity_kind.name, payload=payload)

    async def _execute(req: ActionRequest) -> Any:
        return await upstream.add(entity_kind.name, req.payload)

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
        ),
    )
    return _result_response(result, success_status=201)


# ---------------------------------------------------------------------------
# Single record
# ---------------------------------------------------------------------------


@router.get("/{kind}/{entity_id}")
async def view_entity(
    kind: str,
    entity_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.VIEW, entity_kind.name, target_id=entity_id)
    check = _scope_check(current_user, entity_kind, request.required_capability)

    async def _execute(req: ActionRequest) -> Any:
        return check(await upstream.fetch_one(entity_kind.name, req.target_id))

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
        ),
    )
    return _result_response(result)


@router.patch("/{kind}/{entity_id}")
async def edit_entity(
    kind: str,
    entity_id: str,
    payload: dict[str, Any] = Body(...),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.EDIT, entity_kind.name, target_id=entity_id, payload=payload)
    refreshed: dict[str, Any] = {}

    async def _execute(req: ActionRequest) -> Any:
        return await upstream.mutate(entity_kind.name, req.target_id, req.payload)

    async def _refresh(req: ActionRequest, _value: Any) -> None:
        refreshed["entity"] = await upstream.fetch_one(entity_kind.name, req.target_id)

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
            refresh=_refresh,
        ),
    )
    if result.ok and "entity" in refreshed:
        result = replace(result, value=refreshed["entity"])
    return _result_response(result)


@router.delete("/{kind}/{entity_id}")
async def delete_entity(
    kind: str,
    entity_id: str,
    confirm: bool = Query(False),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.DELETE, entity_kind.name, target_id=entity_id)
    store = CollectionStore(entity_kind)

    async def _execute(req: ActionRequest) -> Any:
        return await upstream.delete(entity_kind.name, req.target_id)

    async def _refresh(req: ActionRequest, _value: Any) -> None:
        await store.load(lambda: upstream.fetch_collection(entity_kind.name))
        # The listing may still carry the record if the upstream read lags the write.
        store.remove(req.target_id)

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
            confirm=_confirm_flag(confirm),
            refresh=_refresh,
        ),
    )
    if result.ok and store.error is None:
        result = replace(
            result,
            value={
                "id": entity_id,
                "remaining_count": len(scoped_entities(store.entities, entity_kind, current_user)),
            },
        )
    return _result_response(result)


@router.post("/{kind}/{entity_id}/toggle-status")
async def toggle_entity_status(
    kind: str,
    entity_id: str,
    confirm: bool = Query(False),
    body: Optional[ToggleStatusIn] = Body(None),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
    audit_sink: Optional[HttpAuditSink] = Depends(get_audit_sink),
):
    entity_kind = resolve_kind(kind)
    request = ActionRequest.for_kind(ActionKind.TOGGLE_STATUS, entity_kind.name, target_id=entity_id)
    requested = body.is_active if body is not None else None
    store = CollectionStore(entity_kind)

    async def _execute(req: ActionRequest) -> Any:
        if entity_kind.status_field is None:
            raise ActionValidationError("This record has no status to change", field="kind")
        target = requested
        if target is None:
            current = await upstream.fetch_one(entity_kind.name, req.target_id)
            target = not bool(to_bool(entity_kind.value(current, entity_kind.status_field)))
        await upstream.toggle_status(entity_kind.name, req.target_id, target)
        return {entity_kind.status_field: target}

    async def _refresh(req: ActionRequest, value: Any) -> None:
        await store.load(lambda: upstream.fetch_collection(entity_kind.name))
        status_spec = entity_kind.field(entity_kind.status_field)
        loaded = store.find(req.target_id)
        if loaded is not None:
            store.patch(req.target_id, {status_spec.key_for(loaded): value[entity_kind.status_field]})

    result = await dispatch(
        request,
        _context(
            capabilities=capabilities,
            user=current_user,
            kind=entity_kind,
            execute=_execute,
            audit_sink=audit_sink,
            confirm=_confirm_flag(confirm),
            refresh=_refresh,
        ),
    )
    if result.ok:
        refreshed = store.find(entity_id) if store.error is None else None
        if refreshed is not None:
            result = replace(result, value=refreshed)
    return _result_response(result)
