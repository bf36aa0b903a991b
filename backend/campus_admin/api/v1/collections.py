"""Query views over one entity kind: list, dropdown options, capabilities."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from campus_admin.core.auth import CurrentUser, get_capabilities, get_current_user
from campus_admin.core.config import get_settings
from campus_admin.core.dependencies import get_upstream_client, record_scope, resolve_kind
from campus_admin.core.errors import ActionPermissionError, ActionValidationError
from campus_admin.core.permissions import CAN_VIEW, CapabilitySet, can_perform, denial_reason, scoped
from campus_admin.schemas.console import CapabilitiesOut, OptionsOut, QueryViewOut
from campus_admin.services.action_dispatcher import parse_record_id
from campus_admin.services.collection_store import CollectionStore
from campus_admin.services.entity_kinds import EntityKind
from campus_admin.services.filter_state import FilterState
from campus_admin.services.query_engine import QueryEngine, unique_values
from campus_admin.services.upstream_client import UpstreamClient

router = APIRouter()
logger = logging.getLogger(__name__)


def build_filter_state(
    kind: EntityKind,
    *,
    search: str = "",
    filters: Optional[list[str]] = None,
    date_bucket: Optional[str] = None,
    sort: Optional[str] = None,
    direction: Optional[str] = None,
    page: int = 1,
    size: Optional[int] = None,
) -> FilterState:
    """Translate query parameters into a FilterState, rejecting unknown fields."""
    settings = get_settings()
    page_size = min(size or settings.default_page_size, settings.max_page_size)
    state = FilterState(page_size=page_size)

    state.set_search_text(search or "")
    for raw in filters or []:
        field_name, sep, value = raw.partition(":")
        field_name = field_name.strip()
        if not sep or not field_name:
            raise ActionValidationError("Filters must look like field:value", field="filter")
        if field_name not in kind.filter_fields:
            raise ActionValidationError(f"Cannot filter on {field_name}", field="filter")
        state.set_filter(field_name, value.strip())

    if date_bucket:
        if kind.start_field is None and date_bucket.strip().lower() not in ("", "none"):
            raise ActionValidationError("This record type has no date to filter on", field="date_bucket")
        try:
            state.set_date_bucket(date_bucket)
        except ValueError as exc:
            raise ActionValidationError(str(exc), field="date_bucket") from exc

    if sort:
        if sort not in kind.fields:
            raise ActionValidationError(f"Cannot sort on {sort}", field="sort")
        try:
            state.set_sort(sort, direction)
        except ValueError as exc:
            raise ActionValidationError(str(exc), field="direction") from exc

    state.set_page(page)
    return state


def resolve_parent_id(kind: EntityKind, parent: Optional[str]) -> Optional[int]:
    """Parent record id for kinds listed under another record, else None."""
    if kind.parent_kind is None:
        return None
    parsed = parse_record_id(parent) if isinstance(parent, str) else None
    if parsed is None or parsed <= 0:
        raise ActionValidationError(f"A valid {kind.parent_kind} id is required", field="parent")
    return parsed


async def load_store(
    kind: EntityKind,
    upstream: UpstreamClient,
    *,
    parent_id: Optional[int] = None,
) -> CollectionStore:
    store = CollectionStore(kind)
    await store.load(lambda: upstream.fetch_collection(kind.name, parent_id=parent_id))
    return store


def scoped_entities(entities: Sequence[Any], kind: EntityKind, user: CurrentUser) -> tuple[Any, ...]:
    scope = record_scope(user, kind)
    if scope is None:
        return tuple(entities)
    return tuple(entity for entity in entities if scope(entity))


async def load_entities(
    kind: EntityKind,
    upstream: UpstreamClient,
    user: CurrentUser,
    *,
    parent_id: Optional[int] = None,
) -> tuple[Any, ...]:
    store = await load_store(kind, upstream, parent_id=parent_id)
    return scoped_entities(store.entities, kind, user)


def require_capability(capabilities: CapabilitySet, capability: str) -> None:
    if not can_perform(capabilities, capability):
        raise ActionPermissionError(denial_reason(capability), capability=capability)


@router.get("/me/capabilities", response_model=CapabilitiesOut)
async def my_capabilities(capabilities: CapabilitySet = Depends(get_capabilities)):
    return CapabilitiesOut(
        role=capabilities.role,
        sub_roles=list(capabilities.sub_roles),
        capabilities=dict(capabilities),
        granted=capabilities.granted(),
    )


@router.get("/{kind}", response_model=QueryViewOut)
async def list_entities(
    kind: str,
    search: str = Query("", max_length=256),
    filters: Optional[list[str]] = Query(None, alias="filter"),
    date_bucket: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, max_length=64),
    direction: Optional[str] = Query(None),
    page: int = Query(1),
    size: Optional[int] = Query(None, ge=1),
    parent: Optional[str] = Query(None, max_length=20),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
):
    entity_kind = resolve_kind(kind)
    require_capability(capabilities, scoped(CAN_VIEW, entity_kind.name))
    parent_id = resolve_parent_id(entity_kind, parent)

    filters = filters or []
    state = build_filter_state(
        entity_kind,
        search=search,
        filters=filters,
        date_bucket=date_bucket,
        sort=sort,
        direction=direction,
        page=page,
        size=size,
    )
    # Search text is user data: log its length only.
    logger.info(
        "list_entities kind=%s search_len=%d filters=%d page=%d",
        entity_kind.name,
        len(search or ""),
        len(filters),
        page,
    )

    entities = await load_entities(entity_kind, upstream, current_user, parent_id=parent_id)
    view = QueryEngine(entity_kind).view_state(entities, state)
    return QueryViewOut(
        items=[item for item in view.items if isinstance(item, dict)],
        total_count=view.total_count,
        total_pages=view.total_pages,
        current_page=view.current_page,
        page_size=state.page.size,
        has_active_filters=state.has_active_filters,
        filter_summary=state.filter_summary(),
    )


@router.get("/{kind}/options/{field_name}", response_model=OptionsOut)
async def filter_options(
    kind: str,
    field_name: str,
    parent: Optional[str] = Query(None, max_length=20),
    current_user: CurrentUser = Depends(get_current_user),
    capabilities: CapabilitySet = Depends(get_capabilities),
    upstream: UpstreamClient = Depends(get_upstream_client),
):
    entity_kind = resolve_kind(kind)
    require_capability(capabilities, scoped(CAN_VIEW, entity_kind.name))
    if field_name not in entity_kind.filter_fields:
        raise HTTPException(404, "Unknown filter field")
    parent_id = resolve_parent_id(entity_kind, parent)

    entities = await load_entities(entity_kind, upstream, current_user, parent_id=parent_id)
    return OptionsOut(field=field_name, values=unique_values(entities, entity_kind, field_name))
