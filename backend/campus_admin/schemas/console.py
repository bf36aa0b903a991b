from typing import Any, Optional

from pydantic import BaseModel, Field


class QueryViewOut(BaseModel):
    items: list[dict[str, Any]]
    total_count: int
    total_pages: int
    current_page: int
    page_size: int
    has_active_filters: bool = False
    filter_summary: str = ""


class OptionsOut(BaseModel):
    field: str
    values: list[str]


class CapabilitiesOut(BaseModel):
    role: Optional[str] = None
    sub_roles: list[str] = Field(default_factory=list)
    capabilities: dict[str, bool]
    granted: list[str]


class ActionErrorOut(BaseModel):
    kind: str
    message: str
    field: Optional[str] = None
    capability: Optional[str] = None
    status_code: Optional[int] = None
    security: bool = False
    reauthenticate: bool = False
    retryable: bool = False


class ActionResultOut(BaseModel):
    status: str
    action: str
    target_id: Any = None
    value: Any = None
    error: Optional[ActionErrorOut] = None
    audited: bool = False


class ToggleStatusIn(BaseModel):
    is_active: Optional[bool] = None
