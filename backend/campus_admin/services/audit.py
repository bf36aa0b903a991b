"""Data-edit audit records and the HTTP sink that stores them upstream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Optional

import httpx

from campus_admin.core.config import get_settings

logger = logging.getLogger(__name__)

AUDIT_INSERT_PATH = "/api/dataedit/website/insert"


class AuditEventType(IntEnum):
    USERS_STATUS_CHANGE = 1
    STUDENT_DATA_UPDATE = 2
    TEACHER_DATA_UPDATE = 3
    STAFF_DATA_UPDATE = 4
    PROFILE_UPDATE = 5
    SYSTEM_ACTION = 6
    ACTIVITY_CREATE = 7
    ACTIVITY_UPDATE = 8
    ACTIVITY_DELETE = 9
    ACTIVITY_STATUS_CHANGE = 10
    ACTIVITY_DEPARTMENT_ADD = 11
    ACTIVITY_DEPARTMENT_REMOVE = 12
    ACTIVITY_TEMPLATE_CHANGE = 13


class SourceTable(str, Enum):
    STUDENT = "Student"
    TEACHER = "Teacher"
    STAFF = "Staff"
    USERS = "Users"
    ACTIVITY = "Activity"


@dataclass(frozen=True)
class AuditRecord:
    actor: Optional[str]
    description: str
    entity_kind: str
    entity_id: Any
    event_type: AuditEventType
    source_table: SourceTable

    def validate(self) -> Optional[str]:
        if self.entity_id is None or self.event_type is None or self.source_table is None:
            return "Missing required parameters"
        if isinstance(self.entity_id, bool) or not isinstance(self.entity_id, int):
            return "Invalid parameter types"
        if not isinstance(self.event_type, int):
            return "Invalid parameter types"
        table = getattr(self.source_table, "value", self.source_table)
        if table not in {item.value for item in SourceTable}:
            return "Invalid source table"
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "DataEdit_ThisId": self.entity_id,
            "DataEdit_Name": self.description or None,
            "DataEdit_SourceTable": SourceTable(self.source_table).value,
            "DataEditType_ID": int(self.event_type),
        }


class HttpAuditSink:
    """Posts audit records to the upstream data-edit log.

    ``record`` never raises for transport or upstream failures; it reports
    them in the returned ``{"success": False, "error": ...}`` mapping.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout if timeout is not None else settings.audit_timeout_seconds
        self.headers = {"Content-Type": "application/json", "X-Requested-With": "XMLHttpRequest"}
        if headers:
            self.headers.update(headers)
        self._transport = transport

    async def record(self, record: AuditRecord) -> dict[str, Any]:
        problem = record.validate()
        if problem:
            logger.warning("Audit record rejected kind=%s reason=%s", record.entity_kind, problem)
            return {"success": False, "error": problem}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}{AUDIT_INSERT_PATH}",
                    headers=self.headers,
                    json=record.to_payload(),
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            message = "Failed to log data edit"
            if exc.response.status_code == 403:
                message = "No permission to log data edits"
            logger.warning("Audit sink rejected record status=%s", exc.response.status_code)
            return {"success": False, "error": message}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Audit sink unavailable: %s", type(exc).__name__)
            return {"success": False, "error": "Failed to log data edit"}

        if isinstance(data, dict) and data.get("status"):
            return {"success": True, "message": "Data edit logged successfully"}
        error = data.get("message") if isinstance(data, dict) else None
        return {"success": False, "error": error or "Failed to log data edit"}
