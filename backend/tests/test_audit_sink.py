"""
Tests for the HTTP audit sink (data-edit log).
"""

import json

import httpx
import pytest

from campus_admin.services.audit import (
    AUDIT_INSERT_PATH,
    AuditEventType,
    AuditRecord,
    HttpAuditSink,
    SourceTable,
)
from tests.conftest import UPSTREAM_BASE, RecordingTransport


def _record(**overrides) -> AuditRecord:
    values = {
        "actor": "admin@example.com",
        "description": "edit: student 8 (Ada Lovelace)",
        "entity_kind": "student",
        "entity_id": 8,
        "event_type": AuditEventType.STUDENT_DATA_UPDATE,
        "source_table": SourceTable.STUDENT,
    }
    values.update(overrides)
    return AuditRecord(**values)


def _sink(handler) -> tuple[HttpAuditSink, RecordingTransport]:
    transport = RecordingTransport(handler)
    sink = HttpAuditSink(UPSTREAM_BASE, headers={"Authorization": "Bearer t"}, transport=transport)
    return sink, transport


@pytest.mark.asyncio
async def test_record_posts_payload():
    sink, transport = _sink(lambda request: httpx.Response(200, json={"status": True}))

    outcome = await sink.record(_record())

    assert outcome == {"success": True, "message": "Data edit logged successfully"}
    (request,) = transport.requests
    assert request.method == "POST"
    assert request.url.path == AUDIT_INSERT_PATH
    assert request.headers["Authorization"] == "Bearer t"
    assert json.loads(request.content) == {
        "DataEdit_ThisId": 8,
        "DataEdit_Name": "edit: student 8 (Ada Lovelace)",
        "DataEdit_SourceTable": "Student",
        "DataEditType_ID": 2,
    }


@pytest.mark.asyncio
async def test_invalid_record_is_rejected_without_request():
    sink, transport = _sink(lambda request: httpx.Response(200, json={"status": True}))

    missing = await sink.record(_record(entity_id=None))
    wrong_type = await sink.record(_record(entity_id="8"))
    bad_table = await sink.record(_record(source_table="Department"))

    assert missing == {"success": False, "error": "Missing required parameters"}
    assert wrong_type == {"success": False, "error": "Invalid parameter types"}
    assert bad_table == {"success": False, "error": "Invalid source table"}
    assert transport.requests == []


@pytest.mark.asyncio
async def test_forbidden_has_its_own_message():
    sink, _ = _sink(lambda request: httpx.Response(403, json={"message": "nope"}))

    outcome = await sink.record(_record())

    assert outcome == {"success": False, "error": "No permission to log data edits"}


@pytest.mark.asyncio
async def test_server_error_reports_failure():
    sink, _ = _sink(lambda request: httpx.Response(500))

    assert await sink.record(_record()) == {"success": False, "error": "Failed to log data edit"}


@pytest.mark.asyncio
async def test_transport_error_reports_failure():
    def _raise(request):
        raise httpx.ConnectError("down", request=request)

    sink, _ = _sink(_raise)

    assert await sink.record(_record()) == {"success": False, "error": "Failed to log data edit"}


@pytest.mark.asyncio
async def test_falsy_status_uses_upstream_message():
    sink, _ = _sink(lambda request: httpx.Response(200, json={"status": False, "message": "Duplicate"}))

    assert await sink.record(_record()) == {"success": False, "error": "Duplicate"}
