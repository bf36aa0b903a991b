"""
End-to-end tests for the console HTTP API against a fake upstream data server.

Covers:
  - List views: filtering, sorting, validation of query parameters
  - Role gating on list, options, actions and export
  - Teacher department scope on lists and single-record views
  - Destructive actions require confirm=true; audit is posted on success
  - Delete and toggle-status reload the collection; a failed reload keeps the result
  - Edit refreshes the record; toggle-status flips the current value
  - Participants are listed under a parent activity; timestamps are staff read-only
  - Non-ASCII digits in a record id are a validation error
  - Export returns an xlsx attachment; empty export is a 422
"""

import copy
import json
import unittest
from io import BytesIO

import httpx
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from campus_admin.core.auth import CurrentUser, get_current_user
from campus_admin.core.dependencies import get_audit_sink, get_upstream_client
from campus_admin.main import app
from campus_admin.services.audit import AUDIT_INSERT_PATH, HttpAuditSink
from campus_admin.services.upstream_client import UpstreamClient
from tests.conftest import UPSTREAM_BASE, RecordingTransport

STUDENTS = [
    {
        "id": 1,
        "studentCode": "S001",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "facultyName": "Science",
        "departmentName": "Physics",
        "academicYear": "2566",
        "isActive": True,
        "completedActivities": 12,
    },
    {
        "id": 2,
        "studentCode": "S002",
        "firstName": "Alan",
        "lastName": "Turing",
        "facultyName": "Science",
        "departmentName": "Math",
        "academicYear": "2566",
        "isActive": False,
        "completedActivities": 3,
    },
    {
        "id": 3,
        "studentCode": "S003",
        "firstName": "Grace",
        "lastName": "Hopper",
        "facultyName": "Engineering",
        "departmentName": "Physics",
        "academicYear": "2567",
        "isActive": True,
        "completedActivities": 0,
    },
]


PARTICIPANTS = [
    {"Users_ID": 11, "FirstName": "Ada", "LastName": "Lovelace", "isStudent": True, "Department_Name": "Physics",
     "Registration_CheckInTime": "2024-03-13 09:00:00"},
    {"Users_ID": 12, "FirstName": "Alan", "LastName": "Turing", "isStudent": True, "Department_Name": "Math"},
]


class FakeUpstream:
    """In-memory stand-in for the university data server."""

    def __init__(self):
        self.students = copy.deepcopy(STUDENTS)
        self.down = False
        self.lagging_deletes = False
        self.listing_fails = False

    def _find(self, entity_id):
        for student in self.students:
            if str(student["id"]) == str(entity_id):
                return student
        return None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("upstream down", request=request)

        path = request.url.path
        method = request.method
        if path == AUDIT_INSERT_PATH:
            return httpx.Response(200, json={"status": True})
        if path == "/api/admin/students" and method == "GET":
            if self.listing_fails:
                return httpx.Response(500, json={"message": "Listing unavailable"})
            return httpx.Response(200, json={"status": True, "data": self.students})
        if path == "/api/admin/activities/5/participants" and method == "GET":
            return httpx.Response(200, json={"status": True, "data": PARTICIPANTS})
        if path == "/api/admin/activities" and method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json={"status": True, "data": {"Activity_ID": 99, **body}})

        parts = path.rstrip("/").split("/")
        if path.startswith("/api/admin/students/"):
            student = self._find(parts[4])
            if student is None:
                return httpx.Response(404, json={"message": "Student not found"})
            if method == "GET":
                return httpx.Response(200, json={"status": True, "data": student})
            if method == "PUT":
                student.update(json.loads(request.content))
                return httpx.Response(200, json={"status": True, "data": student})
            if method == "PATCH" and path.endswith("/status"):
                student["isActive"] = json.loads(request.content)["isActive"]
                return httpx.Response(200, json={"status": True, "data": student})
            if method == "DELETE":
                if not self.lagging_deletes:
                    self.students.remove(student)
                return httpx.Response(200, json={"status": True, "message": "Deleted"})
        return httpx.Response(404, json={"message": "No route"})


class ConsoleApiTests(unittest.TestCase):
    def setUp(self):
        self.upstream = FakeUpstream()
        self.transport = RecordingTransport(self.upstream)
        self.current_user = CurrentUser(id="user-1", role="staff", email="admin@example.com")

        app.dependency_overrides[get_current_user] = lambda: self.current_user
        app.dependency_overrides[get_upstream_client] = lambda: UpstreamClient(
            UPSTREAM_BASE, transport=self.transport
        )
        app.dependency_overrides[get_audit_sink] = lambda: HttpAuditSink(UPSTREAM_BASE, transport=self.transport)

        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()

    def _as(self, role, **kwargs):
        self.current_user = CurrentUser(id="user-2", role=role, email=f"{role}@example.com", **kwargs)

    def _audit_payloads(self):
        return [json.loads(r.content) for r in self.transport.requests if r.url.path == AUDIT_INSERT_PATH]

    # ═══════════════════════════════════════════════════════════════
    # List views
    # ═══════════════════════════════════════════════════════════════

    def test_list_sorted_and_paginated(self):
        resp = self.client.get("/api/v1/student", params={"sort": "first_name", "direction": "desc", "size": 2})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["total_count"], 3)
        self.assertEqual(body["total_pages"], 2)
        self.assertEqual(body["page_size"], 2)
        self.assertEqual([s["firstName"] for s in body["items"]], ["Grace", "Alan"])
        self.assertFalse(body["has_active_filters"])

    def test_list_search_and_filter(self):
        resp = self.client.get("/api/v1/student", params={"search": "ada", "filter": "faculty:Science"})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual([s["id"] for s in body["items"]], [1])
        self.assertTrue(body["has_active_filters"])
        self.assertEqual(body["filter_summary"], 'Search: "ada", faculty: Science')

    def test_out_of_range_page_is_clamped(self):
        resp = self.client.get("/api/v1/student", params={"page": 99})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["current_page"], 1)

    def test_unknown_filter_field_is_rejected_before_fetch(self):
        resp = self.client.get("/api/v1/student", params={"filter": "password:x"})

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["kind"], "ValidationError")
        self.assertEqual(self.transport.requests, [])

    def test_date_bucket_on_kind_without_dates_is_rejected(self):
        resp = self.client.get("/api/v1/department", params={"date_bucket": "upcoming"})

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["field"], "date_bucket")

    def test_unknown_kind_is_404(self):
        resp = self.client.get("/api/v1/parking")

        self.assertEqual(resp.status_code, 404)

    def test_upstream_down_is_503(self):
        self.upstream.down = True

        resp = self.client.get("/api/v1/student")

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["error"]["kind"], "NetworkError")
        self.assertTrue(resp.json()["error"]["retryable"])

    def test_participants_need_a_parent_activity(self):
        resp = self.client.get("/api/v1/activity_participant")

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["field"], "parent")
        self.assertEqual(self.transport.requests, [])

    def test_participants_listed_under_their_activity(self):
        resp = self.client.get("/api/v1/activity_participant", params={"parent": "5"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([p["Users_ID"] for p in resp.json()["items"]], [11, 12])
        self.assertEqual(self.transport.paths("GET"), ["/api/admin/activities/5/participants"])

        pending = self.client.get(
            "/api/v1/activity_participant", params={"parent": "5", "filter": "attendance:pending"}
        )
        self.assertEqual([p["Users_ID"] for p in pending.json()["items"]], [12])

    def test_filter_options(self):
        resp = self.client.get("/api/v1/student/options/department")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"field": "department", "values": ["Math", "Physics"]})

        missing = self.client.get("/api/v1/student/options/password")
        self.assertEqual(missing.status_code, 404)

    # ═══════════════════════════════════════════════════════════════
    # Role gating and scope
    # ═══════════════════════════════════════════════════════════════

    def test_capabilities_for_teacher(self):
        self._as("teacher", sub_roles=("dean",))

        body = self.client.get("/api/v1/me/capabilities").json()

        self.assertEqual(body["role"], "teacher")
        self.assertEqual(body["sub_roles"], ["dean"])
        self.assertIn("can_view:teacher", body["granted"])
        self.assertFalse(body["capabilities"]["can_delete:student"])

    def test_teacher_cannot_list_staff(self):
        self._as("teacher")

        resp = self.client.get("/api/v1/staff")

        self.assertEqual(resp.status_code, 403)
        self.assertTrue(resp.json()["error"]["security"])
        self.assertEqual(self.transport.requests, [])

    def test_student_role_cannot_list_anything(self):
        self._as("student")

        self.assertEqual(self.client.get("/api/v1/activity").status_code, 403)

    def test_teacher_sees_only_own_department(self):
        self._as("teacher", department="Physics")

        body = self.client.get("/api/v1/student").json()

        self.assertEqual([s["id"] for s in body["items"]], [1, 3])

    def test_teacher_cannot_view_student_outside_department(self):
        self._as("teacher", department="Physics")

        resp = self.client.get("/api/v1/student/2")

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["status"], "failed")
        self.assertEqual(resp.json()["error"]["kind"], "PermissionError")

        ok = self.client.get("/api/v1/student/1")
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["value"]["firstName"], "Ada")

    def test_teacher_delete_is_denied_without_any_request(self):
        self._as("teacher")

        resp = self.client.delete("/api/v1/activity/42", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["status"], "denied")
        self.assertEqual(self.transport.requests, [])

    def test_teacher_cannot_list_timestamps(self):
        self._as("teacher")

        resp = self.client.get("/api/v1/timestamp")

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.transport.requests, [])

    def test_staff_cannot_delete_timestamps(self):
        resp = self.client.delete("/api/v1/timestamp/1", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["status"], "denied")
        self.assertEqual(self.transport.requests, [])

    def test_missing_token_is_401(self):
        app.dependency_overrides.pop(get_current_user)

        resp = self.client.get("/api/v1/student")

        self.assertEqual(resp.status_code, 401)

    # ═══════════════════════════════════════════════════════════════
    # Actions
    # ═══════════════════════════════════════════════════════════════

    def test_delete_without_confirmation_is_cancelled(self):
        resp = self.client.delete("/api/v1/student/1")

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["status"], "cancelled")
        self.assertEqual(self.transport.paths("DELETE"), [])
        self.assertEqual(len(self.upstream.students), 3)

    def test_confirmed_delete_is_executed_and_audited(self):
        resp = self.client.delete("/api/v1/student/1", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "succeeded")
        self.assertTrue(body["audited"])
        self.assertEqual(self.transport.paths("DELETE"), ["/api/admin/students/1"])
        self.assertEqual([s["id"] for s in self.upstream.students], [2, 3])
        self.assertEqual(body["value"], {"id": "1", "remaining_count": 2})
        self.assertEqual(self.transport.paths("GET"), ["/api/admin/students"])
        (audit,) = self._audit_payloads()
        self.assertEqual(audit["DataEdit_ThisId"], 1)
        self.assertEqual(audit["DataEdit_SourceTable"], "Student")

    def test_invalid_record_id_is_a_validation_error(self):
        resp = self.client.delete("/api/v1/student/abc", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["field"], "target_id")
        self.assertEqual(self.transport.requests, [])

    def test_superscript_digit_id_is_a_validation_error(self):
        resp = self.client.get("/api/v1/student/\u00b2")

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["field"], "target_id")
        self.assertEqual(self.transport.requests, [])

    def test_remaining_count_excludes_deleted_record_when_listing_lags(self):
        self.upstream.lagging_deletes = True

        resp = self.client.delete("/api/v1/student/1", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(self.upstream.students), 3)
        self.assertEqual(resp.json()["value"], {"id": "1", "remaining_count": 2})

    def test_delete_succeeds_when_refresh_fails(self):
        self.upstream.listing_fails = True

        resp = self.client.delete("/api/v1/student/1", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "succeeded")
        self.assertNotIn("remaining_count", body["value"] or {})
        self.assertEqual([s["id"] for s in self.upstream.students], [2, 3])

    def test_edit_returns_refreshed_record(self):
        resp = self.client.patch("/api/v1/student/2", json={"firstName": "Alan M."})

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["value"]["firstName"], "Alan M.")
        self.assertEqual(self.transport.paths("PUT"), ["/api/admin/students/2"])
        self.assertEqual(self.transport.paths("GET"), ["/api/admin/students/2"])
        (audit,) = self._audit_payloads()
        self.assertEqual(audit["DataEditType_ID"], 2)

    def test_edit_with_empty_payload_is_rejected(self):
        resp = self.client.patch("/api/v1/student/2", json={})

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["field"], "payload")

    def test_toggle_status_flips_current_value(self):
        resp = self.client.post("/api/v1/student/2/toggle-status", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 200)
        value = resp.json()["value"]
        self.assertEqual((value["id"], value["isActive"]), (2, True))
        self.assertNotIn("is_active", value)
        self.assertTrue(self.upstream.students[1]["isActive"])
        self.assertEqual(self.transport.paths("GET"), ["/api/admin/students/2", "/api/admin/students"])
        (audit,) = self._audit_payloads()
        self.assertEqual(audit["DataEditType_ID"], 1)
        self.assertEqual(audit["DataEdit_SourceTable"], "Users")

    def test_toggle_status_with_explicit_value(self):
        resp = self.client.post(
            "/api/v1/student/1/toggle-status",
            params={"confirm": "true"},
            json={"is_active": False},
        )

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(self.upstream.students[0]["isActive"])
        self.assertEqual(self.transport.paths("GET"), ["/api/admin/students"])
        self.assertFalse(resp.json()["value"]["isActive"])

    def test_toggle_status_on_kind_without_status(self):
        resp = self.client.post("/api/v1/department/5/toggle-status", params={"confirm": "true"})

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.transport.requests, [])

    def test_add_activity(self):
        resp = self.client.post("/api/v1/activity", json={"Activity_Title": "Freshers fair"})

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["value"]["Activity_ID"], 99)
        (audit,) = self._audit_payloads()
        self.assertEqual(audit["DataEditType_ID"], 7)

    def test_missing_record_is_404(self):
        resp = self.client.get("/api/v1/student/404")

        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"]["message"], "The requested record was not found")

    # ═══════════════════════════════════════════════════════════════
    # Export
    # ═══════════════════════════════════════════════════════════════

    def test_export_returns_workbook(self):
        resp = self.client.get("/api/v1/student/export", params={"filter": "faculty:Science"})

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("application/vnd.openxmlformats"))
        self.assertIn("Students_faculty-Science_", resp.headers["content-disposition"])
        book = load_workbook(BytesIO(resp.content))
        self.assertEqual(book.sheetnames[0], "Students")
        self.assertIn("Activity distribution", book.sheetnames)
        self.assertEqual(book["Students"].max_row, 3)
        self.assertEqual(self._audit_payloads(), [])

    def test_export_with_no_rows_is_422(self):
        resp = self.client.get("/api/v1/student/export", params={"search": "nobody"})

        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"]["kind"], "ExportError")

    def test_teacher_cannot_export_staff(self):
        self._as("teacher")

        resp = self.client.get("/api/v1/staff/export")

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.transport.requests, [])

    def test_security_headers(self):
        resp = self.client.get("/health")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers["X-Frame-Options"], "DENY")
        self.assertEqual(resp.headers["X-Content-Type-Options"], "nosniff")


if __name__ == "__main__":
    unittest.main()
