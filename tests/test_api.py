from __future__ import annotations

import tempfile
import time
import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from leaveflow.db import get_db
from leaveflow.main import app
from leaveflow.models import UserProfile, UserRole
from leaveflow.security import create_identity_token
from leaveflow.settings import Settings
from tests.sqlite_support import add_team, add_user, make_file_engine, make_session, session_factory

_TEST_SETTINGS = Settings(jwt_secret="test-secret", jwt_issuer="leaveflow-identity", jwt_audience="leaveflow")


def _override_get_db(db):  # type: ignore[no-untyped-def]
    def _override() -> Generator[object, None, None]:
        yield db

    return _override


class LeaveApiTests(unittest.TestCase):
    def setUp(self) -> None:
        settings_patch = patch("leaveflow.security.get_settings", return_value=_TEST_SETTINGS)
        settings_patch.start()
        self.addCleanup(settings_patch.stop)

        self.db = make_session()
        self.addCleanup(self.db.close)
        app.dependency_overrides[get_db] = _override_get_db(self.db)
        self.addCleanup(app.dependency_overrides.clear)

        team = add_team(self.db, "Platform", lead_uid="lead")
        add_user(self.db, "lead", team=team, role=UserRole.TEAM_LEAD)
        add_user(self.db, "emp", team=team)
        add_user(self.db, "root", role=UserRole.ADMIN)
        other = add_team(self.db, "Support")
        add_user(self.db, "outsider", team=other)
        self.team = team
        self.client = TestClient(app)

    def _auth(self, uid: str, **claims) -> dict[str, str]:  # type: ignore[no-untyped-def]
        token = create_identity_token(uid=uid, email=claims.get("email", f"{uid}@example.com"), name=claims.get("name"))
        return {"Authorization": f"Bearer {token}"}

    def _create(self, uid: str = "emp", start: str = "2026-03-02T09:00:00Z", end: str = "2026-03-02T10:00:00Z"):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/leave-requests",
            headers=self._auth(uid),
            json={"type": "annual", "start_at": start, "end_at": end, "note": "dentist"},
        )

    def test_missing_token_is_rejected(self) -> None:
        response = self.client.get("/api/leave-requests/mine")
        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertIn("request_id", body["error"])

    def test_tampered_token_is_rejected(self) -> None:
        headers = self._auth("emp")
        headers["Authorization"] += "x"
        response = self.client.get("/api/me", headers=headers)
        self.assertEqual(response.status_code, 401)

    def test_first_session_creates_blocked_profile(self) -> None:
        response = self.client.post("/api/me/session", headers=self._auth("newcomer", name="New Comer"))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["profile"]["uid"], "newcomer")
        self.assertEqual(body["profile"]["display_name"], "New Comer")
        self.assertFalse(body["can_access_app"])
        self.assertEqual(body["access_issues"], ["not_whitelisted", "no_team"])

        denied = self.client.get("/api/leave-requests/mine", headers=self._auth("newcomer"))
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["error"]["code"], "ACCESS_DENIED")
        self.assertEqual(denied.json()["error"]["message"], "Access denied: not_whitelisted, no_team.")

    def test_create_approve_and_read_balance(self) -> None:
        created = self._create()
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["requested_minutes"], 60)
        self.assertEqual(created.json()["status"], "SUBMITTED")
        request_id = created.json()["request_id"]

        mine = self.client.get("/api/leave-requests/mine", headers=self._auth("emp"))
        self.assertEqual([item["id"] for item in mine.json()], [request_id])

        approved = self.client.post(f"/api/leave-requests/{request_id}/approve", headers=self._auth("lead"))
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["status"], "APPROVED")
        self.assertEqual(approved.json()["balance_delta_minutes"], -60)

        balances = self.client.get("/api/me/balances", headers=self._auth("emp")).json()
        self.assertEqual(len(balances), 1)
        self.assertEqual(balances[0]["balance_minutes"], -60)
        self.assertEqual(balances[0]["leave_type_id"], "annual")

        logs = self.client.get(f"/api/leave-requests/{request_id}/logs", headers=self._auth("emp")).json()
        self.assertEqual([item["action"] for item in logs], ["CREATED", "TL_APPROVED", "APPROVED"])

        calendar = self.client.get(
            "/api/calendar",
            params={"start": "2026-03-01T00:00:00Z", "end": "2026-03-08T00:00:00Z"},
            headers=self._auth("emp"),
        )
        self.assertEqual(calendar.status_code, 200)
        self.assertEqual(calendar.json()[0]["employee_name"], "Emp")
        self.assertEqual(calendar.json()[0]["duration"], "1h")

    def test_business_errors_use_error_envelope(self) -> None:
        self._create()
        overlap = self._create(start="2026-03-02T09:30:00Z", end="2026-03-02T11:00:00Z")
        self.assertEqual(overlap.status_code, 409)
        self.assertEqual(overlap.json()["error"]["code"], "CONFLICT")
        self.assertEqual(
            overlap.json()["error"]["message"],
            "This request overlaps with an existing leave request.",
        )

        backwards = self._create(start="2026-03-03T10:00:00Z", end="2026-03-03T09:00:00Z")
        self.assertEqual(backwards.status_code, 422)
        self.assertEqual(backwards.json()["error"]["message"], "End time must be after start time.")

    def test_unauthorized_reject_returns_forbidden(self) -> None:
        request_id = self._create().json()["request_id"]
        response = self.client.post(
            f"/api/leave-requests/{request_id}/reject",
            headers=self._auth("outsider"),
            json={"reason": "no"},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["message"], "You are not allowed to reject this request.")

    def test_other_team_cannot_read_request(self) -> None:
        request_id = self._create().json()["request_id"]
        response = self.client.get(f"/api/leave-requests/{request_id}", headers=self._auth("outsider"))
        self.assertEqual(response.status_code, 403)

    def test_owner_cancels_without_body(self) -> None:
        request_id = self._create().json()["request_id"]
        response = self.client.post(f"/api/leave-requests/{request_id}/cancel", headers=self._auth("emp"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "CANCELLED")

    def test_admin_routes_require_admin(self) -> None:
        response = self.client.get("/api/admin/teams", headers=self._auth("emp"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

        teams = self.client.get("/api/admin/teams", headers=self._auth("root"))
        self.assertEqual(teams.status_code, 200)
        self.assertEqual([item["name"] for item in teams.json()], ["Platform", "Support"])

    def test_admin_balance_adjustment(self) -> None:
        granted = self.client.post(
            "/api/admin/users/emp/balances/adjust",
            headers=self._auth("root"),
            json={"leave_type": "annual", "year": 2026, "delta_minutes": 480, "reason": "Grant"},
        )
        self.assertEqual(granted.status_code, 200)
        self.assertEqual(granted.json(), {"balance_minutes": 480})

        refused = self.client.post(
            "/api/admin/users/emp/balances/adjust",
            headers=self._auth("root"),
            json={"leave_type": "annual", "year": 2026, "delta_minutes": -500, "reason": "Correction"},
        )
        self.assertEqual(refused.status_code, 422)
        self.assertEqual(
            refused.json()["error"]["message"],
            "Balance cannot go negative. Record as UNPAID or increase the leave balance.",
        )

        history = self.client.get("/api/admin/users/emp/adjustments", headers=self._auth("root")).json()
        self.assertEqual([item["delta_minutes"] for item in history], [480])

    def test_admin_team_creation_conflict(self) -> None:
        response = self.client.post("/api/admin/teams", headers=self._auth("root"), json={"name": "platform"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["message"], "A team with this name already exists.")

    def test_request_validation_error_shape(self) -> None:
        response = self.client.post(
            "/api/leave-requests",
            headers=self._auth("emp"),
            json={"type": "sabbatical", "start_at": "2026-03-02T09:00:00Z", "end_at": "2026-03-02T10:00:00Z"},
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_request_log_names_leave_request_only_when_known(self) -> None:
        with self.assertLogs("leaveflow.request", level="INFO") as logs:
            request_id = self._create().json()["request_id"]
            self.client.get("/api/me/balances", headers=self._auth("emp"))

        records = [item for item in logs.records if item.getMessage() == "request_complete"]
        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].leave_request_id, request_id)
        self.assertFalse(hasattr(records[1], "leave_request_id"))

    def test_health_reports_schema_guard_not_run(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("SCHEMA_GUARD_NOT_RUN", response.json()["schema_guard"]["issues"])
        self.assertFalse(response.json()["email_enabled"])


class LeaveStreamTests(unittest.TestCase):
    def setUp(self) -> None:
        settings_patch = patch("leaveflow.security.get_settings", return_value=_TEST_SETTINGS)
        settings_patch.start()
        self.addCleanup(settings_patch.stop)

        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        # Single-connection pool.
        self.engine = make_file_engine(tmpdir.name, pool_size=1)
        self.addCleanup(self.engine.dispose)
        self.sessions = session_factory(self.engine)
        session_patch = patch("leaveflow.routers.leaves.SessionLocal", self.sessions)
        session_patch.start()
        self.addCleanup(session_patch.stop)

        with self.sessions() as db:
            team = add_team(db, "Platform")
            add_user(db, "emp", team=team)
            other = add_team(db, "Support")
            self.other_team_id = other.id
        self.client = TestClient(app)

    def _token(self, uid: str) -> str:
        return create_identity_token(uid=uid, email=f"{uid}@example.com")

    def _wait_for_listener(self, topic: str) -> None:
        hub = app.state.subscription_hub
        deadline = time.monotonic() + 2
        while hub.listener_count(topic) == 0 and time.monotonic() < deadline:
            time.sleep(0.01)

    def test_invalid_token_closes_stream(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/ws/leave-stream?token=bad"):
                pass
        self.assertEqual(ctx.exception.code, 4401)

    def test_foreign_team_topic_is_refused(self) -> None:
        topic = f"team:{self.other_team_id}:requests"
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect(f"/ws/leave-stream?token={self._token('emp')}&topics={topic}"):
                pass
        self.assertEqual(ctx.exception.code, 4403)
        self.assertEqual(self.engine.pool.checkedout(), 0)

    def test_published_event_is_streamed(self) -> None:
        with self.client.websocket_connect(f"/ws/leave-stream?token={self._token('emp')}") as websocket:
            self._wait_for_listener("user:emp:requests")
            app.state.change_feed.publish("user:emp:requests", {"type": "leave_request", "request_id": 42})
            event = websocket.receive_json()

        self.assertEqual(event, {"type": "leave_request", "request_id": 42})

    def test_open_stream_returns_its_connection_to_the_pool(self) -> None:
        with self.client.websocket_connect(f"/ws/leave-stream?token={self._token('emp')}"):
            self._wait_for_listener("user:emp:requests")

            self.assertEqual(self.engine.pool.checkedout(), 0)
            with self.sessions() as db:
                self.assertIsNotNone(db.get(UserProfile, "emp"))


if __name__ == "__main__":
    unittest.main()
