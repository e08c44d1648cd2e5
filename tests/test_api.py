import pytest
from fastapi import Depends, Response
from fastapi.testclient import TestClient

from config import Settings, settings
from Audit_module.Audit_crud import AuditLog
from Error_module.Error_types import AuditWriteFailed
from Login_module.Session.Session_context import SessionContext
from Login_module.Utils.auth_user import get_current_session

from .conftest import BROWSER_HEADERS, login

UNIFORM_REJECTION = {"status": "error", "message": "Authentication required."}
CSRF_HEADER = "X-CSRF-Token"


@pytest.fixture
def new_client(app):
    def _build():
        client = TestClient(app, raise_server_exceptions=False)
        client.headers.update(BROWSER_HEADERS)
        return client
    return _build


@pytest.fixture
def phi_app(app):
    @app.get("/patients/{patient_id}")
    def read_patient(patient_id: str, context: SessionContext = Depends(get_current_session)):
        return {"success": True, "data": {"patient_id": patient_id, "allergies": ["penicillin"]}}

    return app


class TestLogin:
    def test_otp_login_sets_httponly_cookie(self, client, user):
        code = client.post("/auth/send-otp", json={"username": "dr.jones"}).json()["data"]["otp"]
        response = client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": code})

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["user_id"] == user.id
        assert body["data"]["csrf_token"]
        cookie_header = response.headers["set-cookie"].lower()
        assert "httponly" in cookie_header
        assert "samesite=strict" in cookie_header
        assert body["data"]["csrf_token"] not in response.headers["set-cookie"]

    def test_me(self, client, user):
        login(client, "dr.jones")
        response = client.get("/auth/me")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "dr.jones"
        assert data["role"] == "clinician"
        assert data["idle_timeout"] == 1800

    def test_unknown_user_gets_the_same_answer(self, client, user):
        known = client.post("/auth/send-otp", json={"username": "dr.jones"}).json()
        unknown = client.post("/auth/send-otp", json={"username": "nobody"}).json()
        assert unknown["message"] == known["message"]
        assert unknown["data"]["otp"] is None

    def test_code_is_withheld_in_production(self, client, user, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        response = client.post("/auth/send-otp", json={"username": "dr.jones"})
        assert response.status_code == 200
        assert response.json()["data"]["otp"] is None

    def test_environment_defaults_to_production(self, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        assert Settings(_env_file=None).is_production

    def test_reused_code_is_reported_as_used(self, client, user):
        code = client.post("/auth/send-otp", json={"username": "dr.jones"}).json()["data"]["otp"]
        assert client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": code}).status_code == 200

        replay = client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": code})
        assert replay.status_code == 400
        assert replay.json()["message"] == "OTP already used"

    def test_wrong_code(self, client, user):
        client.post("/auth/send-otp", json={"username": "dr.jones"})
        response = client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": "0000000"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid OTP code"

    def test_verification_is_rate_limited(self, client, user, redis_double):
        redis_double.set("ip_rate_limit:verify_otp:testclient", 10)
        response = client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": "123456"})
        assert response.status_code == 429

    def test_forwarded_address_does_not_reset_the_limit(self, client, user, redis_double):
        redis_double.set("ip_rate_limit:verify_otp:testclient", 10)
        response = client.post(
            "/auth/verify-otp",
            json={"username": "dr.jones", "otp": "123456"},
            headers={"X-Forwarded-For": "203.0.113.7"}
        )
        assert response.status_code == 429

    def test_outstanding_codes_are_capped(self, client, clock, user):
        for _ in range(5):
            assert client.post("/auth/send-otp", json={"username": "dr.jones"}).status_code == 200

        response = client.post("/auth/send-otp", json={"username": "dr.jones"})
        assert response.status_code == 429

        clock.advance(600)
        assert client.post("/auth/send-otp", json={"username": "dr.jones"}).status_code == 200

    def test_account_is_blocked_after_repeated_wrong_codes(self, client, user):
        code = client.post("/auth/send-otp", json={"username": "dr.jones"}).json()["data"]["otp"]
        for attempt in range(5):
            response = client.post(
                "/auth/verify-otp",
                json={"username": "dr.jones", "otp": "0000000"},
                headers={"X-Forwarded-For": f"198.51.100.{attempt}"}
            )
            assert response.status_code == 400

        response = client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": code})
        assert response.status_code == 429

    def test_successful_login_clears_failures(self, client, user, redis_double):
        client.post("/auth/send-otp", json={"username": "dr.jones"})
        for _ in range(4):
            client.post("/auth/verify-otp", json={"username": "dr.jones", "otp": "0000000"})
        login(client, "dr.jones")
        assert redis_double.get(f"otp_failed:{user.id}") is None


class TestUniformRejection:
    def test_missing_and_garbage_cookies_look_the_same(self, client, new_client, user):
        missing = client.get("/auth/me")
        other = new_client()
        other.cookies.set("RECORDS_SESSID", "garbage")
        garbage = other.get("/auth/me")

        assert missing.status_code == garbage.status_code == 401
        assert missing.json() == garbage.json() == UNIFORM_REJECTION

    def test_idle_timeout(self, client, clock, user):
        login(client, "dr.jones")
        clock.advance(1801)
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json() == UNIFORM_REJECTION

    def test_fingerprint_change(self, client, user):
        login(client, "dr.jones")
        hijacked = client.get("/auth/me", headers={"User-Agent": "python-requests/2.32"})
        assert hijacked.json() == UNIFORM_REJECTION
        assert client.get("/auth/me").status_code == 401

    def test_token_rotation_updates_the_cookie(self, client, clock, user):
        login(client, "dr.jones")
        old_token = client.cookies.get("RECORDS_SESSID")
        clock.advance(300)

        response = client.get("/auth/me")
        assert response.status_code == 200
        assert "set-cookie" in response.headers
        assert client.cookies.get("RECORDS_SESSID") != old_token
        assert client.get("/auth/me").status_code == 200


class TestCsrf:
    def test_logout_requires_the_csrf_header(self, client, user):
        csrf_token = login(client, "dr.jones")

        rejected = client.post("/auth/logout")
        assert rejected.status_code == 401
        assert rejected.json() == UNIFORM_REJECTION

        response = client.post("/auth/logout", headers={CSRF_HEADER: csrf_token})
        assert response.status_code == 200
        assert client.get("/auth/me").status_code == 401

    def test_reissued_token_replaces_the_old_one(self, client, user):
        old_token = login(client, "dr.jones")
        new_token = client.get("/auth/csrf-token").json()["csrf_token"]

        assert client.post("/auth/logout", headers={CSRF_HEADER: old_token}).status_code == 401
        assert client.post("/auth/logout", headers={CSRF_HEADER: new_token}).status_code == 200


class TestSessions:
    def test_revoke_all_keeps_the_current_device(self, client, new_client, user):
        laptop_csrf = login(client, "dr.jones")
        phone = new_client()
        login(phone, "dr.jones")

        active = client.get("/sessions/active").json()
        assert active["active_sessions_count"] == 2
        assert [s["is_current"] for s in active["sessions"]].count(True) == 1
        assert active["sessions"][0]["ip_address"]

        revoked = client.post("/sessions/revoke-all", headers={CSRF_HEADER: laptop_csrf})
        assert revoked.json()["sessions_revoked"] == 1
        assert client.get("/auth/me").status_code == 200
        assert phone.get("/auth/me").status_code == 401

    def test_revoke_unknown_session(self, client, user):
        csrf_token = login(client, "dr.jones")
        response = client.post("/sessions/revoke/9999", headers={CSRF_HEADER: csrf_token})
        assert response.status_code == 404

    def test_preferences_are_clamped(self, client, user):
        csrf_token = login(client, "dr.jones")
        response = client.put("/sessions/preferences", json={"idle_timeout": 60}, headers={CSRF_HEADER: csrf_token})
        assert response.status_code == 200
        assert response.json()["idle_timeout"] == 300
        assert client.get("/sessions/preferences").json()["idle_timeout"] == 300


class TestAuditEndpoints:
    def test_compliance_role_required(self, client, new_client, user, officer):
        login(client, "dr.jones")
        forbidden = client.get("/audit/flagged")
        assert forbidden.status_code == 403
        assert forbidden.json()["message"] == "Insufficient permissions"

        reviewer = new_client()
        login(reviewer, "privacy.officer")
        assert reviewer.get("/audit/flagged").status_code == 200

    def test_security_events_are_visible_to_reviewers(self, client, new_client, officer):
        client.cookies.set("RECORDS_SESSID", "garbage")
        client.get("/auth/me")

        reviewer = new_client()
        login(reviewer, "privacy.officer")
        events = reviewer.get("/audit/security-events", params={"event_types": ["authentication_required"]}).json()
        assert events["count"] >= 1
        assert events["data"][0]["subject_type"] == "system"

    def test_users_may_read_their_own_activity(self, client, user, other_user):
        login(client, "dr.jones")
        own = client.get(f"/audit/actors/{user.id}")
        assert own.status_code == 200
        assert own.json()["summary"]["total_actions"] >= 1
        assert client.get(f"/audit/actors/{other_user.id}").status_code == 403


class TestPhiAccess:
    def test_phi_read_is_audited(self, phi_app, client, new_client, user, officer):
        login(client, "dr.jones")
        response = client.get("/patients/123")
        assert response.status_code == 200
        assert response.json()["data"]["patient_id"] == "123"

        reviewer = new_client()
        login(reviewer, "privacy.officer")
        trail = reviewer.get("/audit/phi-access/123").json()
        assert trail["count"] == 1
        assert trail["data"][0]["user_id"] == user.id
        assert trail["data"][0]["details"]["response_code"] == 200

    def test_response_is_withheld_when_audit_fails(self, phi_app, client, user, monkeypatch):
        login(client, "dr.jones")
        original_record = AuditLog.record

        def failing_record(self, *args, **kwargs):
            if kwargs.get("required"):
                raise AuditWriteFailed(action=kwargs.get("action"))
            return original_record(self, *args, **kwargs)

        monkeypatch.setattr(AuditLog, "record", failing_record)
        response = client.get("/patients/123")

        assert response.status_code == 500
        assert "penicillin" not in response.text
        assert response.json()["message"] == "An internal server error occurred. Please try again later."

    def test_non_phi_routes_survive_audit_failure(self, client, user, monkeypatch):
        login(client, "dr.jones")

        def failing_record(self, *args, **kwargs):
            if kwargs.get("required"):
                raise AuditWriteFailed(action=kwargs.get("action"))
            return None

        monkeypatch.setattr(AuditLog, "record", failing_record)
        assert client.get("/auth/me").status_code == 200

    def test_buffered_phi_response_keeps_repeated_headers(self, app, client, user):
        @app.get("/documents/{document_id}")
        def read_document(document_id: str, response: Response, context: SessionContext = Depends(get_current_session)):
            response.set_cookie("viewer_pane", "summary")
            response.set_cookie("viewer_zoom", "100")
            return {"success": True, "data": {"document_id": document_id}}

        login(client, "dr.jones")
        response = client.get("/documents/42")

        assert response.status_code == 200
        assert response.json()["data"]["document_id"] == "42"
        cookies = " ".join(response.headers.get_list("set-cookie"))
        assert "viewer_pane=summary" in cookies
        assert "viewer_zoom=100" in cookies
