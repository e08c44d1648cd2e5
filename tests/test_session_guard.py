import pytest

from Error_module.Error_types import (
    AuthenticationRequired,
    CsrfInvalid,
    SessionExpired,
    SessionHijackSuspected,
    SessionRevoked,
)
from Login_module.Session.Session_context import SessionState
from Login_module.Utils import security

from .conftest import BROWSER_HEADERS

CLIENT_IP = "203.0.113.9"


@pytest.fixture
def context(guard, user):
    return guard.set_user(user.id, user.role, BROWSER_HEADERS, CLIENT_IP)


class TestStart:
    def test_missing_token_is_recorded_as_security_event(self, guard, audit_log):
        with pytest.raises(AuthenticationRequired):
            guard.start(None, BROWSER_HEADERS, CLIENT_IP)

        events = audit_log.get_security_events(["authentication_required"])
        assert len(events) == 1
        assert events[0].subject_type == "system"
        assert events[0].source_ip == CLIENT_IP

    def test_unknown_token(self, guard):
        with pytest.raises(AuthenticationRequired):
            guard.start(security.generate_token(), BROWSER_HEADERS, CLIENT_IP)

    def test_active_session(self, guard, context, user):
        current = guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)
        assert current.is_active
        assert current.user_id == user.id
        assert current.session_id == context.session_id
        assert current.raw_token is None

    def test_fingerprint_mismatch_destroys_the_session(self, guard, store, audit_log, context):
        stolen_headers = {"User-Agent": "curl/8.5.0", "Accept-Language": "en-US,en;q=0.9"}
        with pytest.raises(SessionHijackSuspected):
            guard.start(context.raw_token, stolen_headers, "198.51.100.4")

        session = store.get_session(context.session_id)
        assert session.is_active is False
        assert session.end_reason == "hijack_suspected"
        assert len(audit_log.get_security_events(["fingerprint_mismatch"])) == 1

        # The rightful owner is locked out as well
        with pytest.raises(SessionRevoked):
            guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)

    def test_idle_expiry(self, guard, clock, context):
        clock.advance(1801)
        with pytest.raises(SessionExpired):
            guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)

    def test_security_event_failure_does_not_change_the_outcome(self, guard, audit_log, monkeypatch):
        def fail(*args, **kwargs):
            raise RuntimeError("audit store down")

        monkeypatch.setattr(audit_log, "record_security_event", fail)
        with pytest.raises(AuthenticationRequired):
            guard.start(None, BROWSER_HEADERS, CLIENT_IP)


class TestRotation:
    def test_token_rotates_after_the_interval(self, guard, clock, context):
        clock.advance(299)
        assert guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP).raw_token is None

        clock.advance(1)
        rotated = guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)
        assert rotated.rotated
        assert rotated.raw_token and rotated.raw_token != context.raw_token
        assert rotated.hashed_token == security.hash_value(rotated.raw_token)

        follow_up = guard.start(rotated.raw_token, BROWSER_HEADERS, CLIENT_IP)
        assert follow_up.session_id == context.session_id

    def test_old_token_keeps_the_same_session_during_grace(self, guard, clock, context):
        clock.advance(300)
        rotated = guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)

        clock.advance(2)
        straggler = guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)
        assert straggler.session_id == context.session_id
        assert straggler.hashed_token == rotated.hashed_token
        assert straggler.raw_token is None


class TestLoginAndLogout:
    def test_login_replaces_the_presented_session(self, guard, store, user, context):
        fresh = guard.set_user(user.id, user.role, BROWSER_HEADERS, CLIENT_IP, previous_raw_token=context.raw_token)

        assert fresh.session_id != context.session_id
        assert fresh.raw_token != context.raw_token
        assert store.get_session(context.session_id).end_reason == "replaced_on_login"
        with pytest.raises(SessionRevoked):
            guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)

    def test_new_session_carries_identity_and_csrf(self, context, user):
        assert context.user_id == user.id
        assert context.role == "clinician"
        assert context.csrf_token
        assert context.idle_timeout == 1800

    def test_clear_user(self, guard, store, context):
        assert guard.clear_user(context)
        assert context.state == SessionState.DESTROYED
        assert store.get_session(context.session_id).is_active is False

    def test_logout_twice(self, guard, context):
        assert guard.logout(context.raw_token)
        assert not guard.logout(context.raw_token)
        assert not guard.logout(None)


class TestCsrf:
    def test_issued_token_validates(self, guard, context):
        guard.validate_csrf(context, context.csrf_token)

    def test_token_survives_a_reload_of_the_session(self, guard, context):
        reloaded = guard.start(context.raw_token, BROWSER_HEADERS, CLIENT_IP)
        guard.validate_csrf(reloaded, context.csrf_token)

    @pytest.mark.parametrize("candidate", [None, "", "not-the-token"])
    def test_missing_or_wrong_token(self, guard, audit_log, context, candidate):
        with pytest.raises(CsrfInvalid):
            guard.validate_csrf(context, candidate, BROWSER_HEADERS, CLIENT_IP)
        assert len(audit_log.get_security_events(["csrf_invalid"])) == 1

    def test_token_expires_after_its_lifetime(self, guard, clock, context):
        clock.advance(3599)
        guard.validate_csrf(context, context.csrf_token)
        clock.advance(1)
        with pytest.raises(CsrfInvalid):
            guard.validate_csrf(context, context.csrf_token)

    def test_reissue_invalidates_the_previous_token(self, guard, context):
        old_token = context.csrf_token
        new_token = guard.issue_csrf(context)

        assert new_token != old_token
        guard.validate_csrf(context, new_token)
        with pytest.raises(CsrfInvalid):
            guard.validate_csrf(context, old_token)

    def test_cannot_issue_for_an_inactive_session(self, guard, context):
        guard.logout(context.raw_token)
        with pytest.raises(SessionRevoked):
            guard.issue_csrf(context)
