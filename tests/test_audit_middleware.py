import pytest

from Audit_module.Audit_crud import AuditAction
from Audit_module.Audit_middleware import (
    AuditMiddleware,
    AuditMiddlewareConfig,
    RequestInfo,
    detect_patient_id,
    detect_resource_type,
    extract_resource_id,
)
from Error_module.Error_types import AuditWriteFailed


class RecordingRecorder:
    """Captures record() calls; optionally fails them the way AuditLog does."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def record(self, actor_user_id, subject_type, subject_id, action, description="", details=None,
               source_ip=None, user_agent=None, flagged=False, required=None):
        self.calls.append({
            "actor_user_id": actor_user_id,
            "subject_type": subject_type,
            "subject_id": subject_id,
            "action": action,
            "description": description,
            "details": details,
            "required": required,
        })
        if self.fail:
            if required:
                raise AuditWriteFailed(action=action)
            return None
        return self.calls[-1]

    def record_security_event(self, event_type, user_id=None, details=None, source_ip=None, user_agent=None):
        return self.record(user_id, "system", event_type, AuditAction.SECURITY_EVENT, details=details, required=False)


def timer_from(*ticks):
    values = iter(ticks)
    return lambda: next(values)


@pytest.fixture
def recorder():
    return RecordingRecorder()


@pytest.fixture
def auditor(recorder):
    return AuditMiddleware(recorder, AuditMiddlewareConfig(), timer=timer_from(1.0, 1.25))


class TestDerivation:
    @pytest.mark.parametrize("path, resource_type", [
        ("/patients/123", "patient"),
        ("/api/v1/encounters/9/notes", "encounter"),
        ("/dot-tests/4", "dot_test"),
        ("/api/v2/invoices/7", "invoices"),
        ("/", "api"),
    ])
    def test_resource_type(self, path, resource_type):
        assert detect_resource_type(path) == resource_type

    def test_resource_id(self):
        assert extract_resource_id("/patients/123/labs") == "123"
        assert extract_resource_id("/documents/5f0c6d1e-8a8b-4a65-9a6e-3b0f1d2c4e5f") == \
            "5f0c6d1e-8a8b-4a65-9a6e-3b0f1d2c4e5f"
        assert extract_resource_id("/sessions/active") is None

    def test_patient_id_sources(self):
        assert detect_patient_id("/patients/42/labs", None, None) == "42"
        assert detect_patient_id("/labs", {"patientId": "43"}, None) == "43"
        assert detect_patient_id("/labs", {}, {"data": {"patient_id": 44}}) == "44"
        assert detect_patient_id("/labs", {}, {"data": {"patient": {"patient_id": 45}}}) == "45"
        assert detect_patient_id("/labs", {}, {"patient": {"patient_id": 46}}) == "46"
        assert detect_patient_id("/labs", {}, {"data": []}) is None


class TestHandle:
    def test_phi_read_is_recorded_against_the_patient(self, auditor, recorder):
        info = RequestInfo(method="GET", path="/patients/123", user_id=7, user_role="clinician")
        result = auditor.handle(lambda: {"success": True, "data": {"patient_id": 123}}, info)

        assert result == {"success": True, "data": {"patient_id": 123}}
        [call] = recorder.calls
        assert call["action"] == AuditAction.PHI_ACCESS
        assert (call["subject_type"], call["subject_id"]) == ("patient", "123")
        assert call["actor_user_id"] == 7
        assert call["required"] is True
        assert call["details"]["duration_ms"] == 250.0
        assert call["details"]["data_count"] == 1
        assert call["details"]["user_role"] == "clinician"

    def test_update_elsewhere_uses_method_action(self, auditor, recorder):
        auditor.handle(lambda: {"ok": 1}, RequestInfo(method="PATCH", path="/reports/9"))
        [call] = recorder.calls
        assert call["action"] == AuditAction.UPDATE
        assert (call["subject_type"], call["subject_id"]) == ("report", "9")
        assert call["required"] is None

    def test_business_failure_is_recorded_and_passed_through(self, auditor, recorder):
        result = auditor.handle(lambda: {"success": False, "message": "no slot"}, RequestInfo("POST", "/reports/"))
        assert result == {"success": False, "message": "no slot"}
        assert recorder.calls[0]["details"]["success"] is False
        assert "failed" in recorder.calls[0]["description"]

    def test_exception_is_recorded_then_reraised(self, auditor, recorder):
        def unit():
            raise KeyError("chart")

        with pytest.raises(KeyError):
            auditor.handle(unit, RequestInfo("GET", "/patients/5"))

        [call] = recorder.calls
        assert call["details"]["error_type"] == "KeyError"
        assert call["details"]["response_code"] == 500
        assert call["required"] is False

    def test_excluded_paths_are_skipped(self, auditor, recorder):
        assert auditor.handle(lambda: "ok", RequestInfo("GET", "/health")) == "ok"
        assert recorder.calls == []

    def test_reads_can_be_skipped_outside_phi_paths(self, recorder):
        auditor = AuditMiddleware(recorder, AuditMiddlewareConfig(log_reads=False))
        auditor.handle(lambda: {}, RequestInfo("GET", "/reports/1"))
        auditor.handle(lambda: {}, RequestInfo("GET", "/patients/1"))
        assert [call["subject_type"] for call in recorder.calls] == ["patient"]


class TestWriteFailure:
    def test_phi_path_withholds_the_result(self):
        auditor = AuditMiddleware(RecordingRecorder(fail=True), AuditMiddlewareConfig())
        with pytest.raises(AuditWriteFailed):
            auditor.handle(lambda: {"data": {"patient_id": 1}}, RequestInfo("GET", "/patients/1"))

    def test_other_paths_continue(self):
        auditor = AuditMiddleware(RecordingRecorder(fail=True), AuditMiddlewareConfig())
        assert auditor.handle(lambda: "done", RequestInfo("POST", "/reports/")) == "done"

    def test_wrap_classmethod(self, recorder):
        result = AuditMiddleware.wrap(recorder, lambda: 5, RequestInfo("DELETE", "/documents/3"))
        assert result == 5
        assert recorder.calls[0]["action"] == AuditAction.DELETE


class TestPresetsAndCustomEvents:
    def test_endpoint_presets(self, recorder):
        assert AuditMiddleware.for_endpoint(recorder, "auth").config.log_reads is False
        assert AuditMiddleware.for_endpoint(recorder, "patient").config.sensitive_paths == ("/patients",)

    def test_custom_event(self, auditor, recorder):
        info = RequestInfo("POST", "/exports/", user_id=3, user_role="admin")
        auditor.log_custom_event(AuditAction.EXPORT, "report", "r-1", info, description="Quarterly export",
                                 patient_id="88")
        [call] = recorder.calls
        assert call["action"] == AuditAction.EXPORT
        assert call["actor_user_id"] == 3
        assert call["details"]["patient_id"] == "88"
