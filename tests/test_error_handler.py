import io
import json
import logging
import sys
import threading
from types import SimpleNamespace

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from uvicorn.logging import DefaultFormatter

from Error_module.Error_handler import (
    ErrorHandler,
    RedactingFilter,
    error_code_for,
    generic_message,
)
from Error_module.Error_types import SessionExpired
from Redaction_module.Redactor import default_redactor


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "errors.jsonl"


@pytest.fixture
def handler(log_path):
    handler = ErrorHandler(log_path=str(log_path), debug=False)
    yield handler
    handler.uninstall()


def read_entries(log_path):
    return [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]


def raise_and_capture(exc):
    try:
        raise exc
    except Exception as e:
        return e


class TestInstall:
    def test_install_is_idempotent(self, handler):
        previous_hook = sys.excepthook
        handler.install()
        hook = sys.excepthook
        handler.install()

        assert hook == handler.handle_uncaught
        assert sys.excepthook == hook
        assert threading.excepthook == handler.handle_thread_exception

        handler.uninstall()
        assert sys.excepthook == previous_hook
        assert not handler.installed

    def test_log_handlers_get_one_redacting_filter(self, handler):
        root_handler = logging.StreamHandler()
        logging.getLogger().addHandler(root_handler)
        try:
            handler.install()
            handler.attach_log_filters()
            assert sum(isinstance(f, RedactingFilter) for f in root_handler.filters) == 1
        finally:
            logging.getLogger().removeHandler(root_handler)

    def test_non_propagating_server_logger_is_redacted(self, handler):
        stream = io.StringIO()
        server_handler = logging.StreamHandler(stream)
        server_handler.setFormatter(DefaultFormatter("%(levelprefix)s %(message)s", use_colors=False))
        server_logger = logging.getLogger("uvicorn.error")
        previous_propagate = server_logger.propagate
        server_logger.addHandler(server_handler)
        server_logger.propagate = False
        try:
            handler.install()
            try:
                raise ValueError("patient ssn 123-45-6789")
            except ValueError:
                server_logger.error("Exception in ASGI application", exc_info=True)
        finally:
            server_logger.removeHandler(server_handler)
            server_logger.propagate = previous_propagate

        output = stream.getvalue()
        assert "Exception in ASGI application" in output
        assert "ValueError" in output
        assert "123-45-6789" not in output

    def test_handlers_added_after_install_are_covered_on_reattach(self, handler):
        handler.install()
        late_handler = logging.StreamHandler(io.StringIO())
        late_logger = logging.getLogger("records.late")
        late_logger.addHandler(late_handler)
        try:
            handler.attach_log_filters()
            assert any(isinstance(f, RedactingFilter) for f in late_handler.filters)
            handler.uninstall()
            assert late_handler.filters == []
        finally:
            late_logger.removeHandler(late_handler)


class TestRedactingFilter:
    def test_message_and_arguments_are_scrubbed(self):
        record = logging.LogRecord("test", logging.ERROR, __file__, 1, "lookup failed for %s", ("123-45-6789",), None)
        assert RedactingFilter(default_redactor).filter(record)
        assert record.getMessage() == "lookup failed for [REDACTED]"

    def test_traceback_text_is_scrubbed(self):
        exc = raise_and_capture(ValueError("ssn 123-45-6789 rejected"))
        record = logging.LogRecord("test", logging.ERROR, __file__, 1, "boom", (), (ValueError, exc, exc.__traceback__))
        RedactingFilter(default_redactor).filter(record)
        assert "123-45-6789" not in record.exc_text
        assert "ValueError" in record.exc_text


class TestFaultRecords:
    def test_record_fault_writes_redacted_json_line(self, handler, log_path):
        exc = raise_and_capture(ValueError("bad ssn 123-45-6789"))
        error_id = handler.record_fault(exc)

        [entry] = read_entries(log_path)
        assert len(error_id) == 16
        assert entry["error_id"] == error_id
        assert entry["code"] == "VALUE_ERROR"
        assert entry["message"] == "bad ssn [REDACTED]"
        assert entry["frames"][-1]["function"] == "raise_and_capture"

    def test_thread_exception(self, handler, log_path):
        exc = raise_and_capture(RuntimeError("worker died"))
        handler.handle_thread_exception(SimpleNamespace(exc_type=RuntimeError, exc_value=exc, thread=None))
        [entry] = read_entries(log_path)
        assert entry["thread"] == "unknown"

    def test_uncaught_exception(self, handler, log_path):
        exc = raise_and_capture(KeyError("chart"))
        handler.handle_uncaught(KeyError, exc, exc.__traceback__)
        assert read_entries(log_path)[0]["level"] == "CRITICAL"

    @pytest.mark.parametrize("status_code, message", [
        (500, "An internal server error occurred. Please try again later."),
        (503, "An internal server error occurred. Please try again later."),
        (404, "The requested resource was not found."),
        (403, "You do not have permission to access this resource."),
        (400, "The request was invalid. Please check your input."),
        (418, "An error occurred. Please try again later."),
    ])
    def test_generic_messages(self, status_code, message):
        assert generic_message(status_code) == message

    def test_error_codes(self):
        assert error_code_for(SessionExpired()) == "SESSION_EXPIRED"
        assert error_code_for(KeyError()) == "KEY_ERROR"


def build_app(handler):
    app = FastAPI()
    handler.register_app(app)
    handler.register_app(app)

    @app.get("/crash")
    def crash():
        raise RuntimeError("lookup failed for 123-45-6789")

    @app.get("/locked")
    def locked():
        raise SessionExpired("idle timeout", user_id=1, session_id=2)

    @app.get("/missing")
    def missing():
        raise HTTPException(status_code=404, detail="Session not found")

    @app.get("/items")
    def items(page: int):
        return {"page": page}

    return app


class TestHttpHandlers:
    def test_unhandled_exception_gets_generic_500(self, handler, log_path):
        client = TestClient(build_app(handler), raise_server_exceptions=False)
        response = client.get("/crash")

        assert response.status_code == 500
        body = response.json()
        assert body["message"] == "An internal server error occurred. Please try again later."
        assert "debug" not in body
        assert "123-45-6789" not in response.text
        assert read_entries(log_path)[0]["error_id"] == body["error_id"]

    def test_debug_mode_adds_redacted_details(self, log_path):
        handler = ErrorHandler(log_path=str(log_path), debug=True)
        client = TestClient(build_app(handler), raise_server_exceptions=False)
        body = client.get("/crash").json()
        assert body["debug"]["type"] == "RuntimeError"
        assert body["debug"]["message"] == "lookup failed for [REDACTED]"

    def test_session_failures_are_uniform(self, handler):
        client = TestClient(build_app(handler), raise_server_exceptions=False)
        response = client.get("/locked")
        assert response.status_code == 401
        assert response.json() == {"status": "error", "message": "Authentication required."}

    def test_http_exception_detail_is_kept(self, handler):
        client = TestClient(build_app(handler))
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json() == {"status": "error", "message": "Session not found"}

    def test_validation_errors(self, handler):
        client = TestClient(build_app(handler))
        response = client.get("/items", params={"page": "abc"})
        assert response.status_code == 422
        [detail] = response.json()["details"]
        assert detail["source"] == "query"
        assert detail["field"] == "page"
