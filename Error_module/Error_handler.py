"""
Process-wide error handling.

install() hooks uncaught exceptions (main thread and worker threads), shutdown,
Python warnings and the handlers of every configured logger so nothing leaves the process
unredacted.
register_app() adds the FastAPI exception handlers: session failures get the uniform
401, everything else gets a generic status-derived message plus an error id. Debug mode
adds the redacted exception type, message and frames.
"""
import atexit
import json
import logging
import re
import sys
import threading
import traceback
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings
from Error_module.Error_types import (
    UNIFORM_REJECTION_MESSAGE,
    AuditWriteFailed,
    SessionSecurityError,
)
from Login_module.Utils.datetime_utils import now_utc, to_utc_isoformat
from Redaction_module.Redactor import default_redactor

logger = logging.getLogger(__name__)


def generic_message(status_code: int) -> str:
    if status_code >= 500:
        return "An internal server error occurred. Please try again later."
    if status_code == 404:
        return "The requested resource was not found."
    if status_code == 403:
        return "You do not have permission to access this resource."
    if status_code == 401:
        return "Authentication is required to access this resource."
    if status_code == 400:
        return "The request was invalid. Please check your input."
    return "An error occurred. Please try again later."


def error_code_for(exc: BaseException) -> str:
    """SessionExpired -> SESSION_EXPIRED"""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", type(exc).__name__).upper()


def uniform_rejection_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"status": "error", "message": UNIFORM_REJECTION_MESSAGE}
    )


def generic_error_response(
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    error_id: Optional[str] = None,
    debug: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    content: Dict[str, Any] = {"status": "error", "message": generic_message(status_code)}
    if error_id:
        content["error_id"] = error_id
    if debug is not None:
        content["debug"] = debug
    return JSONResponse(status_code=status_code, content=content)


def _format_validation_errors(exc) -> list:
    """Return consistent error structure for 422 responses (input values are left out)."""
    detail_list = []
    errors = exc.errors() if hasattr(exc, "errors") else []

    for err in errors:
        loc = err.get("loc", [])
        source = loc[0] if loc else "body"
        field = loc[-1] if len(loc) > 1 else loc[0] if loc else None
        detail_list.append({
            "source": source,
            "field": field,
            "message": err.get("msg"),
            "type": err.get("type")
        })
    return detail_list


def configured_handlers() -> list:
    loggers = [logging.getLogger()]
    loggers.extend(
        item for item in list(logging.Logger.manager.loggerDict.values())
        if isinstance(item, logging.Logger)
    )
    handlers = []
    for item in loggers:
        for handler in item.handlers:
            if handler not in handlers:
                handlers.append(handler)
    return handlers


class RedactingFilter(logging.Filter):
    """Scrubs the rendered message and any traceback text before a handler emits it."""

    def __init__(self, redactor):
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        record.msg = self.redactor.redact_text(message)
        record.args = ()
        if record.exc_info and record.exc_info[1] is not None and not record.exc_text:
            record.exc_text = self.redactor.redact_text("".join(traceback.format_exception(*record.exc_info)))
        return True


class ErrorHandler:
    def __init__(self, redactor=None, log_path: Optional[str] = None, debug: Optional[bool] = None):
        self.redactor = redactor or default_redactor
        self.log_path = log_path if log_path is not None else settings.ERROR_LOG_PATH
        self.debug = settings.DEBUG if debug is None else debug
        self.filter = RedactingFilter(self.redactor)
        self.installed = False
        self._previous_excepthook = None
        self._previous_threading_excepthook = None
        self._apps = set()

    # ------------------------------------------------------------------ process hooks

    def install(self, app: Optional[FastAPI] = None) -> "ErrorHandler":
        """Install every hook once; calling again only registers a new app."""
        if not self.installed:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self.handle_uncaught
            self._previous_threading_excepthook = threading.excepthook
            threading.excepthook = self.handle_thread_exception
            atexit.register(self.handle_shutdown)
            logging.captureWarnings(True)
            self.attach_log_filters()
            self.installed = True
            logger.info("Error handler installed")
        if app is not None:
            self.register_app(app)
        return self

    def uninstall(self) -> None:
        if not self.installed:
            return
        sys.excepthook = self._previous_excepthook or sys.__excepthook__
        threading.excepthook = self._previous_threading_excepthook or threading.__excepthook__
        atexit.unregister(self.handle_shutdown)
        logging.captureWarnings(False)
        for handler in configured_handlers():
            handler.removeFilter(self.filter)
        self.installed = False

    def attach_log_filters(self) -> None:
        """Filter every handler on root and on any named logger, including uvicorn's non-propagating ones."""
        for handler in configured_handlers():
            if not any(isinstance(f, RedactingFilter) for f in handler.filters):
                handler.addFilter(self.filter)

    def handle_uncaught(self, exc_type, exc_value, exc_tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        self.record_fault(exc_value, level="CRITICAL")

    def handle_thread_exception(self, args) -> None:
        if args.exc_type is SystemExit:
            return
        thread_name = args.thread.name if args.thread else "unknown"
        self.record_fault(args.exc_value, extra={"thread": thread_name})

    def handle_shutdown(self) -> None:
        logger.info("Process shutting down")
        for handler in logging.getLogger().handlers:
            try:
                handler.flush()
            except Exception as e:
                sys.stderr.write(f"Failed to flush log handler during shutdown: {type(e).__name__}\n")

    # ------------------------------------------------------------------ fault records

    def record_fault(
        self,
        exc: BaseException,
        request: Optional[Request] = None,
        level: str = "ERROR",
        extra: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a redacted description of `exc` and return its error id.
        The JSON-lines file gets the full redacted record when ERROR_LOG_PATH is set.
        """
        error_id = uuid.uuid4().hex[:16]
        entry: Dict[str, Any] = {
            "error_id": error_id,
            "timestamp": to_utc_isoformat(now_utc()),
            "level": level,
            "code": error_code_for(exc),
        }
        entry.update(self.redactor.redact_exception(exc))
        if request is not None:
            entry.update({
                "request_method": request.method,
                "request_uri": self.redactor.redact_uri(str(request.url)),
                "ip_address": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            })
        if extra:
            entry.update(self.redactor.redact(extra))

        logger.log(
            logging.CRITICAL if level == "CRITICAL" else logging.ERROR,
            f"Unhandled exception | Error ID: {error_id} | Type: {entry['type']} | Message: {entry['message']}"
        )
        if self.log_path:
            try:
                with open(self.log_path, "a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry, default=str) + "\n")
            except OSError as e:
                logger.warning(f"Failed to write error log file | Error ID: {error_id} | Error: {type(e).__name__}")
        return error_id

    # ------------------------------------------------------------------ FastAPI

    def register_app(self, app: FastAPI) -> None:
        if id(app) in self._apps:
            return
        app.add_exception_handler(SessionSecurityError, self.session_security_handler)
        app.add_exception_handler(StarletteHTTPException, self.http_exception_handler)
        app.add_exception_handler(RequestValidationError, self.validation_exception_handler)
        app.add_exception_handler(AuditWriteFailed, self.audit_write_failed_handler)
        app.add_exception_handler(Exception, self.unhandled_exception_handler)
        self._apps.add(id(app))

    async def session_security_handler(self, request: Request, exc: SessionSecurityError) -> JSONResponse:
        # The cause was already logged and audited by the session guard
        return uniform_rejection_response()

    async def http_exception_handler(self, request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else generic_message(exc.status_code)
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": message},
            headers=getattr(exc, "headers", None)
        )

    async def validation_exception_handler(self, request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "status": "error",
                "message": "Request validation failed.",
                "details": _format_validation_errors(exc)
            }
        )

    async def audit_write_failed_handler(self, request: Request, exc: AuditWriteFailed) -> JSONResponse:
        error_id = self.record_fault(exc, request)
        return generic_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, error_id)

    async def unhandled_exception_handler(self, request: Request, exc: Exception) -> JSONResponse:
        error_id = self.record_fault(exc, request)
        debug = self.redactor.redact_exception(exc) if self.debug else None
        return generic_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, error_id, debug)
