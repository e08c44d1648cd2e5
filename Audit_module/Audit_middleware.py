"""
Automatic audit logging around units of work.

AuditMiddleware wraps a callable and records what it did once it finishes, whether it
succeeded, reported a business failure ({"success": False}) or raised. The wrapped
return value and exception are passed through untouched. On PHI paths the audit write
is a precondition for responding: if it fails, AuditWriteFailed is raised instead of
returning the result.

AuditHTTPMiddleware applies the same rules to every HTTP request.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar
import json
import logging
import re
import time

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from config import settings
from database import SessionLocal
from Error_module.Error_types import AuditWriteFailed
from Error_module.Error_handler import generic_error_response
from Login_module.Utils.datetime_utils import now_utc
from Login_module.Utils.rate_limiter import get_client_ip
from .Audit_crud import AuditAction, AuditLog, AuditRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESOURCE_PATTERNS = (
    ("patient", re.compile(r"/patients?/")),
    ("encounter", re.compile(r"/encounters?/")),
    ("dot_test", re.compile(r"/dot[-_]?tests?/")),
    ("osha", re.compile(r"/osha/")),
    ("user", re.compile(r"/users?/")),
    ("document", re.compile(r"/documents?/")),
    ("report", re.compile(r"/reports?/")),
    ("video", re.compile(r"/video/")),
    ("auth", re.compile(r"/auth/")),
    ("admin", re.compile(r"/admin/")),
)

METHOD_ACTIONS = {
    "GET": AuditAction.READ,
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

DEFAULT_EXCLUDE_PATTERNS = ("/health", "/ping", "/status", "/favicon")
DEFAULT_SENSITIVE_PATHS = ("/patients", "/encounters", "/documents")

_VERSION_SEGMENT = re.compile(r"^(api|v\d+)$", re.IGNORECASE)
_UUID_SEGMENT = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_NUMERIC_SEGMENT = re.compile(r"^\d{1,19}$")
_PATIENT_IN_PATH = re.compile(r"/patients?/([0-9a-f-]+)", re.IGNORECASE)


@dataclass
class AuditMiddlewareConfig:
    log_reads: bool = True
    log_all_requests: bool = False
    exclude_patterns: Tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    sensitive_paths: Tuple[str, ...] = DEFAULT_SENSITIVE_PATHS


@dataclass
class RequestInfo:
    """What the middleware needs to know about the request being audited."""
    method: str
    path: str
    query: Mapping[str, str] = field(default_factory=dict)
    user_id: Optional[int] = None
    user_role: Optional[str] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    status_code: Optional[int] = None


def detect_resource_type(path: str) -> str:
    for resource_type, pattern in RESOURCE_PATTERNS:
        if pattern.search(path):
            return resource_type
    for segment in (s for s in path.split("/") if s):
        if _VERSION_SEGMENT.match(segment):
            continue
        return segment.lower()
    return "api"


def extract_resource_id(path: str) -> Optional[str]:
    for segment in (s for s in path.split("/") if s):
        if _UUID_SEGMENT.match(segment) or _NUMERIC_SEGMENT.match(segment):
            return segment
    return None


def detect_patient_id(path: str, query: Optional[Mapping[str, str]], response: Any) -> Optional[str]:
    match = _PATIENT_IN_PATH.search(path)
    if match:
        return match.group(1)

    if query:
        patient_id = query.get("patient_id") or query.get("patientId")
        if patient_id:
            return str(patient_id)

    if isinstance(response, dict):
        data = response.get("data")
        if isinstance(data, dict):
            if data.get("patient_id") is not None:
                return str(data["patient_id"])
            patient = data.get("patient")
            if isinstance(patient, dict) and patient.get("patient_id") is not None:
                return str(patient["patient_id"])
        patient = response.get("patient")
        if isinstance(patient, dict) and patient.get("patient_id") is not None:
            return str(patient["patient_id"])
    return None


class AuditMiddleware:
    def __init__(
        self,
        recorder: AuditRecorder,
        config: Optional[AuditMiddlewareConfig] = None,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.recorder = recorder
        self.config = config or AuditMiddlewareConfig(log_reads=settings.AUDIT_LOG_READS)
        self.timer = timer

    @classmethod
    def for_endpoint(cls, recorder: AuditRecorder, endpoint_type: str) -> "AuditMiddleware":
        """Preset configurations for common endpoint families."""
        presets = {
            "patient": AuditMiddlewareConfig(log_reads=True, sensitive_paths=("/patients",)),
            "encounter": AuditMiddlewareConfig(log_reads=True, sensitive_paths=("/encounters",)),
            "auth": AuditMiddlewareConfig(log_reads=False, log_all_requests=True),
            "admin": AuditMiddlewareConfig(log_reads=True, log_all_requests=True),
        }
        return cls(recorder, presets.get(endpoint_type))

    @classmethod
    def wrap(
        cls,
        recorder: AuditRecorder,
        unit: Callable[[], T],
        request_info: RequestInfo,
        config: Optional[AuditMiddlewareConfig] = None,
    ) -> T:
        return cls(recorder, config).handle(unit, request_info)

    # ------------------------------------------------------------------ path rules

    def should_exclude(self, path: str) -> bool:
        return any(pattern in path for pattern in self.config.exclude_patterns)

    def is_sensitive_path(self, path: str) -> bool:
        return any(pattern in path for pattern in self.config.sensitive_paths)

    def action_for(self, method: str, path: str) -> str:
        method = method.upper()
        if method == "GET" and self.is_sensitive_path(path):
            return AuditAction.PHI_ACCESS
        return METHOD_ACTIONS.get(method, method)

    # ------------------------------------------------------------------ wrapping

    def handle(self, unit: Callable[[], T], request_info: RequestInfo) -> T:
        """
        Run `unit` and audit it. A raised exception is re-raised unchanged after a best
        effort audit entry; a successful result on a PHI path is only returned once its
        audit entry is stored.
        """
        started = self.timer()
        try:
            response = unit()
        except Exception as e:
            self.log_request(request_info, None, e, False, self.timer() - started, required=False)
            raise

        success = True
        if isinstance(response, dict) and "success" in response:
            success = bool(response["success"])
        self.log_request(request_info, response, None, success, self.timer() - started)
        return response

    def log_request(
        self,
        request_info: RequestInfo,
        response: Any,
        error: Optional[BaseException],
        success: bool,
        duration: float,
        required: Optional[bool] = None,
    ):
        """
        Derive and write the audit entry for one request.
        Raises AuditWriteFailed only when the write is required and fails.
        """
        method = request_info.method.upper()
        path = request_info.path or "/"

        if self.should_exclude(path):
            return None
        sensitive = self.is_sensitive_path(path)
        if method == "GET" and not self.config.log_reads and not sensitive:
            return None

        action = self.action_for(method, path)
        resource_type = detect_resource_type(path)
        resource_id = extract_resource_id(path)
        patient_id = detect_patient_id(path, request_info.query, response)

        metadata: Dict[str, Any] = {
            "request_method": method,
            "request_path": path,
            "duration_ms": round(duration * 1000, 2),
            "success": success,
            "response_code": request_info.status_code or (500 if error else 200),
            "resource_type": resource_type,
            "resource_id": resource_id,
            "patient_id": patient_id,
            "user_role": request_info.user_role,
        }
        if error is not None:
            metadata["error_type"] = type(error).__name__
            metadata["error_message"] = str(error)
        if isinstance(response, dict):
            metadata["response_keys"] = list(response.keys())
            if isinstance(response.get("data"), (list, dict)):
                metadata["data_count"] = len(response["data"])

        if sensitive and patient_id is not None:
            subject_type, subject_id = "patient", patient_id
        else:
            subject_type, subject_id = resource_type, resource_id

        description = f"{method} {resource_type} {'completed' if success else 'failed'} ({duration:.3f}s)"

        if required is None:
            required = True if sensitive else None

        try:
            return self.recorder.record(
                actor_user_id=request_info.user_id,
                subject_type=subject_type,
                subject_id=subject_id,
                action=action,
                description=description,
                details=metadata,
                source_ip=request_info.source_ip,
                user_agent=request_info.user_agent,
                required=required,
            )
        except AuditWriteFailed:
            if required:
                raise
            logger.warning(f"Audit write failed for {method} {path}, continuing")
            return None

    def log_custom_event(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        request_info: Optional[RequestInfo] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        patient_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        required: Optional[bool] = None,
    ):
        """Manual entry for work that does not fit the request pattern."""
        details = dict(metadata or {})
        details.update({"patient_id": patient_id, "success": success, "error_message": error_message})
        if request_info is not None:
            details["user_role"] = request_info.user_role
        return self.recorder.record(
            actor_user_id=request_info.user_id if request_info else None,
            subject_type=resource_type,
            subject_id=resource_id,
            action=action,
            description=description,
            details=details,
            source_ip=request_info.source_ip if request_info else None,
            user_agent=request_info.user_agent if request_info else None,
            required=required,
        )


def request_info_from(request: Request, status_code: Optional[int] = None) -> RequestInfo:
    context = getattr(request.state, "session_context", None)
    return RequestInfo(
        method=request.method,
        path=request.url.path,
        query=dict(request.query_params),
        user_id=context.user_id if context else None,
        user_role=context.role if context else None,
        source_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        status_code=status_code,
    )


class AuditHTTPMiddleware(BaseHTTPMiddleware):
    """
    Audits every HTTP request. JSON bodies on PHI paths are buffered so the patient id
    can be read from the response; the response is only sent after its audit entry.
    """

    def __init__(self, app, config: Optional[AuditMiddlewareConfig] = None):
        super().__init__(app)
        self.config = config

    def _record(
        self,
        request: Request,
        info: RequestInfo,
        payload: Any,
        error: Optional[BaseException],
        success: bool,
        duration: float,
    ) -> None:
        session_factory = getattr(request.app.state, "session_factory", SessionLocal)
        clock = getattr(request.app.state, "clock", now_utc)
        db = session_factory()
        try:
            auditor = AuditMiddleware(AuditLog(db, clock=clock), self.config)
            auditor.log_request(info, payload, error, success, duration, required=False if error else None)
        finally:
            db.close()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            info = request_info_from(request, status_code=500)
            await run_in_threadpool(self._record, request, info, None, e, False, time.perf_counter() - started)
            raise

        payload = None
        content_type = response.headers.get("content-type", "")
        sensitive = any(p in request.url.path for p in (self.config or AuditMiddlewareConfig()).sensitive_paths)
        if sensitive and content_type.startswith("application/json"):
            body = b"".join([chunk async for chunk in response.body_iterator])
            try:
                payload = json.loads(body) if body else None
            except ValueError:
                payload = None
            original = response
            response = Response(content=body, status_code=original.status_code)
            # Repeated headers such as Set-Cookie must survive
            response.raw_headers = list(original.raw_headers)

        success = response.status_code < 400
        if isinstance(payload, dict) and "success" in payload:
            success = success and bool(payload["success"])

        info = request_info_from(request, status_code=response.status_code)
        try:
            await run_in_threadpool(self._record, request, info, payload, None, success, time.perf_counter() - started)
        except AuditWriteFailed as e:
            logger.error(f"Audit write failed, withholding response | {request.method} {request.url.path} | Action: {e.action}")
            return generic_error_response(500)
        return response
