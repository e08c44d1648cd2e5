"""
Redactor - strips regulated identifiers from text, nested data and stack frames.

Used by the audit log before anything is persisted and by the error handler before
anything is written to disk or echoed to a client. Redaction is conservative
(false positives are acceptable, leaks are not) and idempotent:
redact(redact(x)) == redact(x).
"""
import logging
import re
import traceback
from datetime import date, datetime
from pathlib import Path
from types import TracebackType
from typing import Any, Dict, Iterable, List, Optional, Pattern
from urllib.parse import parse_qsl, urlencode, urlsplit

from Error_module.Error_types import RedactionFailure

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
MAX_DEPTH = 20

# Structural identifier patterns (free text)
PHI_PATTERNS: List[Pattern] = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),      # SSN
    re.compile(r"\b\d{9}\b"),                   # unformatted SSN
    re.compile(r"\b\d{2}/\d{2}/\d{4}\b"),       # DOB MM/DD/YYYY
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),       # DOB YYYY-MM-DD
    re.compile(r"\b[A-Z]{2}\d{6,10}\b"),        # medical record numbers
]

# Database credential fragments that drivers like to put in error messages
CREDENTIAL_PATTERNS = [
    (re.compile(r"using password: (YES|NO)", re.IGNORECASE), "using password: " + REDACTED),
    (re.compile(r"\b(host|user|password|database)[=:]['\"]?[^\s'\"]+['\"]?", re.IGNORECASE), r"\1=" + REDACTED),
]

# Keys whose values are masked wholesale, at any nesting depth
SENSITIVE_KEYS = (
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "ssn", "social_security", "dob", "date_of_birth", "birthdate", "birth_date",
    "credit_card", "card_number", "cvv",
    "mrn", "medical_record", "patient_name",
    "authorization", "cookie",
)
# Short keys only match as a whole word ("pin" but not "shipping")
SENSITIVE_KEY_WORDS = ("pin", "otp")

_KEY_WORD_SPLIT = re.compile(r"[^a-z0-9]+")

SCRUBBED_PRIMITIVES = (int, float, bool, type(None))


class Redactor:
    """
    Stateless redaction service.
    One instance is shared by the audit log and the error handler.
    """

    def __init__(
        self,
        patterns: Optional[Iterable[Pattern]] = None,
        sensitive_keys: Optional[Iterable[str]] = None,
        root_path: Optional[str] = None,
    ):
        self.patterns = list(patterns) if patterns is not None else list(PHI_PATTERNS)
        self.sensitive_keys = tuple(sensitive_keys) if sensitive_keys is not None else SENSITIVE_KEYS
        self.root_path = root_path or str(Path(__file__).resolve().parent.parent)

    # ------------------------------------------------------------------ keys

    def is_sensitive_key(self, key: Any) -> bool:
        normalized = str(key).lower().replace("-", "_")
        if any(sensitive in normalized for sensitive in self.sensitive_keys):
            return True
        words = set(_KEY_WORD_SPLIT.split(normalized))
        return any(word in words for word in SENSITIVE_KEY_WORDS)

    # ------------------------------------------------------------------ text

    def redact_text(self, text: str) -> str:
        """Replace every structural identifier in free text."""
        if not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(REDACTED, text)
        for pattern, replacement in CREDENTIAL_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    # ------------------------------------------------------------------ data

    def redact(self, value: Any, _depth: int = 0) -> Any:
        """
        Redact any JSON-like value.
        Dicts are walked recursively, sensitive keys are masked, strings are scrubbed,
        numbers that look like identifiers are masked, other objects become type names.
        """
        if _depth > MAX_DEPTH:
            return REDACTED
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, (int, float)):
            return value if self.redact_text(str(value)) == str(value) else REDACTED
        if isinstance(value, (datetime, date)):
            return self.redact_text(value.isoformat())
        if isinstance(value, dict):
            return self._redact_mapping(value, _depth)
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.redact(item, _depth + 1) for item in value]
        return f"[Object: {type(value).__name__}]"

    def _redact_mapping(self, data: Dict[Any, Any], depth: int) -> Dict[Any, Any]:
        sanitized = {}
        for key, value in data.items():
            if self.is_sensitive_key(key):
                sanitized[key] = REDACTED
                continue
            try:
                sanitized[key] = self._redact_field(value, depth)
            except RedactionFailure as e:
                # Drop the field rather than risk leaking it
                logger.warning(f"Dropping field during redaction | Key: {key} | Error: {e}")
        return sanitized

    def _redact_field(self, value: Any, depth: int) -> Any:
        try:
            return self.redact(value, depth + 1)
        except RedactionFailure:
            raise
        except Exception as e:
            raise RedactionFailure(f"{type(e).__name__} while redacting {type(value).__name__}") from e

    def redact_details(self, details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Redact a structured audit `details` payload; non-dicts are wrapped."""
        if details is None:
            return None
        if not isinstance(details, dict):
            details = {"value": details}
        try:
            return self._redact_mapping(details, 0)
        except Exception as e:
            logger.error(f"Redaction of audit details failed, payload dropped | Error: {type(e).__name__}")
            return {"redaction_failed": True}

    # ------------------------------------------------------------------ paths / URIs

    def redact_path(self, path: str) -> str:
        """Make file paths relative to the project root."""
        if not path:
            return "[internal]"
        return path.replace(self.root_path, "[ROOT]")

    def redact_uri(self, uri: str) -> str:
        """Mask sensitive query parameters and identifiers in a request URI."""
        if not uri:
            return uri
        parts = urlsplit(uri)
        path = self.redact_text(parts.path) or "/"
        if not parts.query:
            return path
        params = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            params.append((key, REDACTED if self.is_sensitive_key(key) else self.redact_text(value)))
        # urlencode would escape the brackets of the marker
        return path + "?" + urlencode(params, safe="[]")

    # ------------------------------------------------------------------ stack frames

    def redact_argument(self, name: str, value: Any) -> Any:
        if self.is_sensitive_key(name):
            return REDACTED
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, SCRUBBED_PRIMITIVES):
            return self.redact(value)
        return f"[{type(value).__name__}]"

    def redact_frames(self, tb: Optional[TracebackType], limit: int = 20) -> List[Dict[str, Any]]:
        """
        Reduce a traceback to file/line/function plus argument type names.
        Only string and numeric arguments survive, and only after scrubbing.
        """
        frames = []
        for frame, lineno in traceback.walk_tb(tb):
            code = frame.f_code
            arg_count = code.co_argcount + code.co_kwonlyargcount
            arg_names = code.co_varnames[:arg_count]
            args = {}
            for name in arg_names:
                if name in ("self", "cls") or name not in frame.f_locals:
                    continue
                args[name] = self.redact_argument(name, frame.f_locals[name])
            frames.append({
                "file": self.redact_path(code.co_filename),
                "line": lineno,
                "function": code.co_name,
                "args": args,
            })
        return frames[-limit:]

    def redact_exception(self, exc: BaseException) -> Dict[str, Any]:
        """Redacted, JSON-ready description of an exception."""
        return {
            "type": type(exc).__name__,
            "message": self.redact_text(str(exc)),
            "frames": self.redact_frames(exc.__traceback__),
        }


# Shared instance for call sites that are not wired through dependency injection
default_redactor = Redactor()
