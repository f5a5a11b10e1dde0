"""
Observability - Logging, Metrics, and Health

Provides:
- Structured logging; keyword arguments become fields, and every line
  carries the request id and acting identity when there is one
- Starlette middleware that binds that context per request
- In-process counters: submissions, verifications, rejections per code,
  audit append latency
- Ledger health checks (audit head, full chain verification)

Environment:
- IMPACTLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- IMPACTLEDGER_LOG_FORMAT: json, text (default: json in production)
- IMPACTLEDGER_PRODUCTION: Enable production mode

Usage:
    from impactledger.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Claim submitted", claim_id=claim_id, category="carbon_reduction")
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

ACTOR_HEADER = "X-Actor-Id"
REQUEST_ID_HEADER = "X-Request-ID"


# ============================================================
# LOGGING
# ============================================================

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


def _get_log_level() -> int:
    return _LEVELS.get(os.environ.get("IMPACTLEDGER_LOG_LEVEL", "INFO").upper(), logging.INFO)


def _use_json_logging() -> bool:
    fmt = os.environ.get("IMPACTLEDGER_LOG_FORMAT", "").lower()
    if fmt in ("json", "text"):
        return fmt == "json"
    return os.environ.get("IMPACTLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _context_fields() -> Dict[str, str]:
    fields = {}
    if request_id_var.get():
        fields["request_id"] = request_id_var.get()
    if actor_id_var.get():
        fields["actor_id"] = actor_id_var.get()
    return fields


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "impactledger.core.ledger",
         "message": "Claim verified", "request_id": "1f3a9c2e",
         "actor_id": "validator-1", "claim_id": "9f2c...", "confidence_score": 85}

    Values that are not JSON-serializable are logged as their str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        for key, value in _extra_fields(record).items():
            entry[key] = value if _is_json_safe(value) else str(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


def _is_json_safe(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


class TextFormatter(logging.Formatter):
    """Single-line key=value output for development."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        request_id = request_id_var.get()
        tag = f" [{request_id[:8]}]" if request_id else ""

        line = f"{stamp} {record.levelname:8}{tag} {record.name}: {record.getMessage()}"
        fields = _extra_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={fields[k]}" for k in sorted(fields))

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that moves keyword arguments into `extra`.

        logger.info("Policy updated", category="biodiversity")
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Install a single stdout handler on the root logger.

    Idempotent; call once at startup.
    """
    level = _get_log_level()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request id and acting identity to the logging context.

    Reuses an incoming X-Request-ID, echoes it on the response, and logs
    one line per request with its status and duration.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request_tokens = (
            request_id_var.set(request_id),
            actor_id_var.set(request.headers.get(ACTOR_HEADER, "")),
        )
        logger = get_logger("impactledger.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, success=False)
            logger.exception(f"{route} -> 500", status_code=500, duration_ms=round(elapsed, 2))
            raise
        finally:
            request_id_var.reset(request_tokens[0])
            actor_id_var.reset(request_tokens[1])

        elapsed = (time.perf_counter() - started) * 1000
        get_metrics().record_request(elapsed, success=response.status_code < 500)
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            f"{route} -> {response.status_code}",
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=round(elapsed, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ============================================================
# METRICS
# ============================================================

_LATENCY_WINDOW = 1000


def _latency_window() -> deque:
    return deque(maxlen=_LATENCY_WINDOW)


def _percentile(samples: deque, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    Process-local counters.

    Rejections are keyed by error code (UnknownCategory, ClaimTooOld, ...).
    Latencies keep the most recent samples only.
    """

    claims_submitted: int = 0
    claims_verified: int = 0
    policy_changes: int = 0
    events_appended: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    rejections: Counter = field(default_factory=Counter)
    append_latencies_ms: deque = field(default_factory=_latency_window)
    request_latencies_ms: deque = field(default_factory=_latency_window)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.events_appended += 1
            self.append_latencies_ms.append(latency_ms)

    def record_submission(self) -> None:
        with self._lock:
            self.claims_submitted += 1

    def record_verification(self) -> None:
        with self._lock:
            self.claims_verified += 1

    def record_policy_change(self) -> None:
        with self._lock:
            self.policy_changes += 1

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self.rejections[code] += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += 0 if success else 1
            self.request_latencies_ms.append(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = {
                "claims_submitted": self.claims_submitted,
                "claims_verified": self.claims_verified,
                "policy_changes": self.policy_changes,
                "events_appended": self.events_appended,
                "rejections": dict(self.rejections),
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
            }
            for name, samples in (
                ("append", self.append_latencies_ms),
                ("request", self.request_latencies_ms),
            ):
                summary[f"{name}_latency_p50_ms"] = _percentile(samples, 0.5)
                summary[f"{name}_latency_p95_ms"] = _percentile(samples, 0.95)
            return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Process-wide metrics collector."""
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _run_check(check: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return check()
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_health(ledger=None) -> HealthStatus:
    """
    Liveness plus, when a ledger is given, its audit head and a full chain
    verification (hashes, linkage, signatures).
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if ledger is not None:
        def audit_head() -> Dict[str, Any]:
            head = ledger.audit_log.get_head()
            return {
                "status": "healthy",
                "event_count": head.next_sequence,
                "last_hash": f"{head.last_event_hash[:16]}..." if head.last_event_hash else None,
            }

        def chain_integrity() -> Dict[str, Any]:
            valid = ledger.verify_chain_integrity()
            return {
                "status": "healthy" if valid else "unhealthy",
                "valid": valid,
                "event_count": ledger.event_count,
            }

        checks["audit_log"] = _run_check(audit_head)
        if ledger.event_count > 0:
            checks["chain_integrity"] = _run_check(chain_integrity)

    return HealthStatus(
        healthy=all(c["status"] == "healthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
