"""
Shared dependencies for the OpenFreiplaner API.
Extracted from main.py for modular router support.
"""
import os
import logging
import logging.handlers
import secrets
import traceback

from fastapi import HTTPException, Header, Depends
from typing import Optional
from offlib.clock import Clock, SystemClock
from offlib.database import OffDatabase
from offlib.errors import (
    EmployeeNotFoundError, InvalidOffDatesError, PreconditionError, SchedulingError,
    SessionNotFoundError, SessionOwnershipError, SessionError, SystemBusyError,
    SystemClosedError,
)
from offlib.models import Period, format_remaining
from offlib.notify import LogNotificationSink
from offlib.rules import RuleEngine
from offlib.session_lock import SessionController
from offlib.workflow import SubmissionWorkflow
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Structured JSON Logging setup ───────────────────────────────
import json as _json
from datetime import datetime as _dt, timezone as _tz

class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return _json.dumps(entry, ensure_ascii=False)

_log_file = os.environ.get('OFP_LOG_FILE', '/tmp/ofp-api.log')
_handler = logging.handlers.RotatingFileHandler(
    _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
)
_handler.setFormatter(_JsonFormatter())

# Log level configurable via ENV
_log_level_str = os.environ.get('OFP_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())

_logger = logging.getLogger('ofpapi')
# Core library loggers (offlib.*) share the API handlers
for _name in ('ofpapi', 'offlib'):
    _l = logging.getLogger(_name)
    _l.setLevel(_log_level)
    _l.addHandler(_handler)
    _l.addHandler(_stderr_handler)

# Keep reference to log file path for health endpoint
OFP_LOG_FILE = _log_file

# ── Rate Limiter ─────────────────────────────────────────────────
limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

# ── Admin token ──────────────────────────────────────────────────
# Issuing credentials is handled outside this service; admin routes only
# compare the configured token.
def require_admin(x_admin_token: Optional[str] = Header(None)) -> dict:
    """Dependency: requires the configured admin token."""
    expected = os.environ.get('OFP_ADMIN_TOKEN', '')
    if not expected:
        raise HTTPException(status_code=403, detail="Admin-Zugang ist nicht konfiguriert")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Keine Admin-Berechtigung")
    return {"role": "Admin"}


# ── Core services ────────────────────────────────────────────────
_SYSTEM_CLOCK = SystemClock()


def get_db() -> OffDatabase:
    """Get a database handle using the current DB_PATH from main module."""
    import api.main as _main
    return OffDatabase(_main.DB_PATH, os.environ.get('OFP_TIMEZONE', 'UTC'))


def get_clock() -> Clock:
    return _SYSTEM_CLOCK


def get_notifier():
    from .routers.notifications import AppNotificationSink
    return AppNotificationSink(fallback=LogNotificationSink(_logger))


def get_controller(
    db: OffDatabase = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SessionController:
    return SessionController(db, clock)


def get_engine(db: OffDatabase = Depends(get_db)) -> RuleEngine:
    return RuleEngine(db)


def get_workflow(
    db: OffDatabase = Depends(get_db),
    controller: SessionController = Depends(get_controller),
    engine: RuleEngine = Depends(get_engine),
    notifier=Depends(get_notifier),
) -> SubmissionWorkflow:
    return SubmissionWorkflow(db, controller, engine, notifier)


def get_period(year: int, month: int) -> Period:
    """Path-parameter dependency turning year/month into a validated Period."""
    try:
        return Period(year, month)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ── Error mapping ────────────────────────────────────────────────
def scheduling_http_error(e: SchedulingError) -> HTTPException:
    """Translate a core scheduling exception into the HTTP response it stands for."""
    if isinstance(e, SystemBusyError):
        return HTTPException(status_code=409, detail={
            "message": str(e),
            "holder": {"employee_id": e.holder_id, "employee_name": e.holder_name},
            "remaining_seconds": e.remaining_seconds,
            "remaining_formatted": format_remaining(e.remaining_seconds),
        })
    if isinstance(e, SystemClosedError):
        return HTTPException(status_code=403, detail=e.reason)
    if isinstance(e, InvalidOffDatesError):
        return HTTPException(status_code=422, detail={"message": str(e), "dates": e.dates})
    if isinstance(e, EmployeeNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PreconditionError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SessionOwnershipError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, SessionError):
        return HTTPException(status_code=410, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log full exception, return sanitized 500."""
    _logger.error(
        "500 error context=%s type=%s msg=%s trace=%s",
        context, type(e).__name__, str(e),
        traceback.format_exc().splitlines()[-1],
    )
    return HTTPException(
        status_code=500,
        detail="Interner Serverfehler. Bitte versuche es erneut.",
    )
