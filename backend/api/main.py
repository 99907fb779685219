"""FastAPI application for OpenFreiplaner."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402

# ── Import shared dependencies ──────────────────────────────────
from .dependencies import (  # noqa: E402
    get_clock,
    get_db,
    _logger,
    limiter,
)
from offlib.session_lock import SessionController  # noqa: E402

# ── Config ──────────────────────────────────────────────────────
DB_PATH = os.environ.get(
    'OFP_DB_PATH',
    os.path.join(os.path.dirname(__file__), '..', '..', 'data')
)
DB_PATH = os.path.normpath(DB_PATH)

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    or ['http://localhost:5173', 'http://localhost:8000']
)

# Seconds between sweeps of lapsed scheduling sessions
CLEANUP_INTERVAL = float(os.environ.get('OFP_CLEANUP_INTERVAL', '300'))

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Scheduling", "description": "Day-off submission, validation and the scheduling lock"},
    {"name": "Config", "description": "Per-period limits, opening window and calendar exceptions"},
    {"name": "Employees", "description": "Employee directory"},
    {"name": "Notifications", "description": "In-app notifications"},
    {"name": "Events", "description": "Server-sent events"},
    {"name": "Admin", "description": "Administrative operations (Admin only)"},
]


def sweep_expired_sessions() -> int:
    """Expire lapsed scheduling sessions; returns how many were expired."""
    from .routers.events import broadcast
    count = SessionController(get_db(), get_clock()).cleanup_timeout_sessions()
    if count:
        broadcast("session_ended", {"reason": "timeout", "count": count})
    return count


async def _periodic_cleanup():
    """Background task: expire lapsed scheduling sessions every CLEANUP_INTERVAL seconds."""
    import asyncio
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL)
        try:
            expired = await asyncio.to_thread(sweep_expired_sessions)
            if expired:
                _logger.info("Periodic cleanup: expired %d lapsed sessions", expired)
        except Exception as _exc:  # pragma: no cover
            _logger.warning("Periodic cleanup error: %s", _exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    import asyncio
    os.makedirs(DB_PATH, exist_ok=True)
    _logger.info("OpenFreiplaner API starting, data directory %s", DB_PATH)
    cleanup_task = asyncio.create_task(_periodic_cleanup())
    yield
    cleanup_task.cancel()
    _logger.info("OpenFreiplaner API shutting down")


app = FastAPI(
    lifespan=lifespan,
    title="OpenFreiplaner API",
    description=(
        "REST API for the monthly day-off submission of store employees.\n\n"
        "## Scheduling lock\n"
        "Only one employee can plan at a time. A session is a lease that "
        "expires after the configured time limit without activity; send "
        "heartbeats while planning.\n\n"
        "## Admin\n"
        "Admin endpoints require the `x-admin-token` header.\n"
    ),
    version="1.0.0",
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "x-admin-token", "Authorization"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none';"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    # Only send HSTS if running in production (check env)
    if os.environ.get('OFP_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Translate Pydantic validation errors into German user-friendly messages."""
    _TYPE_MSGS = {
        "missing": "Pflichtfeld fehlt",
        "int_parsing": "Muss eine ganze Zahl sein",
        "bool_parsing": "Muss true oder false sein",
        "list_type": "Muss eine Liste sein",
        "string_too_short": "Eingabe zu kurz",
        "string_too_long": "Eingabe zu lang",
        "greater_than_equal": "Wert zu klein",
        "less_than_equal": "Wert zu groß",
        "type_error": "Falscher Datentyp",
    }
    errors = []
    for e in exc.errors():
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        etype = e.get("type", "")
        msg = _TYPE_MSGS.get(etype, e.get("msg", "Ungültiger Wert"))
        if field:
            errors.append(f"{field}: {msg}")
        else:
            errors.append(msg)
    detail = "; ".join(errors) if errors else "Ungültige Eingabe"
    return JSONResponse(status_code=422, content={"detail": detail})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    import traceback
    _logger.error(
        "Unhandled exception: %s %s | %s | %s",
        request.method, request.url.path,
        type(exc).__name__,
        traceback.format_exc().splitlines()[-1],
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Interner Serverfehler. Bitte versuche es erneut."},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    # Generate a short unique request ID for correlating log entries
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    entry = {
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "client": request.client.host if request.client else '-',
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    response.headers["X-Request-ID"] = req_id
    return response


# ── Include routers ─────────────────────────────────────────────
from .routers import scheduling, config, employees, admin, notifications, events  # noqa: E402

app.include_router(scheduling.router)
app.include_router(config.router)
app.include_router(employees.router)
app.include_router(admin.router)
app.include_router(notifications.router)
app.include_router(events.router)


# ── Routes ──────────────────────────────────────────────────────

_API_VERSION = "1.0.0"


@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description="Returns service status, API version, uptime in seconds, and data directory state.",
)
def health():
    """Health check endpoint, public."""
    import time as _t
    db_status = "connected"
    try:
        get_db().get_employees(include_hidden=True)
    except Exception as e:
        _logger.warning("Health check: data directory not readable: %s", e)
        db_status = "error"

    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_t.time() - _APP_START_TIME, 1),
        "db": {"status": db_status},
    }


@app.get(
    "/api/version",
    tags=["Health"],
    summary="API version",
    description="Returns the current API version string.",
)
def version():
    """Return current API version, public."""
    return {"version": _API_VERSION, "service": "OpenFreiplaner API"}


@app.get("/api", tags=["Health"], summary="API root", description="Returns basic service info.")
def root():
    return {"service": "OpenFreiplaner API", "version": _API_VERSION, "backend": "dbf"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=int(os.environ.get('OFP_PORT', '8000')))
