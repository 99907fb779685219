"""
Shared test fixtures for OpenFreiplaner backend tests.
"""
import os
import sys
from datetime import date, datetime, timedelta, timezone
import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from offlib.clock import Clock  # noqa: E402
from offlib.database import OffDatabase  # noqa: E402
from offlib.models import Period  # noqa: E402
from offlib.notify import NotificationSink  # noqa: E402
from offlib.rules import RuleEngine  # noqa: E402
from offlib.session_lock import SessionController  # noqa: E402
from offlib.workflow import SubmissionWorkflow  # noqa: E402

ADMIN_TOKEN = 'test-admin-token'

# Inside the default window of August 2025 (16th 02:00 → 21st 02:00 UTC)
WINDOW_NOW = datetime(2025, 8, 17, 10, 0, tzinfo=timezone.utc)
AUGUST = Period(2025, 8)


class FakeClock(Clock):
    """Manually advanced clock for lease tests."""

    def __init__(self, start: datetime = WINDOW_NOW):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


class RecordingSink(NotificationSink):
    """Collects notifications instead of delivering them."""

    def __init__(self):
        self.calls = []

    def notify_completed(self, summary):
        self.calls.append(('completed', summary))

    def notify_conflict(self, details):
        self.calls.append(('conflict', details))

    def notify_deadline_approaching(self, period, deadline, hours_left, pending_employees):
        self.calls.append(('deadline', {'period': period, 'deadline': deadline,
                                        'hours_left': hours_left, 'pending': pending_employees}))

    def notify_statistics_report(self, period, statistics):
        self.calls.append(('statistics', {'period': period, 'statistics': statistics}))

    def kinds(self):
        return [k for k, _ in self.calls]


def d(day: int) -> date:
    """A day of August 2025."""
    return date(2025, 8, day)


def iso(*days: int) -> list:
    return [d(x).isoformat() for x in days]


# ── Core fixtures ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv('OFP_TIMEZONE', raising=False)
    monkeypatch.setenv('OFP_ADMIN_TOKEN', ADMIN_TOKEN)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def db(data_dir):
    return OffDatabase(data_dir)


@pytest.fixture
def staff(db):
    """A small chain: two stores plus one standby pool."""
    return {
        'anna': db.create_employee('Anna Amsel', 'regular', 'Mitte'),
        'ben': db.create_employee('Ben Berg', 'regular', 'Nord'),
        'clara': db.create_employee('Clara Clausen', 'part_time', 'Mitte'),
        'dirk': db.create_employee('Dirk Dorn', 'standby', 'Springer'),
        'eva': db.create_employee('Eva Engel', 'part_time', 'Nord'),
        'finn': db.create_employee('Finn Fuchs', 'standby', 'Süd'),
        'greta': db.create_employee('Greta Gans', 'regular', 'Süd'),
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def controller(db, clock):
    return SessionController(db, clock)


@pytest.fixture
def engine(db):
    return RuleEngine(db)


@pytest.fixture
def workflow(db, controller, engine, sink):
    return SubmissionWorkflow(db, controller, engine, sink)


def commit(db, employee, days, clock=None):
    """Write a committed schedule directly, bypassing the lock."""
    now = clock.now() if clock else WINDOW_NOW
    return db.upsert_schedule(employee, AUGUST, [d(x) for x in days], now)


# ── API fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture
def app(data_dir, clock, monkeypatch):
    """The FastAPI app pointed at a fresh data directory and the fake clock."""
    import api.main as main_module
    from api.dependencies import get_clock, limiter
    monkeypatch.setattr(main_module, 'DB_PATH', data_dir)
    limiter.reset()
    main_module.app.dependency_overrides[get_clock] = lambda: clock
    yield main_module.app
    main_module.app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def admin_headers():
    return {'x-admin-token': ADMIN_TOKEN}
