"""
Exclusive scheduling lock.

At most one session is active system-wide. A session is a lease: it lapses
when no activity was recorded for its lease length and is then expired the
next time anyone looks at it (acquire, heartbeat, busy check or the periodic
sweep). Acquisition is a single exclusive transaction on the session table,
see OffDatabase.acquire_session.

    active ──complete/release──▶ completed
       └────lapse/force-end───▶ expired
"""
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional

from .clock import Clock, SystemClock
from .errors import (
    SessionExpiredError, SessionNotFoundError, SessionOwnershipError,
    SystemBusyError, SystemClosedError,
)
from .models import (
    SESSION_COMPLETED, SESSION_EXPIRED, Period, ScheduleConfig, ScheduleSession,
    format_remaining,
)

_log = logging.getLogger(__name__)

STATUS_CLOSED = 'closed'
STATUS_BUSY = 'busy'
STATUS_AVAILABLE = 'available'


@dataclass
class SystemOpenStatus:
    is_open: bool
    reason: str
    open_at: datetime
    close_at: datetime
    time_limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_open': self.is_open,
            'reason': self.reason,
            'open_at': self.open_at.isoformat(),
            'close_at': self.close_at.isoformat(),
            'time_limit': self.time_limit,
        }


@dataclass
class BusyStatus:
    is_busy: bool
    session: Optional[ScheduleSession] = None
    remaining_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {'is_busy': self.is_busy, 'session': None}
        if self.session is not None:
            data['session'] = {
                'id': self.session.id,
                'employee_id': self.session.employee_id,
                'employee_name': self.session.employee_name,
                'remaining_seconds': self.remaining_seconds,
                'remaining_formatted': format_remaining(self.remaining_seconds),
            }
        return data


@dataclass
class TimeoutStatus:
    is_timeout: bool
    reason: str
    remaining_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_timeout': self.is_timeout,
            'reason': self.reason,
            'remaining_seconds': self.remaining_seconds,
            'remaining_formatted': format_remaining(self.remaining_seconds),
        }


def close_reason(config: ScheduleConfig, now: datetime) -> Optional[str]:
    """Why the window of *config* is closed at *now*, or None if it is open."""
    opens, closes = config.system_open_at, config.system_close_at
    if closes <= opens:
        return "Konfigurationsfehler: Schließzeit liegt vor der Öffnungszeit"
    if now < opens:
        days = math.ceil((opens - now).total_seconds() / 86400)
        return (f"Die Planung für {config.period} öffnet am {opens:%d.%m.%Y um %H:%M} "
                f"(in {days} {'Tag' if days == 1 else 'Tagen'})")
    if now >= closes:
        return f"Die Planung für {config.period} wurde am {closes:%d.%m.%Y um %H:%M} geschlossen"
    return None


class SessionController:
    def __init__(self, db, clock: Clock = None):
        self.db = db
        self.clock = clock or SystemClock()

    def now(self) -> datetime:
        return self.clock.now()

    # ── Opening window ─────────────────────────────────────────
    def is_system_open(self, period: Period) -> SystemOpenStatus:
        config = self.db.get_or_create_config(period)
        reason = close_reason(config, self.now())
        return SystemOpenStatus(
            is_open=reason is None,
            reason=reason or 'Das System ist geöffnet',
            open_at=config.system_open_at,
            close_at=config.system_close_at,
            time_limit=config.session_time_limit,
        )

    # ── Lock state ─────────────────────────────────────────────
    def cleanup_timeout_sessions(self) -> int:
        """Expire every lapsed lease; returns how many were expired."""
        expired = self.db.expire_lapsed_sessions(self.now())
        for s in expired:
            _log.info("Session %s of %s (%s) timed out", s.id, s.employee_name, s.employee_id)
        return len(expired)

    def is_system_busy(self) -> BusyStatus:
        self.cleanup_timeout_sessions()
        active = self.db.get_active_session()
        if active is None:
            return BusyStatus(is_busy=False)
        return BusyStatus(is_busy=True, session=active,
                          remaining_seconds=active.remaining_seconds(self.now()))

    def start_session(self, employee_id: int, employee_name: str, period: Period) -> ScheduleSession:
        """Acquire the lock for one employee.

        Raises SystemClosedError outside the opening window and
        SystemBusyError while another unlapsed session is active.
        """
        open_status = self.is_system_open(period)
        if not open_status.is_open:
            raise SystemClosedError(open_status.reason)

        employee = self.db.require_employee(employee_id)
        if not employee.name and employee_name:
            employee = replace(employee, name=employee_name)
        lease = open_status.time_limit * 60
        now = self.now()
        session, holder = self.db.acquire_session(employee, period, lease, now)
        if holder is not None:
            raise SystemBusyError(holder.employee_name, holder.employee_id,
                                  holder.remaining_seconds(now))
        _log.info("Session %s started by %s (%s) for %s", session.id, employee.name,
                  employee.id, period)
        return session

    def _check_owner(self, session_id: int, employee_id: Optional[int]) -> None:
        if employee_id is None:
            return
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.employee_id != employee_id:
            raise SessionOwnershipError(session_id, employee_id)

    def update_activity(self, session_id: int, employee_id: Optional[int] = None) -> ScheduleSession:
        """Heartbeat: extend the lease of an active session."""
        self._check_owner(session_id, employee_id)
        session = self.db.touch_session(session_id, self.now())
        if not session.is_active:
            raise SessionExpiredError(session_id, session.status)
        return session

    def check_timeout(self, session_id: int) -> TimeoutStatus:
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.is_active:
            return TimeoutStatus(True, f"Sitzung ist beendet ({session.status})")
        now = self.now()
        if session.is_lapsed(now):
            self.db.end_session(session_id, SESSION_EXPIRED, 'timeout', now)
            _log.info("Session %s timed out on check", session_id)
            return TimeoutStatus(True, 'Zeitlimit überschritten')
        remaining = session.remaining_seconds(now)
        return TimeoutStatus(False, f"Noch {format_remaining(remaining)} verbleibend", remaining)

    def require_owner(self, session_id: int, employee_id: int) -> ScheduleSession:
        """Return the session if it is active, unlapsed and held by *employee_id*."""
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.employee_id != employee_id:
            raise SessionOwnershipError(session_id, employee_id)
        if not session.is_active:
            raise SessionExpiredError(session_id, session.status)
        now = self.now()
        if session.is_lapsed(now):
            self.db.end_session(session_id, SESSION_EXPIRED, 'timeout', now)
            raise SessionExpiredError(session_id, SESSION_EXPIRED)
        return session

    def complete_session(self, session_id: int, employee_id: Optional[int] = None) -> ScheduleSession:
        """End a session normally. A lapsed lease is stored as expired and raises."""
        self._check_owner(session_id, employee_id)
        session, changed = self.db.end_session(session_id, SESSION_COMPLETED, 'completed',
                                               self.now(), expire_lapsed=True)
        if not changed:
            raise SessionExpiredError(session_id, session.status)
        _log.info("Session %s completed", session_id)
        return session

    def release_session(self, session_id: int, reason: str = 'released') -> bool:
        """Give the lock back without error if it is already gone."""
        try:
            _, changed = self.db.end_session(session_id, SESSION_COMPLETED, reason, self.now())
        except SessionNotFoundError:
            return False
        if changed:
            _log.info("Session %s released (%s)", session_id, reason)
        return changed

    def force_end_all_sessions(self, reason: str = 'admin_force_end') -> int:
        ended = self.db.expire_all_active(self.now(), reason)
        for s in ended:
            _log.warning("AUDIT session %s of %s (%s) force-ended: %s",
                         s.id, s.employee_name, s.employee_id, reason)
        return len(ended)

    def get_system_status(self, period: Period) -> Dict[str, Any]:
        open_status = self.is_system_open(period)
        busy = self.is_system_busy()
        if not open_status.is_open:
            status = STATUS_CLOSED
        elif busy.is_busy:
            status = STATUS_BUSY
        else:
            status = STATUS_AVAILABLE
        return {
            'status': status,
            'is_open': open_status.is_open,
            'is_busy': busy.is_busy,
            'can_access': open_status.is_open and not busy.is_busy,
            'open': open_status.to_dict(),
            'busy': busy.to_dict(),
        }
