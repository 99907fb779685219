"""
High-level database access for OpenFreiplaner .DBF files.

Owns the config store, the schedule store and the session table. Tables are
created on first use from offlib/schema.py.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .clock import from_epoch, to_epoch
from .dbf_reader import read_dbf
from .dbf_writer import create_table, locked_table
from .errors import EmployeeNotFoundError, SessionNotFoundError
from .models import (
    EXCEPTION_FORBIDDEN, EXCEPTION_HOLIDAY, POSITION_PART_TIME, POSITION_REGULAR,
    POSITION_STANDBY, SESSION_ACTIVE, SESSION_EXPIRED, STATUS_COMPLETED,
    EmployeeRef, OffEntry, Period, PeriodSnapshot, Schedule, ScheduleConfig,
    ScheduleSession, WEEKEND_WEEKDAYS, normalize_position,
)
from .schema import TABLES

_log = logging.getLogger(__name__)

# ── Global cross-request DBF cache ──────────────────────────────
# Maps (db_path, table_name) → ((mtime_ns, size), data)
_GLOBAL_DBF_CACHE: Dict[tuple, tuple] = {}

_VALIDATIONS_LOCK = threading.Lock()


def _parse_iso(value: str) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value)


class OffDatabase:
    def __init__(self, db_path: str, timezone: str = 'UTC'):
        self.db_path = db_path
        self.timezone = timezone

    def _table(self, name: str) -> str:
        """Path of a table; creates the directory and an empty table if missing."""
        path = os.path.join(self.db_path, f"{name}.DBF")
        if not os.path.exists(path):
            os.makedirs(self.db_path, exist_ok=True)
            if create_table(path, TABLES[name]):
                _log.info("Created table %s", path)
        return path

    def _read(self, name: str) -> List[Dict[str, Any]]:
        """Read a table through the global cache.

        The cache key includes the file size as well as mtime_ns, since two
        appends inside one mtime tick leave mtime unchanged.
        """
        path = self._table(name)
        key = (self.db_path, name)
        try:
            st = os.stat(path)
            stamp = (st.st_mtime_ns, st.st_size)
        except OSError:
            stamp = (0, 0)

        cached = _GLOBAL_DBF_CACHE.get(key)
        if cached is not None and cached[0] == stamp:
            return cached[1]

        data = read_dbf(path)
        _GLOBAL_DBF_CACHE[key] = (stamp, data)
        return data

    def _invalidate_cache(self, name: str) -> None:
        _GLOBAL_DBF_CACHE.pop((self.db_path, name), None)

    @contextmanager
    def _write(self, name: str):
        """Exclusive transaction on one table; the cache is dropped afterwards."""
        try:
            with locked_table(self._table(name)) as table:
                yield table
        finally:
            self._invalidate_cache(name)

    # ── Employees ──────────────────────────────────────────────
    @staticmethod
    def _employee_from_row(r: Dict) -> EmployeeRef:
        return EmployeeRef(
            id=r.get('ID', 0),
            name=r.get('NAME', ''),
            position=normalize_position(r.get('POSITION')),
            store=(r.get('STORE') or '').strip(),
            hidden=bool(r.get('HIDE')),
        )

    def get_employees(self, include_hidden: bool = False) -> List[EmployeeRef]:
        result = [self._employee_from_row(r) for r in self._read('OFEMPL')]
        if not include_hidden:
            result = [e for e in result if not e.hidden]
        result.sort(key=lambda e: (e.name.lower(), e.id))
        return result

    def get_employee(self, emp_id: int) -> Optional[EmployeeRef]:
        for r in self._read('OFEMPL'):
            if r.get('ID') == emp_id:
                return self._employee_from_row(r)
        return None

    def require_employee(self, emp_id: int) -> EmployeeRef:
        emp = self.get_employee(emp_id)
        if emp is None:
            raise EmployeeNotFoundError(emp_id)
        return emp

    def create_employee(self, name: str, position: str = POSITION_REGULAR,
                        store: str = '', hidden: bool = False) -> EmployeeRef:
        position = normalize_position(position)
        with self._write('OFEMPL') as t:
            new_id = t.next_id()
            t.append({'ID': new_id, 'NAME': name, 'POSITION': position,
                      'STORE': store, 'HIDE': hidden})
        return EmployeeRef(id=new_id, name=name, position=position, store=store, hidden=hidden)

    # ── Config store ───────────────────────────────────────────
    def _calendar_rows(self, period: Period) -> List[Dict]:
        return [
            r for r in self._read('OFCALX')
            if r.get('YEAR') == period.year and r.get('MONTH') == period.month
        ]

    def _config_from_row(self, row: Dict, period: Period) -> ScheduleConfig:
        zone = ZoneInfo(self.timezone)
        config = ScheduleConfig(
            id=row.get('ID'),
            period=period,
            max_off_days_per_person=row.get('MAXPERSON', 0),
            max_off_days_per_day=row.get('MAXDAY', 0),
            max_weekend_off_days=row.get('MAXWEEKEND', 0),
            max_store_off_days_per_day=row.get('MAXSTORE', 0),
            max_part_time_off_days=row.get('MAXPARTTM', 0),
            max_standby_off_days=row.get('MAXSTANDBY', 0),
            system_open_at=from_epoch(row.get('OPENAT')).astimezone(zone),
            system_close_at=from_epoch(row.get('CLOSEAT')).astimezone(zone),
            session_time_limit=row.get('TIMELIMIT', 0),
            is_active=bool(row.get('ACTIVE')),
        )
        for r in self._calendar_rows(period):
            d = _parse_iso(r.get('DATE'))
            if d is None:
                continue
            store = r.get('STORE', '')
            kind = r.get('KIND', '')
            if kind == EXCEPTION_HOLIDAY:
                target = config.store_holiday_dates.setdefault(store, set()) if store else config.holiday_dates
            elif kind == EXCEPTION_FORBIDDEN:
                target = config.store_forbidden_dates.setdefault(store, set()) if store else config.forbidden_dates
            else:
                _log.warning("Unknown calendar exception kind %r in OFCALX row %s", kind, r.get('ID'))
                continue
            target.add(d)
        return config

    @staticmethod
    def _config_row(config: ScheduleConfig, new_id: int, created: datetime) -> Dict:
        return {
            'ID': new_id,
            'YEAR': config.period.year,
            'MONTH': config.period.month,
            'MAXPERSON': config.max_off_days_per_person,
            'MAXDAY': config.max_off_days_per_day,
            'MAXWEEKEND': config.max_weekend_off_days,
            'MAXSTORE': config.max_store_off_days_per_day,
            'MAXPARTTM': config.max_part_time_off_days,
            'MAXSTANDBY': config.max_standby_off_days,
            'OPENAT': to_epoch(config.system_open_at),
            'CLOSEAT': to_epoch(config.system_close_at),
            'TIMELIMIT': config.session_time_limit,
            'ACTIVE': True,
            'CREATED': to_epoch(created),
        }

    @staticmethod
    def _active_config_row(rows: Iterable[Dict], period: Period) -> Optional[Dict]:
        active = [
            r for r in rows
            if r.get('YEAR') == period.year and r.get('MONTH') == period.month and r.get('ACTIVE')
        ]
        if not active:
            return None
        return max(active, key=lambda r: r.get('ID', 0))

    def get_config(self, period: Period) -> Optional[ScheduleConfig]:
        """Active config of a period, or None if the period was never accessed."""
        row = self._active_config_row(self._read('OFCONF'), period)
        return self._config_from_row(row, period) if row else None

    def get_or_create_config(self, period: Period) -> ScheduleConfig:
        """Return the active config, provisioning defaults on first access."""
        config = self.get_config(period)
        if config is not None:
            return config
        with self._write('OFCONF') as t:
            # Re-check under the lock: another worker may have provisioned it
            row = self._active_config_row((rec for _, rec in t.rows()), period)
            if row is None:
                config = ScheduleConfig.default(period, self.timezone)
                row = self._config_row(config, t.next_id(), datetime.now(ZoneInfo('UTC')))
                t.append(row)
                _log.info("Provisioned default config for %s", period)
        return self._config_from_row(row, period)

    def save_config(self, config: ScheduleConfig) -> ScheduleConfig:
        """Supersede the active config of config.period with *config*.

        The previous row is kept with ACTIVE = F. Calendar exceptions of the
        period are replaced by the sets carried on *config*.

        Both tables stay locked for the whole call, OFCONF first. The
        exceptions are written before the config row is superseded, so a
        failure while writing them leaves the previous config active.
        """
        period = config.period
        exceptions = list(self._iter_exceptions(config))
        with self._write('OFCONF') as conf, self._write('OFCALX') as calx:
            for idx, _ in calx.rows(YEAR=period.year, MONTH=period.month):
                calx.delete(idx)
            next_id = calx.next_id()
            for kind, store, d in exceptions:
                calx.append({'ID': next_id, 'YEAR': period.year, 'MONTH': period.month,
                             'DATE': d.isoformat(), 'STORE': store, 'KIND': kind, 'NOTE': ''})
                next_id += 1

            for idx, _ in conf.rows(YEAR=period.year, MONTH=period.month, ACTIVE=True):
                conf.update(idx, {'ACTIVE': False})
            conf.append(self._config_row(config, conf.next_id(), datetime.now(ZoneInfo('UTC'))))
        return self.get_config(period)

    @staticmethod
    def _iter_exceptions(config: ScheduleConfig):
        for d in sorted(config.holiday_dates):
            yield EXCEPTION_HOLIDAY, '', d
        for d in sorted(config.forbidden_dates):
            yield EXCEPTION_FORBIDDEN, '', d
        for store, dates in sorted(config.store_holiday_dates.items()):
            for d in sorted(dates):
                yield EXCEPTION_HOLIDAY, store, d
        for store, dates in sorted(config.store_forbidden_dates.items()):
            for d in sorted(dates):
                yield EXCEPTION_FORBIDDEN, store, d

    def add_calendar_exception(self, period: Period, day: date, kind: str,
                               store: str = '', note: str = '') -> ScheduleConfig:
        if kind not in (EXCEPTION_HOLIDAY, EXCEPTION_FORBIDDEN):
            raise ValueError(f"Unbekannte Ausnahmeart: {kind}")
        if not period.contains(day):
            raise ValueError(f"Datum {day.isoformat()} liegt nicht im Zeitraum {period}")
        self.get_or_create_config(period)
        with self._write('OFCALX') as t:
            existing = t.rows(YEAR=period.year, MONTH=period.month,
                              DATE=day.isoformat(), STORE=store, KIND=kind)
            if not existing:
                t.append({'ID': t.next_id(), 'YEAR': period.year, 'MONTH': period.month,
                          'DATE': day.isoformat(), 'STORE': store, 'KIND': kind, 'NOTE': note})
        return self.get_config(period)

    def remove_calendar_exception(self, period: Period, day: date, kind: str,
                                  store: str = '') -> bool:
        removed = 0
        with self._write('OFCALX') as t:
            for idx, _ in t.rows(YEAR=period.year, MONTH=period.month,
                                 DATE=day.isoformat(), STORE=store, KIND=kind):
                if t.delete(idx):
                    removed += 1
        return removed > 0

    # ── Validation snapshots (sidecar JSON) ────────────────────
    def _validations_path(self) -> str:
        return os.path.join(self.db_path, 'schedule_validations.json')

    def _load_validations(self) -> Dict[str, Dict]:
        """Load {schedule_id_str: validation_result_dict} from sidecar JSON."""
        path = self._validations_path()
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            _log.warning("Could not read %s: %s", path, e)
            return {}

    def _save_validations(self, data: Dict[str, Dict]) -> None:
        path = self._validations_path()
        fd, tmp = tempfile.mkstemp(dir=self.db_path, prefix='.validations-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ── Schedule store ─────────────────────────────────────────
    def _off_dates_by_schedule(self, period: Period) -> Dict[int, List[date]]:
        result: Dict[int, List[date]] = {}
        for r in self._read('OFOFFD'):
            if r.get('YEAR') != period.year or r.get('MONTH') != period.month:
                continue
            d = _parse_iso(r.get('DATE'))
            if d is not None:
                result.setdefault(r.get('SCHEDID'), []).append(d)
        return result

    @staticmethod
    def _schedule_from_row(r: Dict, period: Period, off_dates: List[date],
                           validations: Dict[str, Dict]) -> Schedule:
        return Schedule(
            id=r.get('ID'),
            employee_id=r.get('EMPLOYEEID', 0),
            employee_name=r.get('EMPNAME', ''),
            period=period,
            off_dates=sorted(off_dates),
            status=r.get('STATUS') or STATUS_COMPLETED,
            is_valid=bool(r.get('VALID')),
            validation=validations.get(str(r.get('ID'))),
            started_at=from_epoch(r.get('STARTED')),
            updated_at=from_epoch(r.get('UPDATED')),
            session_id=r.get('SESSIONID') or None,
        )

    def get_period_schedules(self, period: Period) -> List[Schedule]:
        off_dates = self._off_dates_by_schedule(period)
        validations = self._load_validations()
        return [
            self._schedule_from_row(r, period, off_dates.get(r.get('ID'), []), validations)
            for r in self._read('OFSCHD')
            if r.get('YEAR') == period.year and r.get('MONTH') == period.month
        ]

    def find_schedule(self, employee_id: int, period: Period) -> Optional[Schedule]:
        for s in self.get_period_schedules(period):
            if s.employee_id == employee_id:
                return s
        return None

    def get_period_snapshot(self, period: Period) -> PeriodSnapshot:
        """Committed off-days of *period*, joined with the employees' store and position."""
        employees = {e.id: e for e in self.get_employees(include_hidden=True)}
        entries = set()
        names = {}
        for r in self._read('OFOFFD'):
            if r.get('YEAR') != period.year or r.get('MONTH') != period.month:
                continue
            d = _parse_iso(r.get('DATE'))
            if d is None:
                continue
            eid = r.get('EMPLOYEEID')
            emp = employees.get(eid)
            entries.add(OffEntry(
                employee_id=eid,
                store=emp.store if emp else '',
                position=emp.position if emp else '',
                day=d,
            ))
            names[eid] = emp.name if emp else f"#{eid}"
        return PeriodSnapshot(period=period, entries=frozenset(entries), names=names)

    def count_off_by_day(self, period: Period, day: date, exclude: Optional[int] = None) -> int:
        return self.get_period_snapshot(period).count_off(day, exclude=exclude)

    def count_off_by_store(self, period: Period, day: date, store: str,
                           exclude: Optional[int] = None) -> int:
        return self.get_period_snapshot(period).count_off(day, exclude=exclude, store=store)

    def count_off_by_position(self, period: Period, day: date, position: str,
                              exclude: Optional[int] = None) -> int:
        return self.get_period_snapshot(period).count_off(day, exclude=exclude, position=position)

    def upsert_schedule(self, employee: EmployeeRef, period: Period, off_dates: List[date],
                        now: datetime, status: str = STATUS_COMPLETED, is_valid: bool = True,
                        validation: Optional[Dict] = None,
                        session_id: Optional[int] = None) -> Schedule:
        """Write the schedule header and replace its off-date rows.

        Lock order is always OFSCHD then OFOFFD.
        """
        off_dates = sorted(set(off_dates))
        weekend = sum(1 for d in off_dates if d.weekday() in WEEKEND_WEEKDAYS)
        header = {
            'EMPNAME': employee.name,
            'TOTAL': len(off_dates),
            'WEEKEND': weekend,
            'STATUS': status,
            'UPDATED': to_epoch(now),
            'VALID': is_valid,
            'SESSIONID': session_id or 0,
        }
        with self._write('OFSCHD') as sched:
            existing = sched.rows(EMPLOYEEID=employee.id, YEAR=period.year, MONTH=period.month)
            if existing:
                idx, row = existing[0]
                sched_id = row['ID']
                sched.update(idx, header)
            else:
                sched_id = sched.next_id()
                sched.append(dict(header, ID=sched_id, EMPLOYEEID=employee.id,
                                  YEAR=period.year, MONTH=period.month, STARTED=to_epoch(now)))

            with self._write('OFOFFD') as offd:
                for idx, _ in offd.rows(SCHEDID=sched_id):
                    offd.delete(idx)
                next_id = offd.next_id()
                for d in off_dates:
                    offd.append({'ID': next_id, 'SCHEDID': sched_id, 'EMPLOYEEID': employee.id,
                                 'YEAR': period.year, 'MONTH': period.month,
                                 'DATE': d.isoformat()})
                    next_id += 1

        if validation is not None:
            with _VALIDATIONS_LOCK:
                data = self._load_validations()
                data[str(sched_id)] = validation
                self._save_validations(data)

        return self.find_schedule(employee.id, period)

    def get_schedule_conflicts(self, period: Period, config: ScheduleConfig) -> List[Dict]:
        """
        Detect days where committed data exceeds a cap:
          - too_many_off: more employees off than max_off_days_per_day
          - store_conflict: one store over max_store_off_days_per_day
          - position_conflict: part-time / standby over their caps
        Returns list of dicts with keys: type, date, count, limit, employees (+ store / position)
        """
        snapshot = self.get_period_snapshot(period)
        by_day: Dict[date, List[OffEntry]] = {}
        for e in snapshot.entries:
            by_day.setdefault(e.day, []).append(e)

        def _names(entries):
            return sorted(snapshot.names.get(e.employee_id, '') for e in entries)

        conflicts = []
        for day in sorted(by_day):
            entries = by_day[day]
            if len(entries) > config.max_off_days_per_day:
                conflicts.append({'type': 'too_many_off', 'date': day.isoformat(),
                                  'count': len(entries), 'limit': config.max_off_days_per_day,
                                  'employees': _names(entries)})
            stores: Dict[str, List[OffEntry]] = {}
            for e in entries:
                if e.store:
                    stores.setdefault(e.store, []).append(e)
            for store, group in sorted(stores.items()):
                if len(group) > config.max_store_off_days_per_day:
                    conflicts.append({'type': 'store_conflict', 'date': day.isoformat(),
                                      'store': store, 'count': len(group),
                                      'limit': config.max_store_off_days_per_day,
                                      'employees': _names(group)})
            caps = {POSITION_PART_TIME: config.max_part_time_off_days,
                    POSITION_STANDBY: config.max_standby_off_days}
            for position, cap in caps.items():
                group = [e for e in entries if e.position == position]
                if len(group) > cap:
                    conflicts.append({'type': 'position_conflict', 'date': day.isoformat(),
                                      'position': position, 'count': len(group), 'limit': cap,
                                      'employees': _names(group)})
        return conflicts

    # ── Sessions ───────────────────────────────────────────────
    @staticmethod
    def _session_from_row(r: Dict) -> ScheduleSession:
        return ScheduleSession(
            id=r.get('ID'),
            employee_id=r.get('EMPLOYEEID', 0),
            employee_name=r.get('EMPNAME', ''),
            period=Period(r.get('YEAR'), r.get('MONTH')),
            status=r.get('STATUS', ''),
            start_time=from_epoch(r.get('STARTED')),
            last_activity=from_epoch(r.get('LASTACT')),
            lease_seconds=r.get('LEASE', 0),
            end_time=from_epoch(r.get('ENDED')),
            end_reason=r.get('REASON', ''),
        )

    def get_session(self, session_id: int) -> Optional[ScheduleSession]:
        for r in self._read('OFSESS'):
            if r.get('ID') == session_id:
                return self._session_from_row(r)
        return None

    def get_sessions(self, status: Optional[str] = None) -> List[ScheduleSession]:
        rows = self._read('OFSESS')
        if status is not None:
            rows = [r for r in rows if r.get('STATUS') == status]
        return [self._session_from_row(r) for r in rows]

    def get_active_session(self) -> Optional[ScheduleSession]:
        """The active row as stored; lapsed leases are not expired here."""
        active = self.get_sessions(status=SESSION_ACTIVE)
        return active[0] if active else None

    @staticmethod
    def _expire_row(t, idx: int, now: datetime, reason: str) -> ScheduleSession:
        rec = t.update(idx, {'STATUS': SESSION_EXPIRED, 'ENDED': to_epoch(now), 'REASON': reason})
        return OffDatabase._session_from_row(rec)

    def acquire_session(self, employee: EmployeeRef, period: Period, lease_seconds: int,
                        now: datetime) -> Tuple[Optional[ScheduleSession], Optional[ScheduleSession]]:
        """Insert a new active session unless one is already active.

        Runs as one exclusive transaction on OFSESS: lapsed leases are expired,
        the table is scanned for an active row and the new row is appended only
        if none remains. Returns (new_session, None) or (None, holder).
        """
        with self._write('OFSESS') as t:
            for idx, rec in t.rows(STATUS=SESSION_ACTIVE):
                current = self._session_from_row(rec)
                if current.is_lapsed(now):
                    self._expire_row(t, idx, now, 'timeout')
                    _log.info("Session %s of employee %s expired (lease lapsed)",
                              current.id, current.employee_id)
                else:
                    return None, current

            new_id = t.next_id()
            t.append({
                'ID': new_id,
                'EMPLOYEEID': employee.id,
                'EMPNAME': employee.name,
                'YEAR': period.year,
                'MONTH': period.month,
                'STATUS': SESSION_ACTIVE,
                'STARTED': to_epoch(now),
                'LASTACT': to_epoch(now),
                'ENDED': 0,
                'LEASE': lease_seconds,
                'REASON': '',
            })
        return ScheduleSession(
            id=new_id, employee_id=employee.id, employee_name=employee.name, period=period,
            status=SESSION_ACTIVE, start_time=now, last_activity=now, lease_seconds=lease_seconds,
        ), None

    def expire_lapsed_sessions(self, now: datetime) -> List[ScheduleSession]:
        expired = []
        with self._write('OFSESS') as t:
            for idx, rec in t.rows(STATUS=SESSION_ACTIVE):
                if self._session_from_row(rec).is_lapsed(now):
                    expired.append(self._expire_row(t, idx, now, 'timeout'))
        return expired

    def expire_all_active(self, now: datetime, reason: str) -> List[ScheduleSession]:
        expired = []
        with self._write('OFSESS') as t:
            for idx, _ in t.rows(STATUS=SESSION_ACTIVE):
                expired.append(self._expire_row(t, idx, now, reason))
        return expired

    def touch_session(self, session_id: int, now: datetime) -> ScheduleSession:
        """Bump LASTACT of an active, unlapsed session.

        Returns the session as stored after the call; callers inspect its
        status to tell a successful heartbeat from a lapsed lease.
        Raises SessionNotFoundError for unknown ids.
        """
        with self._write('OFSESS') as t:
            found = t.rows(ID=session_id)
            if not found:
                raise SessionNotFoundError(session_id)
            idx, rec = found[0]
            session = self._session_from_row(rec)
            if not session.is_active:
                return session
            if session.is_lapsed(now):
                return self._expire_row(t, idx, now, 'timeout')
            return self._session_from_row(t.update(idx, {'LASTACT': to_epoch(now)}))

    def end_session(self, session_id: int, status: str, reason: str, now: datetime,
                    expire_lapsed: bool = False) -> Tuple[ScheduleSession, bool]:
        """Move an active session to *status*.

        Returns (session, changed); changed is False when the session had
        already left the active state. With expire_lapsed, a lapsed lease is
        stored as expired (reason 'timeout') instead and changed is False.
        """
        with self._write('OFSESS') as t:
            found = t.rows(ID=session_id)
            if not found:
                raise SessionNotFoundError(session_id)
            idx, rec = found[0]
            if rec.get('STATUS') != SESSION_ACTIVE:
                return self._session_from_row(rec), False
            if expire_lapsed and self._session_from_row(rec).is_lapsed(now):
                return self._expire_row(t, idx, now, 'timeout'), False
            rec = t.update(idx, {'STATUS': status, 'ENDED': to_epoch(now), 'REASON': reason})
            return self._session_from_row(rec), True
