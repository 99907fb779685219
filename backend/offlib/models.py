"""
Domain records for the day-off scheduling core.

Storage rows (dicts with upper-case DBF field names) are converted to these
records at the database boundary; everything above offlib/database.py works
with the records only.
"""
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Set
from zoneinfo import ZoneInfo

POSITION_REGULAR = 'regular'
POSITION_PART_TIME = 'part_time'
POSITION_STANDBY = 'standby'

STATUS_PENDING = 'pending'
STATUS_IN_PROGRESS = 'in_progress'
STATUS_COMPLETED = 'completed'

SESSION_ACTIVE = 'active'
SESSION_COMPLETED = 'completed'
SESSION_EXPIRED = 'expired'

EXCEPTION_HOLIDAY = 'holiday'
EXCEPTION_FORBIDDEN = 'forbidden'

def normalize_position(value: Optional[str]) -> str:
    """Canonical position key: lower case, '-' and spaces as '_'."""
    key = '_'.join((value or '').strip().lower().replace('-', ' ').split())
    return key or POSITION_REGULAR


# Friday, Saturday, Sunday in date.weekday() numbering (Mon=0)
WEEKEND_WEEKDAYS = frozenset({4, 5, 6})

# Limits applied when a period is first accessed
DEFAULT_LIMITS = {
    'max_off_days_per_person': 8,
    'max_off_days_per_day': 2,
    'max_weekend_off_days': 3,
    'max_store_off_days_per_day': 1,
    'max_part_time_off_days': 1,
    'max_standby_off_days': 1,
}
DEFAULT_SESSION_MINUTES = 5
DEFAULT_OPEN_DAY = 16
DEFAULT_CLOSE_DAY = 21
DEFAULT_WINDOW_HOUR = 2


@dataclass(frozen=True, order=True)
class Period:
    year: int
    month: int

    def __post_init__(self):
        if not 2000 <= self.year <= 2100:
            raise ValueError(f"Ungültiges Jahr: {self.year} (erlaubt 2000–2100)")
        if not 1 <= self.month <= 12:
            raise ValueError(f"Ungültiger Monat: {self.month} (erlaubt 1–12)")

    @property
    def days_in_month(self) -> int:
        return calendar.monthrange(self.year, self.month)[1]

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def contains(self, d: date) -> bool:
        return d.year == self.year and d.month == self.month

    def iter_dates(self):
        for day in range(1, self.days_in_month + 1):
            yield date(self.year, self.month, day)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class EmployeeRef:
    id: int
    name: str
    position: str = POSITION_REGULAR
    store: str = ''
    hidden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'position': self.position,
            'store': self.store,
            'hidden': self.hidden,
        }


@dataclass
class ScheduleConfig:
    period: Period
    max_off_days_per_person: int
    max_off_days_per_day: int
    max_weekend_off_days: int
    max_store_off_days_per_day: int
    max_part_time_off_days: int
    max_standby_off_days: int
    system_open_at: datetime
    system_close_at: datetime
    session_time_limit: int = DEFAULT_SESSION_MINUTES
    holiday_dates: Set[date] = field(default_factory=set)
    forbidden_dates: Set[date] = field(default_factory=set)
    store_holiday_dates: Dict[str, Set[date]] = field(default_factory=dict)
    store_forbidden_dates: Dict[str, Set[date]] = field(default_factory=dict)
    id: Optional[int] = None
    is_active: bool = True

    @classmethod
    def default(cls, period: Period, tz: str = 'UTC') -> 'ScheduleConfig':
        zone = ZoneInfo(tz)
        opens = datetime.combine(
            date(period.year, period.month, DEFAULT_OPEN_DAY), time(DEFAULT_WINDOW_HOUR), zone)
        closes = datetime.combine(
            date(period.year, period.month, DEFAULT_CLOSE_DAY), time(DEFAULT_WINDOW_HOUR), zone)
        return cls(period=period, system_open_at=opens, system_close_at=closes, **DEFAULT_LIMITS)

    @property
    def lease_seconds(self) -> int:
        return self.session_time_limit * 60

    def is_holiday_date(self, d: date, store: str = '') -> bool:
        return d in self.holiday_dates or d in self.store_holiday_dates.get(store, ())

    def is_forbidden_date(self, d: date, store: str = '') -> bool:
        return d in self.forbidden_dates or d in self.store_forbidden_dates.get(store, ())

    def to_dict(self) -> Dict[str, Any]:
        def _sorted(dates):
            return sorted(d.isoformat() for d in dates)

        return {
            'id': self.id,
            'year': self.period.year,
            'month': self.period.month,
            'max_off_days_per_person': self.max_off_days_per_person,
            'max_off_days_per_day': self.max_off_days_per_day,
            'max_weekend_off_days': self.max_weekend_off_days,
            'max_store_off_days_per_day': self.max_store_off_days_per_day,
            'max_part_time_off_days': self.max_part_time_off_days,
            'max_standby_off_days': self.max_standby_off_days,
            'system_open_at': self.system_open_at.isoformat(),
            'system_close_at': self.system_close_at.isoformat(),
            'session_time_limit': self.session_time_limit,
            'holiday_dates': _sorted(self.holiday_dates),
            'forbidden_dates': _sorted(self.forbidden_dates),
            'store_holiday_dates': {s: _sorted(v) for s, v in self.store_holiday_dates.items() if v},
            'store_forbidden_dates': {s: _sorted(v) for s, v in self.store_forbidden_dates.items() if v},
            'is_active': self.is_active,
        }


@dataclass
class Schedule:
    employee_id: int
    employee_name: str
    period: Period
    off_dates: List[date] = field(default_factory=list)
    status: str = STATUS_PENDING
    is_valid: Optional[bool] = None
    validation: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    session_id: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def pending(cls, employee: EmployeeRef, period: Period) -> 'Schedule':
        """Synthetic record returned for employees who have not submitted yet."""
        return cls(employee_id=employee.id, employee_name=employee.name, period=period)

    @property
    def total_off_days(self) -> int:
        return len(self.off_dates)

    @property
    def weekend_off_days(self) -> int:
        return sum(1 for d in self.off_dates if d.weekday() in WEEKEND_WEEKDAYS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'employee_id': self.employee_id,
            'employee_name': self.employee_name,
            'year': self.period.year,
            'month': self.period.month,
            'off_dates': [d.isoformat() for d in sorted(self.off_dates)],
            'total_off_days': self.total_off_days,
            'weekend_off_days': self.weekend_off_days,
            'status': self.status,
            'is_valid': self.is_valid,
            'validation': self.validation,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class ScheduleSession:
    id: int
    employee_id: int
    employee_name: str
    period: Period
    status: str
    start_time: datetime
    last_activity: datetime
    lease_seconds: int
    end_time: Optional[datetime] = None
    end_reason: str = ''

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_ACTIVE

    def remaining_seconds(self, now: datetime) -> int:
        elapsed = (now - self.last_activity).total_seconds()
        return max(0, int(self.lease_seconds - elapsed))

    def is_lapsed(self, now: datetime) -> bool:
        return now - self.last_activity >= timedelta(seconds=self.lease_seconds)

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'employee_id': self.employee_id,
            'employee_name': self.employee_name,
            'year': self.period.year,
            'month': self.period.month,
            'status': self.status,
            'start_time': self.start_time.isoformat(),
            'last_activity': self.last_activity.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'lease_seconds': self.lease_seconds,
            'end_reason': self.end_reason or None,
        }
        if now is not None and self.is_active:
            remaining = self.remaining_seconds(now)
            data['remaining_seconds'] = remaining
            data['remaining_formatted'] = format_remaining(remaining)
        return data


def format_remaining(seconds: int) -> str:
    """MM:SS rendering used in busy / timeout messages."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


@dataclass(frozen=True)
class OffEntry:
    employee_id: int
    store: str
    position: str
    day: date


@dataclass(frozen=True)
class PeriodSnapshot:
    """Committed off-days of one period, joined with employee store/position.

    Taken once per validation so every rule counts against the same data.
    """
    period: Period
    entries: FrozenSet[OffEntry]
    names: Dict[int, str] = field(default_factory=dict, compare=False)

    def count_off(self, day: date, exclude: Optional[int] = None,
                  store: Optional[str] = None, position: Optional[str] = None) -> int:
        return sum(
            1 for e in self.entries
            if e.day == day
            and e.employee_id != exclude
            and (store is None or e.store == store)
            and (position is None or e.position == position)
        )

    def off_by_day(self) -> Dict[date, List[int]]:
        result: Dict[date, List[int]] = {}
        for e in sorted(self.entries, key=lambda e: (e.day, e.employee_id)):
            result.setdefault(e.day, []).append(e.employee_id)
        return result
