"""
Submission workflow: the only path that writes schedules.

    open? ─▶ preconditions ─▶ acquire lock ─▶ validate ─┬▶ write, complete, notify
                                                      └▶ release, report violations

Any error after the lock was acquired releases it before propagating.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional

from .errors import SystemClosedError
from .models import STATUS_COMPLETED, STATUS_IN_PROGRESS, Period, Schedule
from .notify import dispatch, urgency_level
from .rules import ValidationResult, normalize_off_dates

_log = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    success: bool
    message: str
    schedule: Optional[Schedule] = None
    validation: Optional[ValidationResult] = None
    session_id: Optional[int] = None
    violations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'schedule': self.schedule.to_dict() if self.schedule else None,
            'validation': self.validation.to_dict() if self.validation else None,
            'violations': list(self.violations),
            'session_id': self.session_id,
        }


def _round(value: float) -> float:
    return round(value, 1)


class SubmissionWorkflow:
    def __init__(self, db, controller, engine, notifier=None):
        self.db = db
        self.controller = controller
        self.engine = engine
        self.notifier = notifier

    # ── Submit ─────────────────────────────────────────────────
    def submit(self, employee_id: int, period: Period, raw_dates: Iterable[Any],
               session_id: Optional[int] = None) -> SubmissionResult:
        """Validate and commit one employee's off-days for *period*.

        Without *session_id* the lock is acquired for this call only. With
        one, the caller must already hold that session.
        """
        open_status = self.controller.is_system_open(period)
        if not open_status.is_open:
            raise SystemClosedError(open_status.reason)

        employee = self.db.require_employee(employee_id)
        dates = normalize_off_dates(raw_dates, period)

        if session_id is None:
            session = self.controller.start_session(employee.id, employee.name, period)
        else:
            session = self.controller.require_owner(session_id, employee.id)

        committed = False
        release_reason = 'error'
        try:
            validation = self.engine.validate_all_rules(employee.id, period, dates)
            if not validation.is_valid:
                release_reason = 'rejected'
                _log.info("Submission of %s for %s rejected: %s", employee.id, period,
                          '; '.join(validation.violations))
                return SubmissionResult(
                    success=False,
                    message='Die Auswahl verletzt Planungsregeln',
                    validation=validation,
                    violations=list(validation.violations),
                    session_id=session.id,
                )

            # The lease may have lapsed while validating
            self.controller.require_owner(session.id, employee.id)
            schedule = self.db.upsert_schedule(
                employee, period, dates, self.controller.now(),
                status=STATUS_COMPLETED, is_valid=True,
                validation=validation.to_dict(), session_id=session.id,
            )
            self.controller.release_session(session.id, 'completed')
            committed = True
        finally:
            if not committed:
                self.controller.release_session(session.id, release_reason)

        _log.info("Schedule of %s for %s committed (%d days)", employee.id, period,
                  schedule.total_off_days)
        dispatch(self.notifier, 'notify_completed', {
            'employee_id': employee.id,
            'employee_name': employee.name,
            'period': str(period),
            'off_dates': [d.isoformat() for d in schedule.off_dates],
            'total_off_days': schedule.total_off_days,
            'weekend_off_days': schedule.weekend_off_days,
            'days_in_month': period.days_in_month,
        })
        return SubmissionResult(
            success=True,
            message='Freitage gespeichert',
            schedule=schedule,
            validation=validation,
            session_id=session.id,
        )

    def validate_only(self, employee_id: int, period: Period,
                      raw_dates: Iterable[Any]) -> ValidationResult:
        """Dry run: no lock, no write."""
        return self.engine.validate_all_rules(employee_id, period, raw_dates)

    # ── Reads ──────────────────────────────────────────────────
    def get_employee_schedule(self, employee_id: int, period: Period) -> Schedule:
        employee = self.db.require_employee(employee_id)
        schedule = self.db.find_schedule(employee.id, period) or Schedule.pending(employee, period)
        if schedule.status != STATUS_COMPLETED:
            active = self.db.get_active_session()
            if (active is not None and active.employee_id == employee.id
                    and active.period == period and not active.is_lapsed(self.controller.now())):
                schedule = replace(schedule, status=STATUS_IN_PROGRESS)
        return schedule

    def _completion(self, period: Period) -> Dict[str, Any]:
        employees = self.db.get_employees()
        completed = {
            s.employee_id: s for s in self.db.get_period_schedules(period)
            if s.status == STATUS_COMPLETED
        }
        done = [completed[e.id] for e in employees if e.id in completed]
        total = len(employees)
        return {
            'employees': employees,
            'done': done,
            'total_employees': total,
            'completed': len(done),
            'pending': total - len(done),
            'completion_rate': _round(len(done) / total * 100) if total else 0.0,
        }

    def get_period_summary(self, period: Period) -> Dict[str, Any]:
        """Per-day off counts with names plus completion statistics."""
        completion = self._completion(period)
        done = completion['done']
        snapshot = self.db.get_period_snapshot(period)
        by_day = snapshot.off_by_day()

        daily = []
        for d in period.iter_dates():
            ids = by_day.get(d, [])
            daily.append({
                'date': d.isoformat(),
                'weekday': d.weekday(),
                'count': len(ids),
                'employees': [snapshot.names.get(i, f"#{i}") for i in ids],
            })

        busy_days = [x for x in daily if x['count']]
        most = max(busy_days, key=lambda x: x['count'], default=None)
        least = min(busy_days, key=lambda x: x['count'], default=None)
        return {
            'year': period.year,
            'month': period.month,
            'days_in_month': period.days_in_month,
            'total_employees': completion['total_employees'],
            'completed': completion['completed'],
            'pending': completion['pending'],
            'completion_rate': completion['completion_rate'],
            'average_off_days': _round(sum(s.total_off_days for s in done) / len(done)) if done else 0.0,
            'average_weekend_off_days': (
                _round(sum(s.weekend_off_days for s in done) / len(done)) if done else 0.0
            ),
            'most_off_day': {'date': most['date'], 'count': most['count']} if most else None,
            'least_off_day': {'date': least['date'], 'count': least['count']} if least else None,
            'daily': daily,
        }

    def get_schedule_status(self, period: Period) -> Dict[str, Any]:
        status = self.controller.get_system_status(period)
        completion = self._completion(period)
        status['config'] = self.db.get_or_create_config(period).to_dict()
        status['completion'] = {
            'total_employees': completion['total_employees'],
            'completed': completion['completed'],
            'pending': completion['pending'],
            'completion_rate': completion['completion_rate'],
        }
        return status

    # ── Post-hoc checks and reports ────────────────────────────
    def scan_conflicts(self, period: Period, notify: bool = True) -> List[Dict[str, Any]]:
        config = self.db.get_or_create_config(period)
        conflicts = self.db.get_schedule_conflicts(period, config)
        if conflicts:
            _log.warning("%d conflicts in committed data for %s", len(conflicts), period)
            if notify:
                dispatch(self.notifier, 'notify_conflict',
                         {'period': str(period), 'conflicts': conflicts})
        return conflicts

    def send_deadline_reminder(self, period: Period) -> Dict[str, Any]:
        """Remind about pending employees when the window closes within 24 hours."""
        config = self.db.get_or_create_config(period)
        hours_left = (config.system_close_at - self.controller.now()).total_seconds() / 3600
        result = {'sent': False, 'hours_left': _round(hours_left), 'pending_employees': []}
        if not 0 < hours_left <= 24:
            result['reason'] = 'Frist liegt nicht innerhalb der nächsten 24 Stunden'
            return result

        completion = self._completion(period)
        done_ids = {s.employee_id for s in completion['done']}
        pending = [e.name for e in completion['employees'] if e.id not in done_ids]
        result['pending_employees'] = pending
        result['urgency'] = urgency_level(hours_left)
        if not pending:
            result['reason'] = 'Alle Mitarbeiter haben eingereicht'
            return result

        result['sent'] = dispatch(
            self.notifier, 'notify_deadline_approaching',
            str(period), f"{config.system_close_at:%d.%m.%Y %H:%M}", hours_left, pending,
        )
        return result

    def send_statistics_report(self, period: Period) -> Dict[str, Any]:
        """Send the period statistics once the window has closed."""
        config = self.db.get_or_create_config(period)
        if self.controller.now() < config.system_close_at:
            return {'sent': False, 'reason': 'Die Planung ist noch nicht geschlossen'}
        summary = self.get_period_summary(period)
        stats = {k: v for k, v in summary.items() if k != 'daily'}
        sent = dispatch(self.notifier, 'notify_statistics_report', str(period), stats)
        return {'sent': sent, 'statistics': stats}

