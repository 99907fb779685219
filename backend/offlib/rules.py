"""
Constraint validation for monthly day-off requests.

Each rule is an independent object evaluated against one ValidationContext;
all rules always run so the caller gets every violation at once. Counts of
other employees come from a single PeriodSnapshot taken per call and never
include the requester's own committed row.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ConfigUnavailableError, InvalidOffDatesError
from .models import (
    POSITION_PART_TIME, POSITION_STANDBY, WEEKEND_WEEKDAYS,
    EmployeeRef, Period, PeriodSnapshot, ScheduleConfig, normalize_position,
)


_ISO_DATE = re.compile(r'\d{4}-\d{2}-\d{2}')


def count_weekend_days(dates: Iterable[date]) -> int:
    """Number of dates falling on Friday, Saturday or Sunday."""
    return sum(1 for d in set(dates) if d.weekday() in WEEKEND_WEEKDAYS)


def normalize_off_dates(raw_dates: Iterable[Any], period: Period) -> List[date]:
    """Parse ISO strings (or dates), collapse duplicates and check the month.

    Raises InvalidOffDatesError listing every malformed or out-of-period entry.
    """
    parsed = set()
    malformed = []
    outside = []
    for raw in raw_dates:
        if isinstance(raw, datetime):
            d = raw.date()
        elif isinstance(raw, date):
            d = raw
        else:
            text = str(raw).strip()
            try:
                d = date.fromisoformat(text) if _ISO_DATE.fullmatch(text) else None
            except ValueError:
                d = None
            if d is None:
                malformed.append(str(raw))
                continue
        if not period.contains(d):
            outside.append(d.isoformat())
            continue
        parsed.add(d)
    if malformed:
        raise InvalidOffDatesError(
            f"Ungültiges Datumsformat (erwartet YYYY-MM-DD): {', '.join(malformed)}", malformed)
    if outside:
        raise InvalidOffDatesError(
            f"Daten liegen nicht im Zeitraum {period}: {', '.join(outside)}", outside)
    return sorted(parsed)


@dataclass
class RuleResult:
    valid: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'valid': self.valid, 'message': self.message, 'details': self.details}


@dataclass(frozen=True)
class ValidationContext:
    employee: EmployeeRef
    config: ScheduleConfig
    dates: Sequence[date]
    snapshot: PeriodSnapshot

    def others_off(self, d: date, store: Optional[str] = None,
                   position: Optional[str] = None) -> int:
        return self.snapshot.count_off(d, exclude=self.employee.id, store=store, position=position)


class Rule:
    number: int = 0
    name: str = ''

    def evaluate(self, ctx: ValidationContext) -> RuleResult:
        raise NotImplementedError


def _per_day_check(ctx: ValidationContext, limit: int, **scope) -> List[Dict[str, Any]]:
    """Dates where others_off + 1 would exceed *limit*."""
    over = []
    for d in ctx.dates:
        new_count = ctx.others_off(d, **scope) + 1
        if new_count > limit:
            over.append({'date': d.isoformat(), 'count': new_count, 'limit': limit})
    return over


def _format_days(over: List[Dict[str, Any]], unit: str = 'Personen') -> str:
    return ', '.join(f"{o['date']} ({o['count']}/{o['limit']} {unit})" for o in over)


class MonthlyQuotaRule(Rule):
    number = 1
    name = 'Monatliche Freitage'

    def evaluate(self, ctx):
        total = len(ctx.dates)
        limit = ctx.config.max_off_days_per_person
        details = {'total': total, 'limit': limit}
        if total > limit:
            return RuleResult(False, f"Monatliches Freitage-Limit überschritten: {total}/{limit} Tage", details)
        return RuleResult(True, f"{total}/{limit} Tage", details)


class DailyQuotaRule(Rule):
    number = 2
    name = 'Tägliches Limit'

    def evaluate(self, ctx):
        limit = ctx.config.max_off_days_per_day
        over = _per_day_check(ctx, limit)
        if over:
            return RuleResult(False, f"Zu viele Mitarbeiter frei an: {_format_days(over)}",
                              {'limit': limit, 'conflicts': over})
        return RuleResult(True, f"Höchstens {limit} Personen pro Tag eingehalten", {'limit': limit})


class WeekendQuotaRule(Rule):
    number = 3
    name = 'Wochenend-Freitage'

    def evaluate(self, ctx):
        weekend = sorted(d for d in ctx.dates if d.weekday() in WEEKEND_WEEKDAYS)
        limit = ctx.config.max_weekend_off_days
        details = {'weekend_days': len(weekend), 'limit': limit,
                   'dates': [d.isoformat() for d in weekend]}
        if len(weekend) > limit:
            return RuleResult(
                False,
                f"Wochenend-Limit überschritten: {len(weekend)}/{limit} Tage "
                f"({', '.join(d.isoformat() for d in weekend)})",
                details,
            )
        return RuleResult(True, f"{len(weekend)}/{limit} Wochenendtage", details)


class StoreQuotaRule(Rule):
    number = 4
    name = 'Filial-Limit'

    def evaluate(self, ctx):
        limit = ctx.config.max_store_off_days_per_day
        store = ctx.employee.store
        if not store:
            return RuleResult(True, 'Keine Filiale zugeordnet', {'store': store, 'limit': limit})
        over = _per_day_check(ctx, limit, store=store)
        details = {'store': store, 'limit': limit}
        if over:
            details['conflicts'] = over
            return RuleResult(False, f"Filiale {store}: zu viele Mitarbeiter frei an: {_format_days(over)}",
                              details)
        return RuleResult(True, f"Filiale {store}: höchstens {limit} pro Tag eingehalten", details)


class PositionQuotaRule(Rule):
    number = 5
    name = 'Positions-Limit'

    def evaluate(self, ctx):
        position = normalize_position(ctx.employee.position)
        caps = {
            POSITION_PART_TIME: ctx.config.max_part_time_off_days,
            POSITION_STANDBY: ctx.config.max_standby_off_days,
        }
        if position not in caps:
            return RuleResult(True, f"Kein Positions-Limit für Position '{position}'",
                              {'position': position})
        limit = caps[position]
        over = _per_day_check(ctx, limit, position=position)
        details = {'position': position, 'limit': limit}
        if over:
            details['conflicts'] = over
            return RuleResult(False, f"Position {position}: zu viele frei an: {_format_days(over)}",
                              details)
        return RuleResult(True, f"Position {position}: höchstens {limit} pro Tag eingehalten", details)


class CalendarExceptionRule(Rule):
    """Forbidden dates fail; holidays are reported but never fail."""
    number = 6
    name = 'Feiertage und Sperrtage'

    def evaluate(self, ctx):
        store = ctx.employee.store
        forbidden = [d.isoformat() for d in ctx.dates if ctx.config.is_forbidden_date(d, store)]
        holidays = [d.isoformat() for d in ctx.dates if ctx.config.is_holiday_date(d, store)]
        details = {'forbidden': forbidden, 'holidays': holidays}
        notes = []
        if holidays:
            notes.append(f"Hinweis: Feiertage gewählt: {', '.join(holidays)}")
        if forbidden:
            return RuleResult(False, '; '.join([f"Gesperrte Tage gewählt: {', '.join(forbidden)}"] + notes),
                              details)
        return RuleResult(True, '; '.join(notes) or 'Keine gesperrten Tage gewählt', details)


DEFAULT_RULES: Sequence[Rule] = (
    MonthlyQuotaRule(),
    DailyQuotaRule(),
    WeekendQuotaRule(),
    StoreQuotaRule(),
    PositionQuotaRule(),
    CalendarExceptionRule(),
)


@dataclass
class ValidationResult:
    is_valid: bool
    violations: List[str]
    per_rule: Dict[str, RuleResult]
    advisories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'violations': list(self.violations),
            'per_rule': {k: v.to_dict() for k, v in self.per_rule.items()},
            'advisories': list(self.advisories),
        }


def evaluate_rules(ctx: ValidationContext, rules: Sequence[Rule] = DEFAULT_RULES) -> ValidationResult:
    per_rule: Dict[str, RuleResult] = {}
    violations = []
    for rule in rules:
        result = rule.evaluate(ctx)
        per_rule[f"rule{rule.number}"] = result
        if not result.valid:
            violations.append(f"Regel {rule.number} ({rule.name}): {result.message}")

    advisories = []
    for result in per_rule.values():
        holidays = result.details.get('holidays')
        if holidays:
            advisories.append(f"Feiertage gewählt: {', '.join(holidays)}")

    return ValidationResult(
        is_valid=not violations,
        violations=violations,
        per_rule=per_rule,
        advisories=advisories,
    )


class RuleEngine:
    """Read-only validator bound to a database."""

    def __init__(self, db, rules: Sequence[Rule] = DEFAULT_RULES):
        self.db = db
        self.rules = tuple(rules)

    def build_context(self, employee_id: int, period: Period, raw_dates: Iterable[Any]) -> ValidationContext:
        employee = self.db.require_employee(employee_id)
        dates = normalize_off_dates(raw_dates, period)
        try:
            config = self.db.get_or_create_config(period)
        except OSError as e:
            raise ConfigUnavailableError(period) from e
        return ValidationContext(
            employee=employee,
            config=config,
            dates=tuple(dates),
            snapshot=self.db.get_period_snapshot(period),
        )

    def validate_all_rules(self, employee_id: int, period: Period,
                           raw_dates: Iterable[Any]) -> ValidationResult:
        return evaluate_rules(self.build_context(employee_id, period, raw_dates), self.rules)
