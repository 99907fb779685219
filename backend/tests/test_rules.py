"""
Tests for the constraint validation engine (offlib/rules.py).
"""
from datetime import date, datetime

import pytest

from conftest import AUGUST, commit, d, iso
from offlib.errors import EmployeeNotFoundError, InvalidOffDatesError
from offlib.rules import (
    DEFAULT_RULES, MonthlyQuotaRule, RuleEngine, count_weekend_days, normalize_off_dates,
)


def _rule(result, n):
    return result.per_rule[f"rule{n}"]


# ── Helpers ───────────────────────────────────────────────────

class TestHelpers:
    def test_weekend_is_friday_to_sunday(self):
        # 2025-08-15 Fri, 16 Sat, 17 Sun, 18 Mon
        assert count_weekend_days([d(15), d(16), d(17), d(18)]) == 3

    def test_weekend_count_ignores_duplicates(self):
        assert count_weekend_days([d(15), d(15)]) == 1

    def test_normalize_collapses_duplicates(self):
        assert normalize_off_dates(iso(5, 5, 4), AUGUST) == [d(4), d(5)]

    def test_normalize_rejects_malformed(self):
        with pytest.raises(InvalidOffDatesError) as exc:
            normalize_off_dates(['2025-08-05', '05.08.2025'], AUGUST)
        assert '05.08.2025' in str(exc.value)

    def test_normalize_requires_dashed_iso_format(self):
        with pytest.raises(InvalidOffDatesError) as exc:
            normalize_off_dates(['20250815', '2025-08-15T10:00', '2025-8-5'], AUGUST)
        assert exc.value.dates == ['20250815', '2025-08-15T10:00', '2025-8-5']

    def test_normalize_truncates_datetimes(self):
        moment = datetime(2025, 8, 15, 23, 30)
        assert normalize_off_dates([moment, d(15)], AUGUST) == [d(15)]
        assert type(normalize_off_dates([moment], AUGUST)[0]) is date

    def test_normalize_rejects_other_month(self):
        with pytest.raises(InvalidOffDatesError) as exc:
            normalize_off_dates(['2025-09-01'], AUGUST)
        assert exc.value.dates == ['2025-09-01']


# ── Scenarios ─────────────────────────────────────────────────

class TestScenarios:
    def test_daily_quota_exceeded(self, db, staff, engine):
        commit(db, staff['ben'], [15])
        commit(db, staff['greta'], [15])
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(15))
        assert not result.is_valid
        assert not _rule(result, 2).valid
        assert '3/2' in _rule(result, 2).message
        assert any(v.startswith('Regel 2') and '2025-08-15' in v for v in result.violations)

    def test_monthly_quota_exceeded(self, db, staff, engine):
        days = [4, 5, 6, 7, 11, 12, 13, 14, 18]
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(*days))
        assert not result.is_valid
        assert '9/8' in _rule(result, 1).message
        assert _rule(result, 3).valid
        assert len(result.violations) == 1

    def test_standby_position_quota(self, db, staff, engine):
        commit(db, staff['finn'], [20])
        result = engine.validate_all_rules(staff['dirk'].id, AUGUST, iso(20))
        assert not result.is_valid
        assert not _rule(result, 5).valid
        assert '2025-08-20' in _rule(result, 5).message

    def test_forbidden_date_fails(self, db, staff, engine):
        db.add_calendar_exception(AUGUST, d(12), 'forbidden')
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(12))
        assert not result.is_valid
        assert not _rule(result, 6).valid
        assert '2025-08-12' in _rule(result, 6).message

    def test_holiday_is_advisory_only(self, db, staff, engine):
        db.add_calendar_exception(AUGUST, d(12), 'holiday')
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(12))
        assert result.is_valid
        assert _rule(result, 6).valid
        assert _rule(result, 6).details['holidays'] == ['2025-08-12']
        assert result.advisories and '2025-08-12' in result.advisories[0]


# ── Individual rules ──────────────────────────────────────────

class TestRules:
    def test_weekend_quota(self, staff, engine):
        # Fri 1, Sat 2, Sun 3, Fri 8 → 4 weekend days, default limit 3
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(1, 2, 3, 8))
        assert not _rule(result, 3).valid
        assert _rule(result, 3).details['weekend_days'] == 4

    def test_store_quota(self, db, staff, engine):
        commit(db, staff['clara'], [13])
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(13))
        assert not _rule(result, 4).valid
        assert 'Mitte' in _rule(result, 4).message
        assert _rule(result, 2).valid

    def test_store_quota_other_store_does_not_count(self, db, staff, engine):
        commit(db, staff['ben'], [13])
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(13))
        assert _rule(result, 4).valid

    def test_part_time_position_quota(self, db, staff, engine):
        commit(db, staff['eva'], [19])
        result = engine.validate_all_rules(staff['clara'].id, AUGUST, iso(19))
        assert not _rule(result, 5).valid

    def test_regular_position_has_no_cap(self, db, staff, engine):
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(19))
        assert _rule(result, 5).valid
        assert 'regular' in _rule(result, 5).message

    def test_position_spelling_is_normalized(self, db, engine):
        first = db.create_employee('Hanna Holm', 'part-time', 'Ost')
        second = db.create_employee('Ilse Iven', 'Part Time', 'West')
        assert second.position == 'part_time'
        commit(db, first, [20])
        result = engine.validate_all_rules(second.id, AUGUST, iso(20))
        assert not _rule(result, 5).valid
        assert _rule(result, 5).details['position'] == 'part_time'

    def test_store_specific_forbidden_date(self, db, staff, engine):
        db.add_calendar_exception(AUGUST, d(26), 'forbidden', store='Nord')
        assert not engine.validate_all_rules(staff['ben'].id, AUGUST, iso(26)).is_valid
        assert engine.validate_all_rules(staff['anna'].id, AUGUST, iso(26)).is_valid

    def test_all_rules_run_and_report_together(self, db, staff, engine):
        db.add_calendar_exception(AUGUST, d(4), 'forbidden')
        days = [1, 2, 3, 4, 5, 6, 7, 8, 9]
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(*days))
        assert set(result.per_rule) == {f"rule{n}" for n in range(1, 7)}
        failed = {v.split(' ')[1] for v in result.violations}
        assert failed == {'1', '3', '6'}


# ── Properties ────────────────────────────────────────────────

class TestProperties:
    def test_is_valid_is_conjunction(self, db, staff, engine):
        commit(db, staff['ben'], [15])
        commit(db, staff['greta'], [15])
        for days in ([4], [15], [1, 2, 3, 8], [4, 5, 6, 7, 11, 12, 13, 14, 18]):
            result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(*days))
            assert result.is_valid == all(r.valid for r in result.per_rule.values())
            assert len(result.violations) == sum(1 for r in result.per_rule.values() if not r.valid)

    def test_own_committed_row_is_excluded(self, db, staff, engine):
        commit(db, staff['anna'], [15])
        commit(db, staff['ben'], [15])
        # Anna resubmitting the same day: only Ben counts as "other"
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(15))
        assert _rule(result, 2).valid

    def test_validation_is_idempotent(self, db, staff, engine):
        commit(db, staff['ben'], [15])
        first = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(15, 16))
        second = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(15, 16))
        assert first.to_dict() == second.to_dict()

    def test_validation_does_not_write(self, db, staff, engine):
        engine.validate_all_rules(staff['anna'].id, AUGUST, iso(4, 5))
        assert db.find_schedule(staff['anna'].id, AUGUST) is None
        assert db.get_sessions() == []

    def test_duplicates_count_once(self, staff, engine):
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(*([4] * 12)))
        assert _rule(result, 1).details['total'] == 1

    def test_empty_request_is_valid(self, staff, engine):
        assert engine.validate_all_rules(staff['anna'].id, AUGUST, []).is_valid


# ── Preconditions & registry ──────────────────────────────────

class TestPreconditions:
    def test_unknown_employee(self, staff, engine):
        with pytest.raises(EmployeeNotFoundError):
            engine.validate_all_rules(9999, AUGUST, iso(4))

    def test_invalid_dates_raise_before_rules(self, staff, engine):
        with pytest.raises(InvalidOffDatesError):
            engine.validate_all_rules(staff['anna'].id, AUGUST, ['2025-02-30'])

    def test_config_is_provisioned_with_defaults(self, db, staff, engine):
        engine.validate_all_rules(staff['anna'].id, AUGUST, iso(4))
        config = db.get_config(AUGUST)
        assert config.max_off_days_per_person == 8
        assert config.max_off_days_per_day == 2

    def test_default_registry_order(self):
        assert [r.number for r in DEFAULT_RULES] == [1, 2, 3, 4, 5, 6]

    def test_custom_rule_list(self, db, staff):
        engine = RuleEngine(db, rules=[MonthlyQuotaRule()])
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, iso(1, 2, 3, 8))
        assert list(result.per_rule) == ['rule1']
        assert result.is_valid

    def test_date_objects_are_accepted(self, staff, engine):
        result = engine.validate_all_rules(staff['anna'].id, AUGUST, [date(2025, 8, 4)])
        assert result.is_valid
