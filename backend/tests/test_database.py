"""
Tests for the DBF layer and the stores in offlib/database.py.
"""
import json
import os
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from conftest import AUGUST, WINDOW_NOW, commit, d
from offlib.database import OffDatabase
from offlib.dbf_reader import get_table_fields, read_dbf
from offlib.dbf_writer import LockedTable, create_table, locked_table
from offlib.errors import SessionNotFoundError
from offlib.models import Period, ScheduleConfig
from offlib.schema import TABLES


FIELDS = [
    {'name': 'ID', 'type': 'N', 'len': 6, 'dec': 0},
    {'name': 'NAME', 'type': 'C', 'len': 62, 'dec': 0},
    {'name': 'DAY', 'type': 'D', 'len': 8, 'dec': 0},
    {'name': 'AT', 'type': 'N', 'len': 18, 'dec': 6},
    {'name': 'FLAG', 'type': 'L', 'len': 1, 'dec': 0},
]


class TestDbfCodec:
    def test_create_and_roundtrip(self, tmp_path):
        path = str(tmp_path / "T.DBF")
        assert create_table(path, FIELDS) is True
        assert create_table(path, FIELDS) is False
        assert [f['name'] for f in get_table_fields(path)] == ['ID', 'NAME', 'DAY', 'AT', 'FLAG']

        with locked_table(path) as t:
            t.append({'ID': 1, 'NAME': 'Jürgen Öztürk', 'DAY': '2025-08-04',
                      'AT': 1755424800.5, 'FLAG': True})
        rows = read_dbf(path)
        assert rows == [{'ID': 1, 'NAME': 'Jürgen Öztürk', 'DAY': '2025-08-04',
                         'AT': 1755424800.5, 'FLAG': True}]

    def test_long_text_is_truncated(self, tmp_path):
        path = str(tmp_path / "T.DBF")
        create_table(path, FIELDS)
        with locked_table(path) as t:
            t.append({'ID': 1, 'NAME': 'x' * 40})
        assert read_dbf(path)[0]['NAME'] == 'x' * 30

    def test_update_delete_and_next_id(self, tmp_path):
        path = str(tmp_path / "T.DBF")
        create_table(path, FIELDS)
        with locked_table(path) as t:
            for i in (1, 2, 3):
                t.append({'ID': i, 'NAME': f"n{i}"})
            (idx, _), = t.rows(ID=3)
            assert t.delete(idx) is True
            assert t.delete(idx) is False
            # Deleted ids are never reused
            assert t.next_id() == 4
            (idx, _), = t.rows(ID=2)
            assert t.update(idx, {'NAME': 'zwei'})['NAME'] == 'zwei'
            with pytest.raises(IndexError):
                t.update(99, {'NAME': 'x'})
        assert [r['NAME'] for r in read_dbf(path)] == ['n1', 'zwei']

    def test_missing_file_reads_empty(self, tmp_path):
        assert read_dbf(str(tmp_path / "NOPE.DBF")) == []

    def test_oversized_number_rejected(self, tmp_path):
        path = str(tmp_path / "T.DBF")
        create_table(path, FIELDS)
        with pytest.raises(ValueError):
            with locked_table(path) as t:
                t.append({'ID': 10 ** 7})


class TestProvisioning:
    def test_tables_created_on_first_use(self, db, data_dir):
        assert db.get_employees() == []
        assert os.path.exists(os.path.join(data_dir, 'OFEMPL.DBF'))
        fields = get_table_fields(os.path.join(data_dir, 'OFEMPL.DBF'))
        assert [f['name'] for f in fields] == [f['name'] for f in TABLES['OFEMPL']]

    def test_default_config(self, db):
        assert db.get_config(AUGUST) is None
        config = db.get_or_create_config(AUGUST)
        assert config.max_off_days_per_person == 8
        assert config.max_off_days_per_day == 2
        assert config.max_weekend_off_days == 3
        assert config.max_store_off_days_per_day == 1
        assert config.max_part_time_off_days == 1
        assert config.max_standby_off_days == 1
        assert config.session_time_limit == 5
        assert config.system_open_at == datetime(2025, 8, 16, 2, 0, tzinfo=timezone.utc)
        assert config.system_close_at == datetime(2025, 8, 21, 2, 0, tzinfo=timezone.utc)
        # Second access reuses the row
        assert db.get_or_create_config(AUGUST).id == config.id

    def test_default_window_follows_timezone(self, data_dir):
        berlin = OffDatabase(data_dir, timezone='Europe/Berlin')
        config = berlin.get_or_create_config(AUGUST)
        assert config.system_open_at == datetime(2025, 8, 16, 0, 0, tzinfo=timezone.utc)
        assert config.system_open_at.utcoffset().total_seconds() == 7200

    def test_employees_sorted_and_hidden_filtered(self, db):
        db.create_employee('Zoe Zander')
        db.create_employee('adam Ast', store='Nord')
        db.create_employee('Hans Hidden', hidden=True)
        assert [e.name for e in db.get_employees()] == ['adam Ast', 'Zoe Zander']
        assert len(db.get_employees(include_hidden=True)) == 3
        assert db.get_employee(2).store == 'Nord'
        assert db.get_employee(42) is None


class TestConfigStore:
    def test_save_supersedes_previous_row(self, db, data_dir):
        config = db.get_or_create_config(AUGUST)
        saved = db.save_config(replace(config, max_off_days_per_day=4))
        assert saved.id != config.id
        assert db.get_config(AUGUST).max_off_days_per_day == 4
        rows = read_dbf(os.path.join(data_dir, 'OFCONF.DBF'))
        assert [r['ACTIVE'] for r in rows] == [False, True]

    def test_configs_are_per_period(self, db):
        db.get_or_create_config(AUGUST)
        september = db.get_or_create_config(Period(2025, 9))
        assert september.system_open_at.month == 9
        assert db.get_config(AUGUST).period == AUGUST

    def test_calendar_exceptions(self, db):
        db.add_calendar_exception(AUGUST, d(15), 'holiday', note='Mariä Himmelfahrt')
        db.add_calendar_exception(AUGUST, d(15), 'holiday')
        config = db.add_calendar_exception(AUGUST, d(26), 'forbidden', store='Nord')
        assert config.holiday_dates == {d(15)}
        assert config.store_forbidden_dates == {'Nord': {d(26)}}
        assert config.is_forbidden_date(d(26), 'Nord')
        assert not config.is_forbidden_date(d(26), 'Mitte')
        assert config.is_holiday_date(d(15), 'Mitte')

        assert db.remove_calendar_exception(AUGUST, d(15), 'holiday') is True
        assert db.remove_calendar_exception(AUGUST, d(15), 'holiday') is False
        assert db.get_config(AUGUST).holiday_dates == set()

    def test_calendar_exception_validation(self, db):
        with pytest.raises(ValueError):
            db.add_calendar_exception(AUGUST, d(15), 'vacation')
        with pytest.raises(ValueError):
            db.add_calendar_exception(AUGUST, datetime(2025, 9, 1).date(), 'holiday')

    def test_save_config_replaces_exceptions(self, db):
        db.add_calendar_exception(AUGUST, d(15), 'holiday')
        config = db.get_config(AUGUST)
        config.holiday_dates = set()
        config.forbidden_dates = {d(1)}
        saved = db.save_config(config)
        assert saved.holiday_dates == set()
        assert saved.forbidden_dates == {d(1)}

    def test_failed_exception_write_keeps_previous_config(self, db, monkeypatch):
        config = db.get_or_create_config(AUGUST)
        original = LockedTable.append

        def failing_append(table, record):
            if 'KIND' in record:
                raise OSError("disk full")
            return original(table, record)

        monkeypatch.setattr(LockedTable, 'append', failing_append)
        with pytest.raises(OSError):
            db.save_config(replace(config, max_off_days_per_day=4, forbidden_dates={d(1)}))
        monkeypatch.setattr(LockedTable, 'append', original)
        current = db.get_config(AUGUST)
        assert current.id == config.id
        assert current.max_off_days_per_day == 2
        assert current.forbidden_dates == set()

    def test_default_config_object(self):
        config = ScheduleConfig.default(AUGUST, 'UTC')
        assert config.lease_seconds == 300
        assert config.to_dict()['holiday_dates'] == []


class TestScheduleStore:
    def test_upsert_replaces_off_dates(self, db, staff, data_dir):
        first = commit(db, staff['anna'], [4, 5])
        second = commit(db, staff['anna'], [6, 15, 6])
        assert second.id == first.id
        assert second.off_dates == [d(6), d(15)]
        assert second.weekend_off_days == 1
        rows = read_dbf(os.path.join(data_dir, 'OFOFFD.DBF'))
        assert sorted(r['DATE'] for r in rows) == ['2025-08-06', '2025-08-15']

    def test_timestamps_roundtrip(self, db, staff):
        schedule = commit(db, staff['anna'], [4])
        assert schedule.started_at == WINDOW_NOW
        assert schedule.updated_at == WINDOW_NOW

    def test_counts(self, db, staff):
        commit(db, staff['anna'], [12])
        commit(db, staff['clara'], [12])
        commit(db, staff['ben'], [12, 13])
        assert db.count_off_by_day(AUGUST, d(12)) == 3
        assert db.count_off_by_day(AUGUST, d(12), exclude=staff['ben'].id) == 2
        assert db.count_off_by_store(AUGUST, d(12), 'Mitte') == 2
        assert db.count_off_by_position(AUGUST, d(12), 'part_time') == 1
        assert db.count_off_by_day(AUGUST, d(14)) == 0

    def test_validation_snapshot_sidecar(self, db, staff, data_dir):
        schedule = db.upsert_schedule(staff['anna'], AUGUST, [d(4)], WINDOW_NOW,
                                      validation={'is_valid': True, 'violations': []})
        with open(os.path.join(data_dir, 'schedule_validations.json'), encoding='utf-8') as f:
            stored = json.load(f)
        assert stored[str(schedule.id)]['is_valid'] is True
        assert db.find_schedule(staff['anna'].id, AUGUST).validation == {
            'is_valid': True, 'violations': []}

    def test_corrupt_sidecar_is_ignored(self, db, staff, data_dir):
        commit(db, staff['anna'], [4])
        with open(os.path.join(data_dir, 'schedule_validations.json'), 'w') as f:
            f.write('{kaputt')
        assert db.find_schedule(staff['anna'].id, AUGUST).validation is None

    def test_schedules_are_per_period(self, db, staff):
        commit(db, staff['anna'], [4])
        assert db.get_period_schedules(Period(2025, 9)) == []
        assert db.find_schedule(staff['ben'].id, AUGUST) is None

    def test_conflicts_empty(self, db, staff):
        commit(db, staff['anna'], [4])
        config = db.get_or_create_config(AUGUST)
        assert db.get_schedule_conflicts(AUGUST, config) == []


class TestSessionStore:
    def test_acquire_and_hold(self, db, staff):
        session, holder = db.acquire_session(staff['anna'], AUGUST, 300, WINDOW_NOW)
        assert holder is None
        assert session.is_active
        again, holder = db.acquire_session(staff['ben'], AUGUST, 300, WINDOW_NOW)
        assert again is None
        assert holder.id == session.id
        assert db.get_active_session().employee_name == 'Anna Amsel'

    def test_end_session_once(self, db, staff):
        session, _ = db.acquire_session(staff['anna'], AUGUST, 300, WINDOW_NOW)
        ended, changed = db.end_session(session.id, 'completed', 'completed', WINDOW_NOW)
        assert changed and ended.status == 'completed'
        ended, changed = db.end_session(session.id, 'expired', 'x', WINDOW_NOW)
        assert not changed and ended.status == 'completed'
        with pytest.raises(SessionNotFoundError):
            db.end_session(404, 'expired', 'x', WINDOW_NOW)

    def test_expire_all_active(self, db, staff):
        db.acquire_session(staff['anna'], AUGUST, 300, WINDOW_NOW)
        expired = db.expire_all_active(WINDOW_NOW, 'Wartung')
        assert [s.end_reason for s in expired] == ['Wartung']
        assert db.get_active_session() is None
