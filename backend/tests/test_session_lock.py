"""
Tests for the exclusive scheduling lock (offlib/session_lock.py).
"""
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from conftest import AUGUST
from offlib.errors import (
    EmployeeNotFoundError, SessionExpiredError, SessionNotFoundError, SessionOwnershipError,
    SystemBusyError, SystemClosedError,
)
from offlib.models import Period


def _start(controller, emp):
    return controller.start_session(emp.id, emp.name, AUGUST)


class TestOpeningWindow:
    def test_open_inside_default_window(self, controller):
        status = controller.is_system_open(AUGUST)
        assert status.is_open
        assert status.time_limit == 5
        assert status.open_at == datetime(2025, 8, 16, 2, 0, tzinfo=timezone.utc)
        assert status.close_at == datetime(2025, 8, 21, 2, 0, tzinfo=timezone.utc)

    def test_not_yet_open_reports_days(self, controller, clock):
        clock.set(datetime(2025, 8, 13, 2, 0, tzinfo=timezone.utc))
        status = controller.is_system_open(AUGUST)
        assert not status.is_open
        assert 'in 3 Tagen' in status.reason

    def test_closed_after_window(self, controller, clock):
        clock.set(datetime(2025, 8, 21, 2, 0, tzinfo=timezone.utc))
        status = controller.is_system_open(AUGUST)
        assert not status.is_open
        assert 'geschlossen' in status.reason

    def test_misconfigured_window(self, db, controller):
        config = db.get_or_create_config(AUGUST)
        db.save_config(replace(config, system_close_at=config.system_open_at))
        status = controller.is_system_open(AUGUST)
        assert not status.is_open
        assert 'Konfigurationsfehler' in status.reason

    def test_start_outside_window_raises(self, controller, clock, staff):
        clock.set(datetime(2025, 8, 25, tzinfo=timezone.utc))
        with pytest.raises(SystemClosedError):
            _start(controller, staff['anna'])
        assert controller.db.get_sessions() == []


class TestExclusivity:
    def test_busy_names_holder_and_remaining(self, controller, clock, staff):
        _start(controller, staff['anna'])
        clock.advance(seconds=70)
        with pytest.raises(SystemBusyError) as exc:
            _start(controller, staff['ben'])
        assert exc.value.holder_name == 'Anna Amsel'
        assert exc.value.holder_id == staff['anna'].id
        assert exc.value.remaining_seconds == 230
        assert '03:50' in str(exc.value)

    def test_retry_succeeds_after_complete(self, controller, staff):
        first = _start(controller, staff['anna'])
        with pytest.raises(SystemBusyError):
            _start(controller, staff['ben'])
        controller.complete_session(first.id)
        second = _start(controller, staff['ben'])
        assert second.is_active
        assert second.employee_id == staff['ben'].id

    def test_same_employee_cannot_hold_two_sessions(self, controller, staff):
        _start(controller, staff['anna'])
        with pytest.raises(SystemBusyError):
            _start(controller, staff['anna'])

    def test_lock_is_global_across_periods(self, db, controller, staff):
        september = Period(2025, 9)
        config = db.get_or_create_config(september)
        db.save_config(replace(config,
                               system_open_at=datetime(2025, 8, 1, tzinfo=timezone.utc),
                               system_close_at=datetime(2025, 9, 30, tzinfo=timezone.utc)))
        _start(controller, staff['anna'])
        with pytest.raises(SystemBusyError):
            controller.start_session(staff['ben'].id, staff['ben'].name, september)

    def test_unknown_employee(self, controller, staff):
        with pytest.raises(EmployeeNotFoundError):
            controller.start_session(4711, 'Niemand', AUGUST)

    def test_is_system_busy(self, controller, clock, staff):
        assert not controller.is_system_busy().is_busy
        _start(controller, staff['anna'])
        clock.advance(seconds=30)
        busy = controller.is_system_busy()
        assert busy.is_busy
        assert busy.session.employee_id == staff['anna'].id
        assert busy.remaining_seconds == 270
        assert busy.to_dict()['session']['remaining_formatted'] == '04:30'


class TestLease:
    def test_lapsed_session_is_taken_over(self, controller, clock, staff):
        first = _start(controller, staff['anna'])
        clock.advance(minutes=5)
        second = _start(controller, staff['ben'])
        assert second.employee_id == staff['ben'].id
        assert controller.db.get_session(first.id).status == 'expired'
        assert controller.db.get_session(first.id).end_reason == 'timeout'

    def test_heartbeat_extends_lease(self, controller, clock, staff):
        session = _start(controller, staff['anna'])
        clock.advance(minutes=4)
        controller.update_activity(session.id)
        clock.advance(minutes=4)
        with pytest.raises(SystemBusyError) as exc:
            _start(controller, staff['ben'])
        assert exc.value.remaining_seconds == 60

    def test_heartbeat_after_lapse_fails(self, controller, clock, staff):
        session = _start(controller, staff['anna'])
        clock.advance(minutes=6)
        with pytest.raises(SessionExpiredError):
            controller.update_activity(session.id)
        assert controller.db.get_session(session.id).status == 'expired'

    def test_heartbeat_unknown_session(self, controller, staff):
        with pytest.raises(SessionNotFoundError):
            controller.update_activity(999)

    def test_check_timeout(self, controller, clock, staff):
        session = _start(controller, staff['anna'])
        clock.advance(minutes=2)
        status = controller.check_timeout(session.id)
        assert not status.is_timeout
        assert status.remaining_seconds == 180

        clock.advance(minutes=3)
        status = controller.check_timeout(session.id)
        assert status.is_timeout
        assert controller.db.get_session(session.id).status == 'expired'
        # Idempotent once expired
        assert controller.check_timeout(session.id).is_timeout

    def test_cleanup_sweep(self, controller, clock, staff):
        _start(controller, staff['anna'])
        assert controller.cleanup_timeout_sessions() == 0
        clock.advance(minutes=5, seconds=1)
        assert controller.cleanup_timeout_sessions() == 1
        assert not controller.is_system_busy().is_busy


class TestTermination:
    def test_complete_twice_raises(self, controller, staff):
        session = _start(controller, staff['anna'])
        controller.complete_session(session.id)
        with pytest.raises(SessionExpiredError):
            controller.complete_session(session.id)

    def test_complete_after_lapse_expiry_raises(self, controller, clock, staff):
        session = _start(controller, staff['anna'])
        clock.advance(minutes=10)
        controller.cleanup_timeout_sessions()
        with pytest.raises(SessionExpiredError):
            controller.complete_session(session.id)

    def test_complete_on_lapsed_lease_expires_it(self, controller, clock, staff):
        session = _start(controller, staff['anna'])
        clock.advance(minutes=10)
        with pytest.raises(SessionExpiredError) as exc:
            controller.complete_session(session.id)
        assert exc.value.status == 'expired'
        stored = controller.db.get_session(session.id)
        assert stored.status == 'expired'
        assert stored.end_reason == 'timeout'

    def test_complete_and_heartbeat_check_owner(self, controller, staff):
        session = _start(controller, staff['anna'])
        with pytest.raises(SessionOwnershipError):
            controller.update_activity(session.id, staff['ben'].id)
        with pytest.raises(SessionOwnershipError):
            controller.complete_session(session.id, staff['ben'].id)
        assert controller.db.get_session(session.id).is_active
        assert controller.complete_session(session.id, staff['anna'].id).status == 'completed'

    def test_release_is_quiet(self, controller, staff):
        session = _start(controller, staff['anna'])
        assert controller.release_session(session.id) is True
        assert controller.release_session(session.id) is False
        assert controller.release_session(12345) is False

    def test_force_end_all(self, controller, staff):
        session = _start(controller, staff['anna'])
        assert controller.force_end_all_sessions('Wartung') == 1
        stored = controller.db.get_session(session.id)
        assert stored.status == 'expired'
        assert stored.end_reason == 'Wartung'
        assert controller.force_end_all_sessions() == 0
        assert _start(controller, staff['ben']).is_active

    def test_require_owner(self, controller, staff):
        session = _start(controller, staff['anna'])
        assert controller.require_owner(session.id, staff['anna'].id).id == session.id
        with pytest.raises(SessionOwnershipError):
            controller.require_owner(session.id, staff['ben'].id)


class TestSystemStatus:
    def test_available(self, controller, staff):
        status = controller.get_system_status(AUGUST)
        assert status['status'] == 'available'
        assert status['can_access']

    def test_busy(self, controller, staff):
        _start(controller, staff['anna'])
        status = controller.get_system_status(AUGUST)
        assert status['status'] == 'busy'
        assert not status['can_access']
        assert status['busy']['session']['employee_name'] == 'Anna Amsel'

    def test_closed_wins_over_busy(self, controller, clock, staff):
        clock.set(datetime(2025, 8, 21, 1, 58, tzinfo=timezone.utc))
        _start(controller, staff['anna'])
        clock.set(datetime(2025, 8, 21, 1, 59, tzinfo=timezone.utc))
        assert controller.get_system_status(AUGUST)['status'] == 'busy'
        clock.set(datetime(2025, 8, 21, 2, 0, tzinfo=timezone.utc))
        assert controller.get_system_status(AUGUST)['status'] == 'closed'
