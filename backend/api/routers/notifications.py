"""In-app notification system for OpenFreiplaner.

Notifications are stored in notifications.json inside the data directory.
Each notification has:
  id, recipient_employee_id (None = planners/admins), type, title,
  message, read, created_at.
"""
import os
import json
import time
import tempfile
import threading
from typing import Optional
from fastapi import APIRouter, HTTPException, Query
from offlib.notify import (
    NotificationSink, format_completed, format_conflict, format_deadline, format_statistics,
)
from ..dependencies import _logger

router = APIRouter()

_lock = threading.Lock()


def _notif_file() -> str:
    import api.main as _main
    return os.path.join(_main.DB_PATH, 'notifications.json')


# ── Storage helpers ───────────────────────────────────────────────────────────

def _load() -> list:
    path = _notif_file()
    if not os.path.exists(path):
        return []
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        _logger.warning("Could not read notifications file %s: %s", path, e)
        return []


def _save(data: list) -> None:
    """Atomically write notifications to disk (write-to-temp + os.replace).

    This prevents concurrent readers from seeing a half-written file.
    Must be called while _lock is held.
    """
    path = _notif_file()
    dir_ = os.path.dirname(os.path.abspath(path))
    os.makedirs(dir_, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        'w', encoding='utf-8', dir=dir_, delete=False, suffix='.tmp'
    ) as tmp:
        json.dump(data, tmp, indent=2, ensure_ascii=False)
        tmp_path = tmp.name
    os.replace(tmp_path, path)


def _load_safe() -> list:
    """Load notifications under lock to prevent reads during writes."""
    with _lock:
        return _load()


def _next_id(data: list) -> int:
    return max((n['id'] for n in data), default=0) + 1


# ── Public helper: called by the notification sink ──────────────────────────

def create_notification(
    *,
    type: str,
    title: str,
    message: str,
    recipient_employee_id: Optional[int] = None,
) -> dict:
    """Create and persist a notification. Thread-safe."""
    with _lock:
        data = _load()
        entry = {
            'id': _next_id(data),
            'type': type,
            'title': title,
            'message': message,
            'recipient_employee_id': recipient_employee_id,
            'read': False,
            'created_at': time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime()),
        }
        data.append(entry)
        _save(data)
        return entry


class AppNotificationSink(NotificationSink):
    """Stores notifications for the in-app inbox and mirrors them to a fallback sink."""

    def __init__(self, fallback: NotificationSink = None):
        self.fallback = fallback

    def _store(self, ntype: str, title: str, message: str, recipient: Optional[int] = None):
        create_notification(type=ntype, title=title, message=message,
                            recipient_employee_id=recipient)

    def notify_completed(self, summary):
        title, message = format_completed(summary)
        self._store('schedule_completed', title, message)
        self._store('schedule_completed', title, message, summary.get('employee_id'))
        if self.fallback:
            self.fallback.notify_completed(summary)

    def notify_conflict(self, details):
        self._store('schedule_conflict', *format_conflict(details))
        if self.fallback:
            self.fallback.notify_conflict(details)

    def notify_deadline_approaching(self, period, deadline, hours_left, pending_employees):
        self._store('deadline_reminder',
                    *format_deadline(period, deadline, hours_left, pending_employees))
        if self.fallback:
            self.fallback.notify_deadline_approaching(period, deadline, hours_left, pending_employees)

    def notify_statistics_report(self, period, statistics):
        self._store('statistics_report', *format_statistics(period, statistics))
        if self.fallback:
            self.fallback.notify_statistics_report(period, statistics)


# ── API endpoints ─────────────────────────────────────────────────────────────

@router.get("/api/notifications", tags=["Notifications"], summary="List notifications")
def list_notifications(
    employee_id: Optional[int] = Query(None, description="Filter by recipient employee id"),
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    """Return notifications, newest first.

    - employee_id=<id>: notifications addressed to that employee
    - employee_id omitted: planner-wide notifications (recipient_employee_id=None)
    - unread_only=true: filter to unread only
    """
    data = _load_safe()
    data = [n for n in data if n.get('recipient_employee_id') == employee_id]
    if unread_only:
        data = [n for n in data if not n.get('read')]
    data = sorted(data, key=lambda n: (n.get('created_at', ''), n['id']), reverse=True)[:limit]
    return {"notifications": data, "count": len(data)}


@router.patch("/api/notifications/{notif_id}/read", tags=["Notifications"], summary="Mark notification as read")
def mark_read(notif_id: int):
    with _lock:
        data = _load()
        for n in data:
            if n['id'] == notif_id:
                n['read'] = True
                _save(data)
                return {"ok": True}
    raise HTTPException(status_code=404, detail="Benachrichtigung nicht gefunden")
