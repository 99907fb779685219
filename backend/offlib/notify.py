"""
Outbound notifications.

The scheduling core only talks to a NotificationSink. Sinks are
fire-and-forget: dispatch() logs and swallows anything a sink raises so a
broken channel can never undo a committed schedule.
"""
import logging
from typing import Any, Dict, List, Tuple

_log = logging.getLogger(__name__)

URGENCY_URGENT = 'urgent'
URGENCY_IMPORTANT = 'important'
URGENCY_REMINDER = 'reminder'

CONFLICT_LABELS = {
    'too_many_off': 'Zu viele Mitarbeiter frei',
    'store_conflict': 'Filial-Konflikt',
    'position_conflict': 'Positions-Konflikt',
}


def urgency_level(hours_left: float) -> str:
    if hours_left <= 2:
        return URGENCY_URGENT
    if hours_left <= 6:
        return URGENCY_IMPORTANT
    return URGENCY_REMINDER


# ── Message formatting ────────────────────────────────────────────────────────

def format_completed(summary: Dict[str, Any]) -> Tuple[str, str]:
    off = summary.get('total_off_days', 0)
    work = summary.get('days_in_month', 0) - off
    dates = ', '.join(summary.get('off_dates', [])) or '-'
    title = f"Freitage eingereicht: {summary.get('employee_name', '')}"
    message = (
        f"{summary.get('employee_name', '')} hat die Freitage für "
        f"{summary.get('period', '')} eingereicht.\n"
        f"Freie Tage ({off}): {dates}\n"
        f"Wochenendtage: {summary.get('weekend_off_days', 0)}\n"
        f"Arbeitstage: {work}"
    )
    return title, message


def format_conflict(details: Dict[str, Any]) -> Tuple[str, str]:
    conflicts: List[Dict[str, Any]] = details.get('conflicts', [])
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for c in conflicts:
        grouped.setdefault(c.get('type', ''), []).append(c)
    lines = [f"Konflikte in {details.get('period', '')}: {len(conflicts)}"]
    for ctype, items in grouped.items():
        lines.append(f"{CONFLICT_LABELS.get(ctype, ctype)} ({len(items)}):")
        for c in items:
            scope = c.get('store') or c.get('position') or ''
            scope = f" [{scope}]" if scope else ''
            lines.append(
                f"  {c['date']}{scope}: {c['count']}/{c['limit']} "
                f"({', '.join(c.get('employees', []))})"
            )
    return f"Konflikte erkannt: {details.get('period', '')}", '\n'.join(lines)


def format_deadline(period: str, deadline: str, hours_left: float,
                    pending: List[str]) -> Tuple[str, str]:
    level = urgency_level(hours_left)
    prefix = {URGENCY_URGENT: 'DRINGEND', URGENCY_IMPORTANT: 'WICHTIG'}.get(level, 'Erinnerung')
    message = (
        f"Die Planung für {period} schließt am {deadline} "
        f"(noch {hours_left:.1f} Stunden).\n"
        f"Noch offen ({len(pending)}): {', '.join(pending) or '-'}"
    )
    return f"{prefix}: Frist für {period}", message


def format_statistics(period: str, stats: Dict[str, Any]) -> Tuple[str, str]:
    lines = [
        f"Abgeschlossen: {stats.get('completed', 0)}/{stats.get('total_employees', 0)} "
        f"({stats.get('completion_rate', 0)}%)",
        f"Durchschnittliche Freitage: {stats.get('average_off_days', 0)}",
        f"Durchschnittliche Wochenendtage: {stats.get('average_weekend_off_days', 0)}",
    ]
    most = stats.get('most_off_day')
    least = stats.get('least_off_day')
    if most:
        lines.append(f"Meiste Freitage: {most['date']} ({most['count']})")
    if least:
        lines.append(f"Wenigste Freitage: {least['date']} ({least['count']})")
    return f"Statistik {period}", '\n'.join(lines)


# ── Sinks ─────────────────────────────────────────────────────────────────────

class NotificationSink:
    def notify_completed(self, summary: Dict[str, Any]) -> None:
        raise NotImplementedError

    def notify_conflict(self, details: Dict[str, Any]) -> None:
        raise NotImplementedError

    def notify_deadline_approaching(self, period: str, deadline: str, hours_left: float,
                                    pending_employees: List[str]) -> None:
        raise NotImplementedError

    def notify_statistics_report(self, period: str, statistics: Dict[str, Any]) -> None:
        raise NotImplementedError


class LogNotificationSink(NotificationSink):
    """Writes every notification to the log; the default when nothing else is wired."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or _log

    def _emit(self, kind: str, title: str, message: str) -> None:
        self.logger.info("NOTIFY %s %s | %s", kind, title, message.replace('\n', ' | '))

    def notify_completed(self, summary):
        self._emit('completed', *format_completed(summary))

    def notify_conflict(self, details):
        self._emit('conflict', *format_conflict(details))

    def notify_deadline_approaching(self, period, deadline, hours_left, pending_employees):
        self._emit('deadline', *format_deadline(period, deadline, hours_left, pending_employees))

    def notify_statistics_report(self, period, statistics):
        self._emit('statistics', *format_statistics(period, statistics))


def dispatch(sink: NotificationSink, method: str, *args) -> bool:
    """Call sink.<method>(*args); failures are logged, never raised."""
    if sink is None:
        return False
    try:
        getattr(sink, method)(*args)
        return True
    except Exception:
        _log.exception("Notification %s via %s failed", method, type(sink).__name__)
        return False
