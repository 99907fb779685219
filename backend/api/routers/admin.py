"""Admin router: lock overrides, session sweeps and notification triggers."""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from offlib.models import SESSION_ACTIVE, Period
from offlib.session_lock import SessionController
from offlib.workflow import SubmissionWorkflow
from ..dependencies import (
    get_controller, get_period, get_workflow, require_admin, _logger,
)
from .events import broadcast

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class ForceEndBody(BaseModel):
    reason: str = Field('admin_force_end', min_length=1, max_length=100)


@router.get("/sessions", summary="List active sessions")
def list_active_sessions(controller: SessionController = Depends(get_controller),
                         _cur_user: dict = Depends(require_admin)):
    now = controller.now()
    sessions = controller.db.get_sessions(status=SESSION_ACTIVE)
    return {"sessions": [s.to_dict(now) for s in sessions], "count": len(sessions)}


@router.post("/sessions/force-end", summary="Force-end every active session")
def force_end_sessions(body: Optional[ForceEndBody] = None,
                       controller: SessionController = Depends(get_controller),
                       _cur_user: dict = Depends(require_admin)):
    """Expire all active sessions regardless of their remaining lease."""
    reason = body.reason if body else 'admin_force_end'
    count = controller.force_end_all_sessions(reason)
    _logger.info("Admin force-end: %d sessions (reason=%s)", count, reason)
    if count:
        broadcast("sessions_force_ended", {"count": count, "reason": reason})
    return {"ok": True, "ended": count}


@router.post("/sessions/cleanup", summary="Expire lapsed sessions now")
def cleanup_sessions(controller: SessionController = Depends(get_controller),
                     _cur_user: dict = Depends(require_admin)):
    count = controller.cleanup_timeout_sessions()
    if count:
        broadcast("session_ended", {"reason": "timeout", "count": count})
    return {"ok": True, "expired": count}


@router.post("/reminders/{year}/{month}", summary="Send deadline reminder")
def send_reminder(period: Period = Depends(get_period),
                  workflow: SubmissionWorkflow = Depends(get_workflow),
                  _cur_user: dict = Depends(require_admin)):
    """Remind about pending employees when the window closes within 24 hours."""
    return workflow.send_deadline_reminder(period)


@router.post("/conflicts/{year}/{month}/alert", summary="Scan committed data and alert on conflicts")
def alert_conflicts(period: Period = Depends(get_period),
                    workflow: SubmissionWorkflow = Depends(get_workflow),
                    _cur_user: dict = Depends(require_admin)):
    conflicts = workflow.scan_conflicts(period, notify=True)
    return {"conflicts": conflicts, "count": len(conflicts), "notified": bool(conflicts)}


@router.post("/statistics/{year}/{month}", summary="Send the statistics report of a closed period")
def send_statistics(period: Period = Depends(get_period),
                    workflow: SubmissionWorkflow = Depends(get_workflow),
                    _cur_user: dict = Depends(require_admin)):
    return workflow.send_statistics_report(period)
