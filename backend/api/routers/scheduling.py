"""Scheduling router: day-off submission, dry-run validation and the scheduling lock."""
from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel, Field
from offlib.errors import SchedulingError
from offlib.models import Period
from offlib.session_lock import SessionController
from offlib.workflow import SubmissionWorkflow
from ..dependencies import (
    get_controller, get_period, get_workflow, limiter, scheduling_http_error,
    _sanitize_500, _logger,
)
from .events import broadcast

router = APIRouter(prefix="/api/scheduling", tags=["Scheduling"])


class OffDatesBody(BaseModel):
    off_dates: List[str] = Field(..., max_length=31, description="ISO dates (YYYY-MM-DD) inside the period")
    session_id: Optional[int] = Field(None, description="Session already held by the employee")


class SessionStartBody(BaseModel):
    employee_id: int
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    employee_name: str = ''


class SessionActionBody(BaseModel):
    employee_id: int = Field(..., description="Employee holding the session")


# ── Status & reads ───────────────────────────────────────────

@router.get("/status/{year}/{month}", summary="System status for a period")
def get_status(period: Period = Depends(get_period),
               workflow: SubmissionWorkflow = Depends(get_workflow)):
    """Open/busy state, active config and completion rate."""
    try:
        return workflow.get_schedule_status(period)
    except SchedulingError as e:
        raise scheduling_http_error(e)
    except Exception as e:
        raise _sanitize_500(e, 'scheduling_status')


@router.get("/busy", summary="Who holds the scheduling lock")
def get_busy(controller: SessionController = Depends(get_controller)):
    return controller.is_system_busy().to_dict()


@router.get("/employees/{employee_id}/{year}/{month}", summary="Schedule of one employee")
def get_employee_schedule(employee_id: int, period: Period = Depends(get_period),
                          workflow: SubmissionWorkflow = Depends(get_workflow)):
    try:
        return workflow.get_employee_schedule(employee_id, period).to_dict()
    except SchedulingError as e:
        raise scheduling_http_error(e)


@router.get("/summary/{year}/{month}", summary="Per-day off counts and completion statistics")
def get_summary(period: Period = Depends(get_period),
                workflow: SubmissionWorkflow = Depends(get_workflow)):
    try:
        return workflow.get_period_summary(period)
    except Exception as e:
        raise _sanitize_500(e, 'scheduling_summary')


@router.get("/conflicts/{year}/{month}", summary="Cap violations in committed data")
def get_conflicts(period: Period = Depends(get_period),
                  workflow: SubmissionWorkflow = Depends(get_workflow)):
    conflicts = workflow.scan_conflicts(period, notify=False)
    return {"conflicts": conflicts, "count": len(conflicts)}


# ── Submission ───────────────────────────────────────────────

@router.post("/validate/{employee_id}/{year}/{month}", summary="Dry-run validation")
def validate_off_dates(employee_id: int, body: OffDatesBody,
                       period: Period = Depends(get_period),
                       workflow: SubmissionWorkflow = Depends(get_workflow)):
    """Run all rules without taking the lock or writing anything."""
    try:
        return workflow.validate_only(employee_id, period, body.off_dates).to_dict()
    except SchedulingError as e:
        raise scheduling_http_error(e)


@router.post("/employees/{employee_id}/{year}/{month}", summary="Submit off-days")
@limiter.limit("30/minute")
def submit_off_dates(request: Request, employee_id: int, body: OffDatesBody,
                     period: Period = Depends(get_period),
                     workflow: SubmissionWorkflow = Depends(get_workflow)):
    """Acquire the lock (or use the given session), validate and commit.

    Rule violations answer 400 with every violation listed; nothing is written.
    """
    try:
        result = workflow.submit(employee_id, period, body.off_dates, session_id=body.session_id)
    except SchedulingError as e:
        raise scheduling_http_error(e)

    broadcast("session_ended", {"session_id": result.session_id,
                                "reason": "completed" if result.success else "rejected"})
    if not result.success:
        raise HTTPException(status_code=400, detail={
            "message": result.message,
            "violations": result.violations,
            "validation": result.validation.to_dict() if result.validation else None,
        })
    broadcast("schedule_submitted", {
        "employee_id": employee_id,
        "year": period.year,
        "month": period.month,
        "total_off_days": result.schedule.total_off_days,
    })
    return result.to_dict()


# ── Sessions ─────────────────────────────────────────────────

@router.post("/sessions", summary="Start a scheduling session", status_code=201)
@limiter.limit("30/minute")
def start_session(request: Request, body: SessionStartBody,
                  controller: SessionController = Depends(get_controller)):
    try:
        period = Period(body.year, body.month)
        session = controller.start_session(body.employee_id, body.employee_name, period)
    except SchedulingError as e:
        raise scheduling_http_error(e)
    broadcast("session_started", {"session_id": session.id, "employee_id": session.employee_id,
                                  "employee_name": session.employee_name})
    return session.to_dict(controller.now())


@router.post("/sessions/{session_id}/heartbeat", summary="Keep a session alive")
def heartbeat(session_id: int, body: SessionActionBody,
              controller: SessionController = Depends(get_controller)):
    try:
        session = controller.update_activity(session_id, body.employee_id)
    except SchedulingError as e:
        raise scheduling_http_error(e)
    return session.to_dict(controller.now())


@router.get("/sessions/{session_id}/timeout", summary="Check whether a session lapsed")
def check_timeout(session_id: int, controller: SessionController = Depends(get_controller)):
    try:
        return controller.check_timeout(session_id).to_dict()
    except SchedulingError as e:
        raise scheduling_http_error(e)


@router.post("/sessions/{session_id}/complete", summary="End a session")
def complete_session(session_id: int, body: SessionActionBody,
                     controller: SessionController = Depends(get_controller)):
    try:
        session = controller.complete_session(session_id, body.employee_id)
    except SchedulingError as e:
        raise scheduling_http_error(e)
    _logger.info("Session %s completed via API", session_id)
    broadcast("session_ended", {"session_id": session_id, "reason": "completed"})
    return session.to_dict()
