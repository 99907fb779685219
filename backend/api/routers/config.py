"""Config router: per-period limits, opening window and calendar exceptions."""
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field, field_validator, model_validator
from offlib.models import EXCEPTION_FORBIDDEN, EXCEPTION_HOLIDAY, Period
from ..dependencies import get_db, get_period, require_admin, _sanitize_500, _logger
from .events import broadcast

router = APIRouter(prefix="/api/config", tags=["Config"])


class ConfigUpdate(BaseModel):
    max_off_days_per_person: Optional[int] = Field(None, ge=0, le=31)
    max_off_days_per_day: Optional[int] = Field(None, ge=0, le=999)
    max_weekend_off_days: Optional[int] = Field(None, ge=0, le=31)
    max_store_off_days_per_day: Optional[int] = Field(None, ge=0, le=999)
    max_part_time_off_days: Optional[int] = Field(None, ge=0, le=999)
    max_standby_off_days: Optional[int] = Field(None, ge=0, le=999)
    system_open_at: Optional[datetime] = None
    system_close_at: Optional[datetime] = None
    session_time_limit: Optional[int] = Field(None, ge=1, le=1440, description="Minutes")
    holiday_dates: Optional[List[date]] = None
    forbidden_dates: Optional[List[date]] = None
    store_holiday_dates: Optional[Dict[str, List[date]]] = None
    store_forbidden_dates: Optional[Dict[str, List[date]]] = None

    @field_validator('system_open_at', 'system_close_at')
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode='after')
    def window_order(self):
        if self.system_open_at and self.system_close_at and self.system_close_at <= self.system_open_at:
            raise ValueError("system_close_at muss nach system_open_at liegen")
        return self


class CalendarExceptionBody(BaseModel):
    day: date = Field(..., alias="date")
    kind: str = Field(..., pattern=f"^({EXCEPTION_HOLIDAY}|{EXCEPTION_FORBIDDEN})$")
    store: str = Field('', max_length=50)
    note: str = Field('', max_length=100)


def _check_in_period(period: Period, dates) -> None:
    outside = sorted(d.isoformat() for d in dates if not period.contains(d))
    if outside:
        raise HTTPException(status_code=400,
                            detail=f"Daten liegen nicht im Zeitraum {period}: {', '.join(outside)}")


@router.get("/{year}/{month}", summary="Active config of a period")
def get_config(period: Period = Depends(get_period)):
    """Returns the active config; defaults are provisioned on first access."""
    try:
        return get_db().get_or_create_config(period).to_dict()
    except Exception as e:
        raise _sanitize_500(e, 'get_config')


@router.put("/{year}/{month}", summary="Update the config of a period")
def update_config(body: ConfigUpdate, period: Period = Depends(get_period),
                  _cur_user: dict = Depends(require_admin)):
    """Supersede the active config. Omitted fields keep their current value."""
    db = get_db()
    current = db.get_or_create_config(period)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)

    for key in ('holiday_dates', 'forbidden_dates'):
        if key in changes:
            _check_in_period(period, changes[key])
            changes[key] = set(changes[key])
    for key in ('store_holiday_dates', 'store_forbidden_dates'):
        if key in changes:
            for dates in changes[key].values():
                _check_in_period(period, dates)
            changes[key] = {s.strip(): set(v) for s, v in changes[key].items() if s.strip()}

    updated = replace(current, **changes)
    if updated.system_close_at <= updated.system_open_at:
        raise HTTPException(status_code=400, detail="system_close_at muss nach system_open_at liegen")
    try:
        saved = db.save_config(updated)
    except Exception as e:
        raise _sanitize_500(e, 'update_config')
    _logger.warning("AUDIT config updated period=%s fields=%s", period, sorted(changes))
    broadcast("config_changed", {"year": period.year, "month": period.month})
    return saved.to_dict()


@router.post("/{year}/{month}/exceptions", summary="Add a holiday or forbidden date", status_code=201)
def add_exception(body: CalendarExceptionBody, period: Period = Depends(get_period),
                  _cur_user: dict = Depends(require_admin)):
    _check_in_period(period, [body.day])
    try:
        config = get_db().add_calendar_exception(period, body.day, body.kind,
                                                 body.store.strip(), body.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    _logger.warning("AUDIT calendar exception added period=%s date=%s kind=%s store=%s",
                    period, body.day, body.kind, body.store or '*')
    broadcast("config_changed", {"year": period.year, "month": period.month})
    return config.to_dict()


@router.delete("/{year}/{month}/exceptions", summary="Remove a holiday or forbidden date")
def remove_exception(body: CalendarExceptionBody, period: Period = Depends(get_period),
                     _cur_user: dict = Depends(require_admin)):
    removed = get_db().remove_calendar_exception(period, body.day, body.kind, body.store.strip())
    if not removed:
        raise HTTPException(status_code=404, detail="Ausnahme nicht gefunden")
    _logger.warning("AUDIT calendar exception removed period=%s date=%s kind=%s store=%s",
                    period, body.day, body.kind, body.store or '*')
    broadcast("config_changed", {"year": period.year, "month": period.month})
    return {"ok": True}
