"""Employee directory router.

The directory is owned by the HR system; the create endpoint exists to seed
a fresh data directory and is admin-only.
"""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field, field_validator
from offlib.models import POSITION_REGULAR, normalize_position
from ..dependencies import get_db, require_admin, _sanitize_500, _logger

router = APIRouter()


@router.get("/api/employees", tags=["Employees"], summary="List employees",
            description="Return all active employees. Set include_hidden=true to include hidden/archived employees.")
def get_employees(include_hidden: bool = False):
    return [e.to_dict() for e in get_db().get_employees(include_hidden=include_hidden)]


@router.get("/api/employees/{emp_id}", tags=["Employees"], summary="Get employee by ID")
def get_employee(emp_id: int):
    e = get_db().get_employee(emp_id)
    if e is None:
        raise HTTPException(status_code=404, detail=f"Mitarbeiter ID {emp_id} nicht gefunden")
    return e.to_dict()


class EmployeeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    position: str = Field(POSITION_REGULAR, min_length=1, max_length=20)
    store: str = Field('', max_length=50)
    hidden: bool = False

    @field_validator('name', 'position', 'store')
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator('position')
    @classmethod
    def canonical_position(cls, v: str) -> str:
        return normalize_position(v)


@router.post("/api/employees", tags=["Employees"], summary="Create employee", status_code=201)
def create_employee(body: EmployeeCreate, _cur_user: dict = Depends(require_admin)):
    if not body.name:
        raise HTTPException(status_code=400, detail="Name darf nicht leer sein")
    try:
        emp = get_db().create_employee(body.name, body.position or POSITION_REGULAR,
                                       body.store, body.hidden)
    except Exception as e:
        raise _sanitize_500(e, 'create_employee')
    _logger.warning("AUDIT employee created id=%s name=%s store=%s", emp.id, emp.name, emp.store)
    return {"ok": True, "record": emp.to_dict()}
