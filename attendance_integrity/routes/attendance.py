"""
Operator actions on the attendance ledger.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import require_roles, OPERATOR_ROLES
from ..db import get_db
from ..engine import IntegrityEngine, get_engine
from ..exceptions import LedgerConflictError
from ..schemas.punches import AttendanceRecordOut, ForceCheckoutIn, VoidRecordIn
from ..services.ledger import record_to_dict
from ..services.time_rules import to_local_naive

router = APIRouter(prefix="/attendance/records", tags=["attendance"])

operator = require_roles(*OPERATOR_ROLES)


@router.get("/{employee_code}/{day}", response_model=AttendanceRecordOut)
def get_record(
    employee_code: str,
    day: date,
    _claims: dict = Depends(operator),
    db: Session = Depends(get_db),
    engine: IntegrityEngine = Depends(get_engine),
):
    record = engine.ledger.get_record(db, employee_code, day)
    if record is None:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    return record_to_dict(record)


@router.post("/{employee_code}/{day}/force-checkout", response_model=AttendanceRecordOut)
def force_checkout(
    employee_code: str,
    day: date,
    payload: ForceCheckoutIn,
    claims: dict = Depends(operator),
    db: Session = Depends(get_db),
    engine: IntegrityEngine = Depends(get_engine),
):
    try:
        record = engine.ledger.force_checkout(
            db,
            employee_code,
            day,
            to_local_naive(payload.checkout_time),
            actor_id=claims["sub"],
            reason=payload.reason,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LedgerConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    return record_to_dict(record)


@router.delete("/{employee_code}/{day}", response_model=AttendanceRecordOut)
def void_record(
    employee_code: str,
    day: date,
    payload: Optional[VoidRecordIn] = None,
    claims: dict = Depends(operator),
    db: Session = Depends(get_db),
    engine: IntegrityEngine = Depends(get_engine),
):
    try:
        record = engine.ledger.void_record(
            db,
            employee_code,
            day,
            actor_id=claims["sub"],
            reason=payload.reason if payload else None,
        )
    except LedgerConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    return record_to_dict(record)
