"""
Mobile self-service punch routes.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..auth.security import get_current_employee_code, require_roles, OPERATOR_ROLES
from ..engine import IntegrityEngine, get_engine
from ..exceptions import LedgerConflictError
from ..schemas.punches import MobilePunchIn, MobilePunchResult

router = APIRouter(prefix="/attendance/mobile", tags=["attendance"])


@router.post("/punch", response_model=MobilePunchResult)
def submit_punch(
    payload: MobilePunchIn,
    employee_code: str = Depends(get_current_employee_code),
    engine: IntegrityEngine = Depends(get_engine),
):
    # Rejections come back as 200 with can_punch=false and the violations list
    try:
        return engine.submit_mobile_punch(
            employee_code=employee_code,
            punch_type=payload.punch_type.value,
            lat=payload.latitude,
            lon=payload.longitude,
            punch_time=payload.timestamp,
            accuracy=payload.accuracy,
            device_id=payload.device_id,
        )
    except LedgerConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/validations/stats")
def validation_stats(
    employee_code: Optional[str] = None,
    days: Optional[int] = None,
    _claims: dict = Depends(require_roles(*OPERATOR_ROLES)),
    engine: IntegrityEngine = Depends(get_engine),
):
    return engine.validator.get_validation_stats(employee_code=employee_code, days=days)
