"""
Integrity monitoring and remediation routes.
Consistency status, gap diagnostics and heals, poller status, duplicate sweeps.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.security import require_roles, OPERATOR_ROLES
from ..db import get_db
from ..engine import IntegrityEngine, get_engine
from ..exceptions import SourceNotConfigured
from ..schemas.integrity import AnalyzeGapsIn, DuplicateCleanupIn, HealGapsIn
from ..services.audit import get_audit_logs

router = APIRouter(prefix="/integrity", tags=["integrity"])

operator = require_roles(*OPERATOR_ROLES)


@router.get("/health")
def health(db: Session = Depends(get_db), engine: IntegrityEngine = Depends(get_engine)):
    db_ok = True
    try:
        db.execute(text("select 1"))
    except SQLAlchemyError:
        db_ok = False

    return {
        "db": db_ok,
        "punch_source": engine.source is not None,
        **engine.task_states(),
    }


@router.get("/consistency")
def consistency_status(_claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    return engine.get_consistency_status()


@router.post("/consistency/check")
def consistency_check(_claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    return engine.run_consistency_check()


@router.get("/consistency/history")
def consistency_history(
    limit: int = Query(default=50, ge=1, le=500),
    _claims: dict = Depends(operator),
    engine: IntegrityEngine = Depends(get_engine),
):
    return engine.consistency.history(limit)


@router.get("/gaps/summary")
def gap_summary(
    days: int = Query(default=7, ge=1, le=62),
    _claims: dict = Depends(operator),
    engine: IntegrityEngine = Depends(get_engine),
):
    return engine.get_gap_summary(days)


@router.post("/gaps/analyze")
def analyze_gaps(payload: AnalyzeGapsIn, _claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    return engine.analyze_gaps(payload.dates)


@router.post("/gaps/heal")
def heal_gaps(payload: HealGapsIn, claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    bounds = {b.day: (b.start_id, b.end_id) for b in payload.bounds or []}
    try:
        return engine.trigger_targeted_heal(payload.dates, bounds, actor_id=claims["sub"])
    except SourceNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/poller")
def poller_status(_claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    return engine.get_poller_status()


@router.post("/poller/run")
def run_poll(_claims: dict = Depends(operator), engine: IntegrityEngine = Depends(get_engine)):
    try:
        window = engine.run_poll()
    except SourceNotConfigured as e:
        raise HTTPException(status_code=503, detail=str(e))
    if window is None:
        raise HTTPException(status_code=503, detail=engine.poller.last_error or "Poll deferred")
    return window


@router.post("/duplicates/cleanup")
def duplicate_cleanup(
    payload: Optional[DuplicateCleanupIn] = None,
    claims: dict = Depends(operator),
    engine: IntegrityEngine = Depends(get_engine),
):
    hours = payload.hours if payload else None
    return engine.run_duplicate_cleanup(hours=hours, actor_id=claims["sub"])


@router.get("/faults")
def recent_faults(
    limit: int = Query(default=50, ge=1, le=200),
    _claims: dict = Depends(operator),
    engine: IntegrityEngine = Depends(get_engine),
):
    return [e.to_dict() for e in engine.fault_bus.recent(limit)]


@router.get("/audit")
def audit_trail(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _claims: dict = Depends(operator),
    db: Session = Depends(get_db),
):
    logs = get_audit_logs(db, entity_type=entity_type, entity_id=entity_id, limit=limit, offset=offset)
    return [
        {
            "id": log.id,
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "action": log.action,
            "actor_id": log.actor_id,
            "actor_role": log.actor_role,
            "source": log.source,
            "changes": log.changes_json,
            "context": log.context,
            "timestamp_utc": log.timestamp_utc.isoformat() if log.timestamp_utc else None,
            "integrity_hash": log.integrity_hash,
        }
        for log in logs
    ]
