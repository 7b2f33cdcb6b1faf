from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from warehouse_audit.auth import Principal, Role, require_role
from warehouse_audit.db import get_db
from warehouse_audit.dependencies import get_audit_writer, get_client_ip
from warehouse_audit.exceptions import ConsistencyAnalysisError, ResourceNotFoundError, StockConflictError
from warehouse_audit.models import AuditAction
from warehouse_audit.schemas import ConsistencyFixRequest
from warehouse_audit.services.audit_service import (
    DEFAULT_PAGE_SIZE,
    AuditLogFilters,
    get_audit_log_stats,
    list_audit_logs,
)
from warehouse_audit.services.audit_writer import AuditLogWriter
from warehouse_audit.services.consistency_fix_service import apply_fix
from warehouse_audit.services.delivery_consistency_service import run_consistency_analysis

router = APIRouter(prefix='/audit', tags=['audit'])
audit_access = require_role(Role.ADMIN, Role.MANAGER)


@router.get('/delivery-consistency')
def delivery_consistency(
    warehouse_id: int | None = Query(default=None, gt=0),
    _: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
) -> dict:
    try:
        report = run_consistency_analysis(db, warehouse_id=warehouse_id)
    except ConsistencyAnalysisError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    return report.to_dict()


@router.post('/delivery-consistency/fix')
def delivery_consistency_fix(
    payload: ConsistencyFixRequest,
    request: Request,
    principal: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
    audit_writer: AuditLogWriter = Depends(get_audit_writer),
) -> dict:
    try:
        result = apply_fix(
            db,
            payload,
            actor_id=principal.id,
            audit_writer=audit_writer,
            metadata={'ip': get_client_ip(request), 'user_agent': request.headers.get('user-agent')},
        )
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except StockConflictError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return {'success': True, 'message': result.message, 'changed': result.changed}


@router.get('/logs')
def audit_logs(
    entity_type: str | None = None,
    entity_id: int | None = None,
    actor_id: int | None = None,
    action: AuditAction | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1),
    _: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
) -> dict:
    filters = AuditLogFilters(
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        action=action,
        date_from=date_from,
        date_to=date_to,
    )
    return list_audit_logs(db, filters, page=page, limit=limit)


@router.get('/logs/stats')
def audit_log_stats(
    _: Principal = Depends(audit_access),
    db: Session = Depends(get_db),
) -> dict:
    return get_audit_log_stats(db)


@router.get('/writer/stats')
def audit_writer_stats(
    _: Principal = Depends(audit_access),
    audit_writer: AuditLogWriter = Depends(get_audit_writer),
) -> dict:
    return {
        'writer': audit_writer.stats().to_dict(),
        'retention': audit_writer.policy.describe(),
    }
