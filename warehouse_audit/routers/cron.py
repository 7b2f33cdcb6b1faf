from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from warehouse_audit.config import settings
from warehouse_audit.db import get_db
from warehouse_audit.services.audit_service import cleanup_expired_audit_logs

router = APIRouter(prefix='/cron', tags=['cron'])


def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    if not settings.cron_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='Cron secret is not configured')
    expected = f'Bearer {settings.cron_secret}'
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get('/cleanup-audit-logs', dependencies=[Depends(verify_cron_secret)])
def cleanup_audit_logs(db: Session = Depends(get_db)) -> dict:
    result = cleanup_expired_audit_logs(
        db,
        batch_size=settings.audit_cleanup_batch_size,
        max_batches=settings.audit_cleanup_max_batches,
    )
    payload = result.to_dict()
    payload.pop('dry_run')
    return {'success': True, **payload}
