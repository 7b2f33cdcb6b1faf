from fastapi import HTTPException, Request, status

from warehouse_audit.services.audit_writer import AuditLogWriter


def get_audit_writer(request: Request) -> AuditLogWriter:
    writer = getattr(request.app.state, 'audit_writer', None)
    if writer is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail='Audit writer is not running')
    return writer


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
