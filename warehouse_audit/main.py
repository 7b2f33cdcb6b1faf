import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from warehouse_audit.config import settings
from warehouse_audit.db import SessionLocal
from warehouse_audit.routers import audit, cron
from warehouse_audit.services.audit_writer import AuditLogWriter

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    writer = AuditLogWriter(SessionLocal)
    app.state.audit_writer = writer
    writer.start()
    try:
        yield
    finally:
        writer.stop()


app = FastAPI(title='PPE Warehouse Audit', lifespan=lifespan)

app.include_router(audit.router)
app.include_router(cron.router)


@app.get('/healthz')
def healthz() -> dict:
    return {'status': 'ok'}
