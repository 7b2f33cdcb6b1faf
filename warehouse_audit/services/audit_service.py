from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from warehouse_audit.models import AuditAction, AuditLog, User

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
ESTIMATED_KB_PER_LOG = 1.2
RECENT_ACTIVITY_WINDOW = timedelta(hours=24)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


@dataclass(frozen=True)
class AuditLogFilters:
    entity_type: str | None = None
    entity_id: int | None = None
    actor_id: int | None = None
    action: AuditAction | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def clauses(self) -> list:
        clauses = []
        if self.entity_type:
            clauses.append(AuditLog.entity_type == self.entity_type)
        if self.entity_id is not None:
            clauses.append(AuditLog.entity_id == self.entity_id)
        if self.actor_id is not None:
            clauses.append(AuditLog.actor_id == self.actor_id)
        if self.action is not None:
            clauses.append(AuditLog.action == AuditAction(self.action))
        if self.date_from is not None:
            clauses.append(AuditLog.created_at >= self.date_from)
        if self.date_to is not None:
            clauses.append(AuditLog.created_at <= self.date_to)
        return clauses


def _serialize_log(log: AuditLog, actor_email: str | None) -> dict:
    return {
        'id': log.id,
        'actor_id': log.actor_id,
        'actor_email': actor_email,
        'action': log.action.value,
        'entity_type': log.entity_type,
        'entity_id': log.entity_id,
        'changes': log.changes,
        'metadata': log.meta,
        'created_at': _iso(log.created_at),
        'expires_at': _iso(log.expires_at),
    }


def list_audit_logs(
    db: Session,
    filters: AuditLogFilters | None = None,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """Newest-first page of audit entries with the actor's email."""
    filters = filters or AuditLogFilters()
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    clauses = filters.clauses()

    total = db.execute(select(func.count(AuditLog.id)).where(*clauses)).scalar_one()
    rows = db.execute(
        select(AuditLog, User.email)
        .outerjoin(User, User.id == AuditLog.actor_id)
        .where(*clauses)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    return {
        'logs': [_serialize_log(log, email) for log, email in rows],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': math.ceil(total / limit),
        },
    }


def _percentage(count: int, total: int) -> float:
    if not total:
        return 0.0
    return round(count * 100 / total, 2)


def get_audit_log_stats(db: Session, *, now: datetime | None = None) -> dict:
    now = now or _now()
    total = db.execute(select(func.count(AuditLog.id))).scalar_one()
    expired = db.execute(select(func.count(AuditLog.id)).where(AuditLog.expires_at < now)).scalar_one()
    recent = db.execute(
        select(func.count(AuditLog.id)).where(AuditLog.created_at >= now - RECENT_ACTIVITY_WINDOW)
    ).scalar_one()

    by_entity = db.execute(
        select(AuditLog.entity_type, func.count(AuditLog.id).label('count'))
        .group_by(AuditLog.entity_type)
        .order_by(func.count(AuditLog.id).desc(), AuditLog.entity_type.asc())
    ).all()
    by_action = db.execute(
        select(AuditLog.action, func.count(AuditLog.id).label('count'))
        .group_by(AuditLog.action)
        .order_by(func.count(AuditLog.id).desc())
    ).all()

    return {
        'total': total,
        'expired': expired,
        'active': total - expired,
        'recent_activity': recent,
        'storage_estimate_mb': round(total * ESTIMATED_KB_PER_LOG / 1024, 2),
        'by_entity_type': [
            {'entity_type': entity_type, 'count': count, 'percentage': _percentage(count, total)}
            for entity_type, count in by_entity
        ],
        'by_action': [
            {'action': AuditAction(action).value, 'count': count, 'percentage': _percentage(count, total)}
            for action, count in by_action
        ],
    }


@dataclass
class CleanupResult:
    deleted_count: int = 0
    batches_processed: int = 0
    oldest_deleted: datetime | None = None
    newest_deleted: datetime | None = None
    duration_ms: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            'deleted_count': self.deleted_count,
            'batches_processed': self.batches_processed,
            'oldest_deleted': _iso(self.oldest_deleted),
            'newest_deleted': _iso(self.newest_deleted),
            'duration_ms': self.duration_ms,
            'dry_run': self.dry_run,
        }


def count_expired_audit_logs(db: Session, *, now: datetime | None = None) -> int:
    now = now or _now()
    return db.execute(select(func.count(AuditLog.id)).where(AuditLog.expires_at < now)).scalar_one()


def cleanup_expired_audit_logs(
    db: Session,
    *,
    now: datetime | None = None,
    batch_size: int = 1000,
    max_batches: int | None = None,
) -> CleanupResult:
    """Delete expired entries oldest-expiry first, one committed batch at a time.

    Stops after ``max_batches`` so a scheduled caller stays within its time
    limit; the next run picks up where this one left off.
    """
    if batch_size <= 0:
        raise ValueError('batch_size must be greater than zero')
    if max_batches is not None and max_batches <= 0:
        raise ValueError('max_batches must be greater than zero')

    now = now or _now()
    started = time.monotonic()
    result = CleanupResult()

    while max_batches is None or result.batches_processed < max_batches:
        expired = db.execute(
            select(AuditLog.id, AuditLog.created_at)
            .where(AuditLog.expires_at < now)
            .order_by(AuditLog.expires_at.asc(), AuditLog.id.asc())
            .limit(batch_size)
        ).all()
        if not expired:
            break

        if result.oldest_deleted is None:
            result.oldest_deleted = expired[0].created_at
        result.newest_deleted = expired[-1].created_at

        try:
            deleted = db.execute(
                delete(AuditLog).where(AuditLog.id.in_([row.id for row in expired]))
            ).rowcount
            db.commit()
        except Exception:
            db.rollback()
            raise

        result.deleted_count += deleted
        result.batches_processed += 1
        logger.info('Audit cleanup batch %d: %d entries deleted', result.batches_processed, deleted)
        if len(expired) < batch_size:
            break

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        'Audit cleanup finished: %d entries in %d batches (%d ms)',
        result.deleted_count,
        result.batches_processed,
        result.duration_ms,
    )
    return result
