"""Batched, rate-limited writer for audit log entries."""

from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from sqlalchemy import insert
from sqlalchemy.orm import Session

from warehouse_audit.config import settings
from warehouse_audit.models import AuditAction, AuditLog
from warehouse_audit.services.audit_diff import build_change_payload, filter_sensitive, to_json_safe
from warehouse_audit.services.audit_policy import RetentionPolicyTable

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(minutes=1)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class AuditWriterConfig:
    batch_size: int = 10
    batch_timeout_seconds: float = 5.0
    flush_check_interval_seconds: float = 2.0
    max_queue_size: int = 100
    rate_limit_per_minute: int = 50
    rate_limit_cleanup_interval_seconds: float = 60.0
    requeue_max_batch: int = 20
    max_changes_bytes: int = 5000

    @classmethod
    def from_settings(cls) -> AuditWriterConfig:
        return cls(
            batch_size=settings.audit_batch_size,
            batch_timeout_seconds=settings.audit_batch_timeout_seconds,
            flush_check_interval_seconds=settings.audit_flush_check_interval_seconds,
            max_queue_size=settings.audit_max_queue_size,
            rate_limit_per_minute=settings.audit_rate_limit_per_minute,
            rate_limit_cleanup_interval_seconds=settings.audit_rate_limit_cleanup_interval_seconds,
            requeue_max_batch=settings.audit_requeue_max_batch,
            max_changes_bytes=settings.audit_max_changes_bytes,
        )


@dataclass(frozen=True)
class ChangeSubmission:
    actor_id: int | None
    action: AuditAction
    entity_type: str
    entity_id: int
    old_values: Mapping[str, Any] | None
    new_values: Mapping[str, Any] | None
    metadata: Mapping[str, Any] | None
    submitted_at: datetime


@dataclass(frozen=True)
class PendingAuditEntry:
    actor_id: int | None
    action: AuditAction
    entity_type: str
    entity_id: int
    changes: dict
    metadata: dict | None
    created_at: datetime
    expires_at: datetime
    requeued: bool = False

    def to_row(self) -> dict:
        return {
            'actor_id': self.actor_id,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'changes': self.changes,
            'meta': self.metadata,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
        }


class SubmissionOutcome(str, Enum):
    QUEUED = 'QUEUED'
    NOT_AUDITABLE = 'NOT_AUDITABLE'
    RATE_LIMITED = 'RATE_LIMITED'
    NO_CHANGES = 'NO_CHANGES'
    INVALID = 'INVALID'


@dataclass(frozen=True)
class AuditWriterStats:
    queue_size: int
    pending_submissions: int
    is_processing: bool
    rate_limited_actors: int
    tracked_actors: int
    last_flush_at: datetime
    persisted_entries: int
    dropped_entries: int
    failed_flushes: int
    running: bool
    config: AuditWriterConfig

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload['last_flush_at'] = self.last_flush_at.isoformat()
        return payload


class AuditLogWriter:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        config: AuditWriterConfig | None = None,
        policy: RetentionPolicyTable | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or AuditWriterConfig.from_settings()
        self._policy = policy or RetentionPolicyTable.from_settings()
        self._clock = clock or _now

        self._lock = threading.Lock()
        self._inbox: queue.Queue[ChangeSubmission] = queue.Queue()
        self._queue: deque[PendingAuditEntry] = deque()
        self._windows: dict[int | None, deque[datetime]] = {}
        self._processing = False
        self._last_flush = self._clock()
        self._last_rate_limit_cleanup = self._last_flush
        self._persisted = 0
        self._dropped = 0
        self._failed_flushes = 0

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def config(self) -> AuditWriterConfig:
        return self._config

    @property
    def policy(self) -> RetentionPolicyTable:
        return self._policy

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    # Submission

    def log_change(
        self,
        actor_id: int | None,
        action: AuditAction | str,
        entity_type: str,
        entity_id: int,
        old_values: Mapping[str, Any] | None = None,
        new_values: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            submission = ChangeSubmission(
                actor_id=actor_id,
                action=AuditAction(action),
                entity_type=entity_type,
                entity_id=int(entity_id),
                old_values=dict(old_values) if old_values is not None else None,
                new_values=dict(new_values) if new_values is not None else None,
                metadata=dict(metadata) if metadata is not None else None,
                submitted_at=self._clock(),
            )
            self._inbox.put_nowait(submission)
        except Exception:
            logger.exception('Could not submit audit entry for %s:%s', entity_type, entity_id)

    def log_create(self, actor_id, entity_type: str, entity_id: int, values, metadata=None) -> None:
        self.log_change(actor_id, AuditAction.CREATE, entity_type, entity_id, new_values=values, metadata=metadata)

    def log_update(self, actor_id, entity_type: str, entity_id: int, old_values, new_values, metadata=None) -> None:
        self.log_change(
            actor_id,
            AuditAction.UPDATE,
            entity_type,
            entity_id,
            old_values=old_values,
            new_values=new_values,
            metadata=metadata,
        )

    def log_delete(self, actor_id, entity_type: str, entity_id: int, values, metadata=None) -> None:
        self.log_change(actor_id, AuditAction.DELETE, entity_type, entity_id, old_values=values, metadata=metadata)

    def process_pending(self) -> int:
        """Drain the inbox on the calling thread. Returns submissions handled."""
        processed = 0
        while True:
            try:
                submission = self._inbox.get_nowait()
            except queue.Empty:
                return processed
            self.accept(submission)
            processed += 1

    def accept(self, submission: ChangeSubmission) -> SubmissionOutcome:
        try:
            return self._accept(submission)
        except Exception:
            logger.exception(
                'Failed to queue audit entry for %s:%s', submission.entity_type, submission.entity_id
            )
            return SubmissionOutcome.INVALID

    def _accept(self, submission: ChangeSubmission) -> SubmissionOutcome:
        if not self._policy.is_auditable(submission.entity_type):
            return SubmissionOutcome.NOT_AUDITABLE

        changes = build_change_payload(
            submission.old_values,
            submission.new_values,
            max_bytes=self._config.max_changes_bytes,
        )
        if changes is None:
            return SubmissionOutcome.NO_CHANGES

        with self._lock:
            allowed = self._check_rate_limit_locked(submission.actor_id, submission.submitted_at)
        if not allowed:
            logger.warning('Audit rate limit exceeded for actor %s', submission.actor_id)
            return SubmissionOutcome.RATE_LIMITED

        if changes.get('truncated') is True:
            logger.warning(
                'Audit diff for %s:%s exceeded %d bytes (%s); storing placeholder',
                submission.entity_type,
                submission.entity_id,
                self._config.max_changes_bytes,
                changes.get('size'),
            )

        metadata = to_json_safe(filter_sensitive(submission.metadata)) if submission.metadata else None
        entry = PendingAuditEntry(
            actor_id=submission.actor_id,
            action=submission.action,
            entity_type=submission.entity_type,
            entity_id=submission.entity_id,
            changes=changes,
            metadata=metadata,
            created_at=submission.submitted_at,
            expires_at=self._policy.expiry_of(submission.entity_type, submission.submitted_at),
        )
        with self._lock:
            self._append_locked(entry)
            batch_ready = len(self._queue) >= self._config.batch_size
        if batch_ready:
            self.flush()
        return SubmissionOutcome.QUEUED

    def _check_rate_limit_locked(self, actor_id: int | None, now: datetime) -> bool:
        window = self._windows.setdefault(actor_id, deque())
        cutoff = now - RATE_LIMIT_WINDOW
        while window and window[0] <= cutoff:
            window.popleft()
        if len(window) >= self._config.rate_limit_per_minute:
            return False
        window.append(now)
        return True

    def _append_locked(self, entry: PendingAuditEntry) -> None:
        capacity = self._config.max_queue_size
        if len(self._queue) >= capacity:
            keep = capacity // 2
            dropped = len(self._queue) - keep
            for _ in range(dropped):
                self._queue.popleft()
            self._dropped += dropped
            logger.warning('Audit queue full (%d entries); dropped %d oldest entries', capacity, dropped)
        self._queue.append(entry)

    # Flushing

    def should_flush(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        with self._lock:
            if not self._queue:
                return False
            elapsed = (now - self._last_flush).total_seconds()
            return elapsed > self._config.batch_timeout_seconds

    def tick(self, now: datetime | None = None) -> int:
        """Run the periodic checks once. Returns the number of entries flushed."""
        now = now or self._clock()
        flushed = self.flush() if self.should_flush(now) else 0

        cleanup_due = False
        with self._lock:
            elapsed = (now - self._last_rate_limit_cleanup).total_seconds()
            if elapsed >= self._config.rate_limit_cleanup_interval_seconds:
                cleanup_due = True
        if cleanup_due:
            self.cleanup_rate_limits(now)
        return flushed

    def flush(self) -> int:
        with self._lock:
            if self._processing or not self._queue:
                return 0
            self._processing = True
            batch = list(self._queue)
            self._queue.clear()
            self._last_flush = self._clock()

        try:
            with self._session_factory() as db:
                db.execute(insert(AuditLog), [entry.to_row() for entry in batch])
                db.commit()
        except Exception:
            logger.exception('Failed to flush %d audit entries', len(batch))
            self._requeue_failed(batch)
            return 0
        else:
            with self._lock:
                self._persisted += len(batch)
            logger.debug('Flushed %d audit entries', len(batch))
            return len(batch)
        finally:
            with self._lock:
                self._processing = False

    def _requeue_failed(self, batch: list[PendingAuditEntry]) -> None:
        retryable = [entry for entry in batch if not entry.requeued]
        with self._lock:
            self._failed_flushes += 1
            if len(batch) >= self._config.requeue_max_batch or not retryable:
                self._dropped += len(batch)
                logger.error('Dropped %d audit entries after failed flush', len(batch))
                return
            self._dropped += len(batch) - len(retryable)
            for entry in reversed(retryable):
                self._queue.appendleft(replace(entry, requeued=True))
            overflow = len(self._queue) - self._config.max_queue_size
            for _ in range(max(overflow, 0)):
                self._queue.popleft()
                self._dropped += 1
        logger.warning('Re-queued %d audit entries after failed flush', len(retryable))

    def cleanup_rate_limits(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        cutoff = now - RATE_LIMIT_WINDOW
        removed = 0
        with self._lock:
            for actor_id in list(self._windows):
                window = self._windows[actor_id]
                while window and window[0] <= cutoff:
                    window.popleft()
                if not window:
                    del self._windows[actor_id]
                    removed += 1
            self._last_rate_limit_cleanup = now
        return removed

    # Lifecycle

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run_intake, name='audit-writer-intake', daemon=True),
            threading.Thread(target=self._run_timer, name='audit-writer-timer', daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            'Audit writer started (batch_size=%d, batch_timeout=%ss)',
            self._config.batch_size,
            self._config.batch_timeout_seconds,
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        self._threads = []
        self.process_pending()
        self.flush()
        logger.info('Audit writer stopped')

    def _run_intake(self) -> None:
        while not self._stop_event.is_set():
            try:
                submission = self._inbox.get(timeout=self._config.flush_check_interval_seconds)
            except queue.Empty:
                continue
            self.accept(submission)

    def _run_timer(self) -> None:
        while not self._stop_event.wait(timeout=self._config.flush_check_interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception('Audit writer tick failed')

    def stats(self) -> AuditWriterStats:
        with self._lock:
            limit = self._config.rate_limit_per_minute
            now = self._clock()
            cutoff = now - RATE_LIMIT_WINDOW
            rate_limited = sum(
                1 for window in self._windows.values() if sum(1 for ts in window if ts > cutoff) >= limit
            )
            return AuditWriterStats(
                queue_size=len(self._queue),
                pending_submissions=self._inbox.qsize(),
                is_processing=self._processing,
                rate_limited_actors=rate_limited,
                tracked_actors=len(self._windows),
                last_flush_at=self._last_flush,
                persisted_entries=self._persisted,
                dropped_entries=self._dropped,
                failed_flushes=self._failed_flushes,
                running=self.running,
                config=self._config,
            )
