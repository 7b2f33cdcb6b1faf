from __future__ import annotations

import argparse
import logging

from warehouse_audit.config import settings
from warehouse_audit.db import SessionLocal
from warehouse_audit.services.audit_service import (
    CleanupResult,
    cleanup_expired_audit_logs,
    count_expired_audit_logs,
)


def run_cleanup(*, batch_size: int, max_batches: int | None, dry_run: bool = False) -> CleanupResult:
    with SessionLocal() as db:
        if dry_run:
            return CleanupResult(deleted_count=count_expired_audit_logs(db), dry_run=True)
        return cleanup_expired_audit_logs(db, batch_size=batch_size, max_batches=max_batches)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description='Delete audit log entries past their retention period.')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=settings.audit_cleanup_batch_size,
        help='Entries deleted per committed batch.',
    )
    parser.add_argument(
        '--max-batches',
        type=int,
        default=None,
        help='Stop after this many batches. Runs until no expired entries remain when omitted.',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only count expired entries.',
    )
    args = parser.parse_args(argv)
    if args.batch_size <= 0:
        parser.error('--batch-size must be greater than zero')
    if args.max_batches is not None and args.max_batches <= 0:
        parser.error('--max-batches must be greater than zero')

    logging.basicConfig(level=settings.log_level.upper())
    result = run_cleanup(batch_size=args.batch_size, max_batches=args.max_batches, dry_run=args.dry_run)
    if result.dry_run:
        print(f'Audit log cleanup dry run: {result.deleted_count} expired entries')
        return
    print(
        f'Audit log cleanup complete: deleted={result.deleted_count}, '
        f'batches={result.batches_processed}, duration_ms={result.duration_ms}'
    )
    if result.oldest_deleted:
        print(f'Oldest deleted entry created at {result.oldest_deleted.isoformat()}')
    if result.newest_deleted:
        print(f'Newest deleted entry created at {result.newest_deleted.isoformat()}')


if __name__ == '__main__':
    main()
