from __future__ import annotations

import io
import unittest
from contextlib import redirect_stdout
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import func, select

from db_support import NOW, make_session_factory, seed_catalog
from warehouse_audit import cleanup_audit_logs
from warehouse_audit.models import AuditAction, AuditLog
from warehouse_audit.services.audit_service import (
    AuditLogFilters,
    cleanup_expired_audit_logs,
    count_expired_audit_logs,
    get_audit_log_stats,
    list_audit_logs,
)


class AuditServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            self.catalog = seed_catalog(db)

    def _add_log(
        self,
        *,
        entity_type='Delivery',
        entity_id=1,
        action=AuditAction.CREATE,
        created_at=NOW,
        expires_at=None,
        actor_id=None,
    ) -> None:
        with self.session_factory() as db:
            db.add(
                AuditLog(
                    actor_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    changes={'quantity': entity_id},
                    created_at=created_at,
                    expires_at=expires_at or created_at + timedelta(days=730),
                )
            )
            db.commit()

    def _count(self) -> int:
        with self.session_factory() as db:
            return db.execute(select(func.count(AuditLog.id))).scalar_one()


class ListAuditLogsTests(AuditServiceTestCase):
    def test_newest_first_with_actor_email(self) -> None:
        self._add_log(entity_id=1, created_at=NOW - timedelta(hours=2), actor_id=self.catalog.user.id)
        self._add_log(entity_id=2, created_at=NOW - timedelta(hours=1))

        with self.session_factory() as db:
            result = list_audit_logs(db)

        self.assertEqual([log['entity_id'] for log in result['logs']], [2, 1])
        self.assertEqual(result['logs'][1]['actor_email'], 'warehouse.lead@example.com')
        self.assertIsNone(result['logs'][0]['actor_email'])
        self.assertEqual(result['pagination'], {'page': 1, 'limit': 50, 'total': 2, 'total_pages': 1})

    def test_filters(self) -> None:
        self._add_log(entity_type='Delivery', entity_id=1, action=AuditAction.CREATE)
        self._add_log(entity_type='Delivery', entity_id=1, action=AuditAction.UPDATE, created_at=NOW + timedelta(minutes=1))
        self._add_log(entity_type='StockMovement', entity_id=5, action=AuditAction.DELETE, created_at=NOW - timedelta(days=3))

        with self.session_factory() as db:
            by_entity = list_audit_logs(db, AuditLogFilters(entity_type='Delivery', entity_id=1))
            by_action = list_audit_logs(db, AuditLogFilters(action=AuditAction.DELETE))
            by_date = list_audit_logs(db, AuditLogFilters(date_from=NOW - timedelta(days=1)))

        self.assertEqual(by_entity['pagination']['total'], 2)
        self.assertEqual([log['entity_type'] for log in by_action['logs']], ['StockMovement'])
        self.assertEqual(by_date['pagination']['total'], 2)

    def test_page_size_is_capped(self) -> None:
        for index in range(3):
            self._add_log(entity_id=index + 1, created_at=NOW + timedelta(minutes=index))

        with self.session_factory() as db:
            capped = list_audit_logs(db, limit=500)
            second_page = list_audit_logs(db, page=2, limit=2)

        self.assertEqual(capped['pagination']['limit'], 100)
        self.assertEqual([log['entity_id'] for log in second_page['logs']], [1])
        self.assertEqual(second_page['pagination']['total_pages'], 2)


class AuditLogStatsTests(AuditServiceTestCase):
    def test_counts_and_distribution(self) -> None:
        self._add_log(entity_type='Delivery', created_at=NOW - timedelta(hours=1))
        self._add_log(entity_type='Delivery', action=AuditAction.UPDATE, created_at=NOW - timedelta(days=2))
        self._add_log(
            entity_type='StockMovement',
            action=AuditAction.DELETE,
            created_at=NOW - timedelta(days=400),
            expires_at=NOW - timedelta(days=35),
        )

        with self.session_factory() as db:
            stats = get_audit_log_stats(db, now=NOW)

        self.assertEqual(stats['total'], 3)
        self.assertEqual(stats['expired'], 1)
        self.assertEqual(stats['active'], 2)
        self.assertEqual(stats['recent_activity'], 1)
        self.assertEqual(
            stats['by_entity_type'],
            [
                {'entity_type': 'Delivery', 'count': 2, 'percentage': 66.67},
                {'entity_type': 'StockMovement', 'count': 1, 'percentage': 33.33},
            ],
        )
        self.assertEqual(sorted(item['action'] for item in stats['by_action']), ['CREATE', 'DELETE', 'UPDATE'])

    def test_empty_table(self) -> None:
        with self.session_factory() as db:
            stats = get_audit_log_stats(db, now=NOW)

        self.assertEqual(stats['total'], 0)
        self.assertEqual(stats['storage_estimate_mb'], 0)
        self.assertEqual(stats['by_entity_type'], [])


class CleanupExpiredAuditLogsTests(AuditServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        for index in range(5):
            self._add_log(
                entity_id=index + 1,
                created_at=NOW - timedelta(days=1500 - index),
                expires_at=NOW - timedelta(days=700 - index),
            )
        self._add_log(entity_id=99, created_at=NOW)

    def test_deletes_only_expired_rows_in_batches(self) -> None:
        with self.session_factory() as db:
            result = cleanup_expired_audit_logs(db, now=NOW, batch_size=2)

        self.assertEqual(result.deleted_count, 5)
        self.assertEqual(result.batches_processed, 3)
        self.assertEqual(result.oldest_deleted.replace(tzinfo=None), (NOW - timedelta(days=1500)).replace(tzinfo=None))
        self.assertEqual(result.newest_deleted.replace(tzinfo=None), (NOW - timedelta(days=1496)).replace(tzinfo=None))
        self.assertEqual(self._count(), 1)

    def test_max_batches_leaves_the_rest_for_the_next_run(self) -> None:
        with self.session_factory() as db:
            first = cleanup_expired_audit_logs(db, now=NOW, batch_size=2, max_batches=1)
            remaining = count_expired_audit_logs(db, now=NOW)

        self.assertEqual(first.deleted_count, 2)
        self.assertEqual(first.batches_processed, 1)
        self.assertEqual(remaining, 3)

    def test_rejects_invalid_batch_size(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(ValueError):
                cleanup_expired_audit_logs(db, now=NOW, batch_size=0)

    def test_cli_dry_run_only_counts(self) -> None:
        output = io.StringIO()
        with patch.object(cleanup_audit_logs, 'SessionLocal', self.session_factory), redirect_stdout(output):
            cleanup_audit_logs.main(['--dry-run'])

        self.assertIn('5 expired entries', output.getvalue())
        self.assertEqual(self._count(), 6)

    def test_cli_deletes_expired_entries(self) -> None:
        output = io.StringIO()
        with patch.object(cleanup_audit_logs, 'SessionLocal', self.session_factory), redirect_stdout(output):
            cleanup_audit_logs.main(['--batch-size', '4'])

        self.assertIn('deleted=5, batches=2', output.getvalue())
        self.assertEqual(self._count(), 1)


if __name__ == '__main__':
    unittest.main()
