from __future__ import annotations

import unittest
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy import select

from db_support import NOW, FakeClock, add_delivery, add_movement, make_session_factory, seed_catalog, stock_level
from warehouse_audit.exceptions import InsufficientStockError, ResourceNotFoundError, StockConflictError
from warehouse_audit.models import AuditAction, AuditLog, Delivery, FixAction, MovementType, StockMovement
from warehouse_audit.schemas import ConsistencyFixRequest
from warehouse_audit.services.audit_policy import RetentionPolicyTable
from warehouse_audit.services.audit_writer import AuditLogWriter, AuditWriterConfig
from warehouse_audit.services.consistency_fix_service import FIX_REASON, apply_fix
from warehouse_audit.services.delivery_consistency_service import run_consistency_analysis
from warehouse_audit.services.delivery_service import DeliveryLineInput, record_delivery_batch


class ConsistencyFixRequestTests(unittest.TestCase):
    def test_accepts_camel_case_keys(self) -> None:
        request = ConsistencyFixRequest.model_validate(
            {'action': 'UPDATE_DELIVERY', 'type': 'QUANTITY_MISMATCH', 'deliveryId': 3, 'newQuantity': 80}
        )

        self.assertEqual(request.action, FixAction.UPDATE_DELIVERY)
        self.assertEqual(request.delivery_id, 3)
        self.assertEqual(request.new_quantity, 80)

    def test_accepts_snake_case_keys(self) -> None:
        request = ConsistencyFixRequest(action=FixAction.DELETE_MOVEMENT, movement_ids=[1, 2])

        self.assertEqual(request.movement_ids, [1, 2])

    def test_rejects_missing_fields_for_action(self) -> None:
        invalid_payloads = [
            {'action': 'DELETE_MOVEMENT'},
            {'action': 'DELETE_MOVEMENT', 'movementIds': []},
            {'action': 'UPDATE_DELIVERY', 'deliveryId': 3},
            {'action': 'CREATE_MOVEMENT', 'eppId': 1, 'newQuantity': 5},
        ]
        for payload in invalid_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    ConsistencyFixRequest.model_validate(payload)

    def test_rejects_out_of_range_values(self) -> None:
        invalid_payloads = [
            {'action': 'DELETE_MOVEMENT', 'movementIds': list(range(1, 102))},
            {'action': 'DELETE_MOVEMENT', 'movementIds': [0]},
            {'action': 'UPDATE_DELIVERY', 'deliveryId': 3, 'newQuantity': 1_000_001},
            {'action': 'UPDATE_DELIVERY', 'deliveryId': -1, 'newQuantity': 5},
            {'action': 'CREATE_MOVEMENT', 'eppId': 1, 'batchId': 2, 'newQuantity': 0},
            {'action': 'RESTORE_EVERYTHING'},
        ]
        for payload in invalid_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(ValidationError):
                    ConsistencyFixRequest.model_validate(payload)


class ApplyFixTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.clock = FakeClock()
        self.writer = AuditLogWriter(
            self.session_factory,
            config=AuditWriterConfig(batch_size=100),
            policy=RetentionPolicyTable(),
            clock=self.clock,
        )
        with self.session_factory() as db:
            self.catalog = seed_catalog(db, stock=500)
        self.warehouse_id = self.catalog.warehouse.id
        self.gloves_id = self.catalog.gloves.id
        self.actor_id = self.catalog.user.id

    def _audit_rows(self) -> list[AuditLog]:
        self.writer.process_pending()
        self.writer.flush()
        with self.session_factory() as db:
            return db.execute(select(AuditLog).order_by(AuditLog.id.asc())).scalars().all()

    def _stock(self) -> int:
        with self.session_factory() as db:
            return stock_level(db, epp_id=self.gloves_id, warehouse_id=self.warehouse_id)

    def _apply(self, **payload):
        with self.session_factory() as db:
            return apply_fix(
                db,
                ConsistencyFixRequest(**payload),
                actor_id=self.actor_id,
                audit_writer=self.writer,
                metadata={'ip': '10.0.0.9'},
            )

    def _record_batch(self, code='DEL-0007', quantity=100) -> Delivery:
        with self.session_factory() as db:
            batch = record_delivery_batch(
                db,
                actor_id=self.actor_id,
                warehouse_id=self.warehouse_id,
                code=code,
                lines=[DeliveryLineInput(epp_id=self.gloves_id, quantity=quantity)],
            )
            return db.execute(select(Delivery).where(Delivery.batch_id == batch.id)).scalar_one()

    def test_delete_orphan_movement_restores_stock(self) -> None:
        with self.session_factory() as db:
            movement = add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=40,
                note='Delivery DEL-0999',
                created_at=NOW - timedelta(days=10),
            )

        result = self._apply(action=FixAction.DELETE_MOVEMENT, type='ORPHAN_MOVEMENT', movement_ids=[movement.id])

        self.assertTrue(result.changed)
        self.assertEqual(result.deleted_movement_ids, [movement.id])
        self.assertEqual(self._stock(), 540)
        with self.session_factory() as db:
            self.assertIsNone(db.get(StockMovement, movement.id))

        rows = self._audit_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].action, AuditAction.DELETE)
        self.assertEqual(rows[0].entity_type, 'StockMovement')
        self.assertEqual(rows[0].entity_id, movement.id)
        self.assertEqual(rows[0].changes['quantity'], 40)
        self.assertEqual(rows[0].meta['reason'], FIX_REASON)
        self.assertEqual(rows[0].meta['issue_type'], 'ORPHAN_MOVEMENT')
        self.assertEqual(rows[0].meta['ip'], '10.0.0.9')

    def test_delete_with_unknown_id_rolls_back_everything(self) -> None:
        with self.session_factory() as db:
            movement = add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=40,
                note='Delivery DEL-0999',
            )

        with self.assertRaises(ResourceNotFoundError) as ctx:
            self._apply(action=FixAction.DELETE_MOVEMENT, movement_ids=[movement.id, 9999])

        self.assertIn('9999', ctx.exception.message)
        self.assertEqual(self._stock(), 500)
        with self.session_factory() as db:
            self.assertIsNotNone(db.get(StockMovement, movement.id))
        self.assertEqual(self._audit_rows(), [])

    def test_adjustment_movements_cannot_be_deleted(self) -> None:
        with self.session_factory() as db:
            movement = add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=3,
                note='Cycle count',
                movement_type=MovementType.ADJUSTMENT,
            )

        with self.assertRaises(StockConflictError):
            self._apply(action=FixAction.DELETE_MOVEMENT, movement_ids=[movement.id])

    def test_deleting_an_entry_movement_cannot_make_stock_negative(self) -> None:
        with self.session_factory() as db:
            movement = add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=600,
                note='Purchase order 17',
                movement_type=MovementType.ENTRY,
            )

        with self.assertRaises(InsufficientStockError):
            self._apply(action=FixAction.DELETE_MOVEMENT, movement_ids=[movement.id])
        self.assertEqual(self._stock(), 500)

    def test_update_delivery_records_correction_exit(self) -> None:
        delivery = self._record_batch(quantity=100)
        self.assertEqual(self._stock(), 400)

        result = self._apply(action=FixAction.UPDATE_DELIVERY, delivery_id=delivery.id, new_quantity=80)

        self.assertTrue(result.changed)
        self.assertEqual(self._stock(), 380)
        with self.session_factory() as db:
            self.assertEqual(db.get(Delivery, delivery.id).quantity, 80)
            correction = db.get(StockMovement, result.created_movement_ids[0])
            self.assertEqual(correction.type, MovementType.EXIT)
            self.assertEqual(correction.quantity, 20)
            self.assertEqual(correction.note, 'Adjustment - Delivery DEL-0007 (100 -> 80)')
            self.assertIsNone(correction.delivery_id)

        updates = [row for row in self._audit_rows() if row.action == AuditAction.UPDATE]
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0].entity_type, 'Delivery')
        self.assertEqual(updates[0].changes, {'quantity': {'from': 100, 'to': 80}})

    def test_update_delivery_to_same_quantity_is_a_no_op(self) -> None:
        delivery = self._record_batch(quantity=100)

        result = self._apply(action=FixAction.UPDATE_DELIVERY, delivery_id=delivery.id, new_quantity=100)

        self.assertFalse(result.changed)
        self.assertEqual(self._stock(), 400)
        self.assertEqual(result.audit_events, [])

    def test_update_unknown_delivery(self) -> None:
        with self.assertRaises(ResourceNotFoundError):
            self._apply(action=FixAction.UPDATE_DELIVERY, delivery_id=404, new_quantity=10)

    def test_create_missing_movement_links_the_delivery(self) -> None:
        with self.session_factory() as db:
            delivery = add_delivery(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                code='DEL-0007',
                quantity=100,
            )

        result = self._apply(
            action=FixAction.CREATE_MOVEMENT,
            type='MISSING_MOVEMENT',
            epp_id=self.gloves_id,
            batch_id=delivery.batch_id,
            new_quantity=100,
        )

        self.assertTrue(result.changed)
        self.assertEqual(self._stock(), 400)
        with self.session_factory() as db:
            movement = db.get(StockMovement, result.created_movement_ids[0])
            self.assertEqual(movement.delivery_id, delivery.id)
            self.assertEqual(movement.note, 'Delivery DEL-0007 (movement created manually)')
            self.assertEqual(run_consistency_analysis(db, now=NOW).issues, [])
        self.assertEqual([row.action for row in self._audit_rows()], [AuditAction.CREATE])

    def test_create_movement_twice_is_idempotent(self) -> None:
        with self.session_factory() as db:
            delivery = add_delivery(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                code='DEL-0007',
                quantity=100,
            )
        payload = {
            'action': FixAction.CREATE_MOVEMENT,
            'epp_id': self.gloves_id,
            'batch_id': delivery.batch_id,
            'delivery_id': delivery.id,
        }

        self._apply(**payload)
        second = self._apply(**payload)

        self.assertFalse(second.changed)
        self.assertEqual(self._stock(), 400)

    def test_create_movement_skips_legacy_match(self) -> None:
        with self.session_factory() as db:
            delivery = add_delivery(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                code='DEL-0007',
                quantity=100,
            )
            add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=100,
                note='Delivery DEL-0007',
            )

        result = self._apply(
            action=FixAction.CREATE_MOVEMENT,
            epp_id=self.gloves_id,
            batch_id=delivery.batch_id,
            new_quantity=100,
        )

        self.assertFalse(result.changed)

    def test_create_movement_treats_batch_code_literally(self) -> None:
        with self.session_factory() as db:
            delivery = add_delivery(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                code='LOT_7',
                quantity=100,
            )
            add_movement(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                quantity=100,
                note='Delivery LOTX7',
            )

        result = self._apply(
            action=FixAction.CREATE_MOVEMENT,
            type='MISSING_MOVEMENT',
            epp_id=self.gloves_id,
            batch_id=delivery.batch_id,
        )

        self.assertTrue(result.changed)
        self.assertEqual(self._stock(), 400)
        with self.session_factory() as db:
            issues = run_consistency_analysis(db, now=NOW).issues
        self.assertNotIn('MISSING_MOVEMENT', [issue.type.value for issue in issues])

    def test_create_movement_without_enough_stock(self) -> None:
        with self.session_factory() as db:
            delivery = add_delivery(
                db,
                warehouse_id=self.warehouse_id,
                epp_id=self.gloves_id,
                code='DEL-0007',
                quantity=900,
            )

        with self.assertRaises(InsufficientStockError):
            self._apply(
                action=FixAction.CREATE_MOVEMENT,
                epp_id=self.gloves_id,
                batch_id=delivery.batch_id,
                delivery_id=delivery.id,
            )
        self.assertEqual(self._stock(), 500)
        with self.session_factory() as db:
            self.assertEqual(db.execute(select(StockMovement)).scalars().all(), [])

    def test_create_movement_for_unknown_batch(self) -> None:
        with self.assertRaises(ResourceNotFoundError):
            self._apply(action=FixAction.CREATE_MOVEMENT, epp_id=self.gloves_id, batch_id=77, new_quantity=5)


if __name__ == '__main__':
    unittest.main()
