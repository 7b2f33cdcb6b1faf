from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_audit.exceptions import ResourceNotFoundError
from warehouse_audit.models import (
    Delivery,
    DeliveryBatch,
    Epp,
    MovementStatus,
    MovementType,
    StockMovement,
    Warehouse,
)
from warehouse_audit.services.audit_writer import AuditLogWriter
from warehouse_audit.services.stock_service import apply_stock_delta

logger = logging.getLogger(__name__)

DELIVERY_NOTE_PREFIX = 'Delivery'


@dataclass(frozen=True)
class DeliveryLineInput:
    epp_id: int
    quantity: int


def delivery_note(batch_code: str) -> str:
    return f'{DELIVERY_NOTE_PREFIX} {batch_code}'


def record_delivery_batch(
    db: Session,
    *,
    actor_id: int | None,
    warehouse_id: int,
    code: str,
    lines: list[DeliveryLineInput],
    note: str | None = None,
    audit_writer: AuditLogWriter | None = None,
) -> DeliveryBatch:
    """Create a delivery batch and discharge each line from stock in one transaction."""
    clean_code = code.strip()
    if not clean_code:
        raise ValueError('Batch code is required')
    if not lines:
        raise ValueError('A delivery batch needs at least one line')
    if any(line.quantity <= 0 for line in lines):
        raise ValueError('Delivery quantities must be greater than zero')

    try:
        if db.get(Warehouse, warehouse_id) is None:
            raise ResourceNotFoundError(f'Warehouse {warehouse_id} not found')
        epp_ids = {line.epp_id for line in lines}
        known = set(db.execute(select(Epp.id).where(Epp.id.in_(epp_ids))).scalars().all())
        missing = sorted(epp_ids - known)
        if missing:
            raise ResourceNotFoundError(f'EPP {missing[0]} not found')

        batch = DeliveryBatch(code=clean_code, warehouse_id=warehouse_id, note=note, created_by_id=actor_id)
        db.add(batch)
        db.flush()

        deliveries: list[Delivery] = []
        for line in lines:
            delivery = Delivery(batch_id=batch.id, epp_id=line.epp_id, quantity=line.quantity)
            db.add(delivery)
            db.flush()
            apply_stock_delta(db, epp_id=line.epp_id, warehouse_id=warehouse_id, delta=-line.quantity)
            db.add(
                StockMovement(
                    type=MovementType.EXIT,
                    epp_id=line.epp_id,
                    warehouse_id=warehouse_id,
                    quantity=line.quantity,
                    note=delivery_note(clean_code),
                    status=MovementStatus.APPROVED,
                    delivery_id=delivery.id,
                    created_by_id=actor_id,
                )
            )
            deliveries.append(delivery)
        db.flush()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info('Recorded delivery batch %s with %d lines', clean_code, len(deliveries))
    if audit_writer is not None:
        audit_writer.log_create(
            actor_id,
            'DeliveryBatch',
            batch.id,
            {'code': batch.code, 'warehouse_id': warehouse_id, 'note': note, 'lines': len(deliveries)},
        )
        for delivery in deliveries:
            audit_writer.log_create(
                actor_id,
                'Delivery',
                delivery.id,
                {'batch_id': batch.id, 'epp_id': delivery.epp_id, 'quantity': delivery.quantity},
            )
    return batch
