"""Operator-confirmed corrections for delivery/movement consistency issues."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from warehouse_audit.exceptions import ResourceNotFoundError, StockConflictError
from warehouse_audit.models import (
    AuditAction,
    Delivery,
    DeliveryBatch,
    FixAction,
    MovementStatus,
    MovementType,
    StockMovement,
)
from warehouse_audit.schemas import ConsistencyFixRequest
from warehouse_audit.services.audit_writer import AuditLogWriter
from warehouse_audit.services.delivery_consistency_service import ADJUSTMENT_NOTE_PREFIX
from warehouse_audit.services.delivery_service import delivery_note
from warehouse_audit.services.stock_service import apply_stock_delta, movement_snapshot, stock_effect

logger = logging.getLogger(__name__)

FIX_REASON = 'Manual fix - consistency audit'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    action: AuditAction
    entity_type: str
    entity_id: int
    old_values: dict | None = None
    new_values: dict | None = None


@dataclass
class FixResult:
    action: FixAction
    message: str
    changed: bool = True
    deleted_movement_ids: list[int] = field(default_factory=list)
    created_movement_ids: list[int] = field(default_factory=list)
    audit_events: list[AuditEvent] = field(default_factory=list)


def delete_movements(db: Session, *, actor_id: int | None, movement_ids: list[int]) -> FixResult:
    result = FixResult(action=FixAction.DELETE_MOVEMENT, message='')
    for movement_id in dict.fromkeys(movement_ids):
        movement = db.get(StockMovement, movement_id, with_for_update=True)
        if movement is None:
            raise ResourceNotFoundError(
                f'Stock movement {movement_id} not found; it may have already been resolved'
            )
        if movement.type == MovementType.ADJUSTMENT:
            raise StockConflictError(f'Stock movement {movement_id} is an adjustment and cannot be reversed')

        reversal = -stock_effect(movement.type, movement.quantity)
        apply_stock_delta(db, epp_id=movement.epp_id, warehouse_id=movement.warehouse_id, delta=reversal)
        snapshot = movement_snapshot(movement)
        db.delete(movement)
        result.deleted_movement_ids.append(movement_id)
        result.audit_events.append(
            AuditEvent(action=AuditAction.DELETE, entity_type='StockMovement', entity_id=movement_id, old_values=snapshot)
        )
    db.flush()
    result.message = f'{len(result.deleted_movement_ids)} movement(s) deleted and stock reverted'
    return result


def update_delivery_quantity(
    db: Session,
    *,
    actor_id: int | None,
    delivery_id: int,
    new_quantity: int,
) -> FixResult:
    delivery = db.get(Delivery, delivery_id, with_for_update=True)
    if delivery is None:
        raise ResourceNotFoundError(f'Delivery {delivery_id} not found')
    batch = db.get(DeliveryBatch, delivery.batch_id)
    if batch is None:
        raise ResourceNotFoundError(f'Delivery batch {delivery.batch_id} not found')

    old_quantity = delivery.quantity
    if new_quantity == old_quantity:
        return FixResult(
            action=FixAction.UPDATE_DELIVERY,
            message=f'Delivery {delivery_id} already has {new_quantity} units; nothing changed',
            changed=False,
        )

    # Any quantity change is booked as an EXIT correction of |delta| units.
    units = abs(new_quantity - old_quantity)
    delivery.quantity = new_quantity
    apply_stock_delta(db, epp_id=delivery.epp_id, warehouse_id=batch.warehouse_id, delta=-units)
    adjustment = StockMovement(
        type=MovementType.EXIT,
        epp_id=delivery.epp_id,
        warehouse_id=batch.warehouse_id,
        quantity=units,
        note=f'{ADJUSTMENT_NOTE_PREFIX} - Delivery {batch.code} ({old_quantity} -> {new_quantity})',
        status=MovementStatus.APPROVED,
        created_by_id=actor_id,
        created_at=_now(),
    )
    db.add(adjustment)
    db.flush()

    return FixResult(
        action=FixAction.UPDATE_DELIVERY,
        message=f'Delivery {delivery_id} updated from {old_quantity} to {new_quantity} units',
        created_movement_ids=[adjustment.id],
        audit_events=[
            AuditEvent(
                action=AuditAction.UPDATE,
                entity_type='Delivery',
                entity_id=delivery_id,
                old_values={'quantity': old_quantity},
                new_values={'quantity': new_quantity},
            ),
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type='StockMovement',
                entity_id=adjustment.id,
                new_values=movement_snapshot(adjustment),
            ),
        ],
    )


def _find_correlated_movement(db: Session, delivery: Delivery, batch: DeliveryBatch) -> StockMovement | None:
    return db.execute(
        select(StockMovement)
        .where(
            StockMovement.type == MovementType.EXIT,
            or_(
                StockMovement.delivery_id == delivery.id,
                and_(
                    StockMovement.delivery_id.is_(None),
                    StockMovement.epp_id == delivery.epp_id,
                    StockMovement.warehouse_id == batch.warehouse_id,
                    StockMovement.note.contains(batch.code, autoescape=True),
                    ~StockMovement.note.startswith(ADJUSTMENT_NOTE_PREFIX),
                ),
            ),
        )
        .order_by(StockMovement.id.asc())
    ).scalars().first()


def create_missing_movement(
    db: Session,
    *,
    actor_id: int | None,
    epp_id: int,
    batch_id: int,
    quantity: int | None = None,
    delivery_id: int | None = None,
) -> FixResult:
    batch = db.get(DeliveryBatch, batch_id)
    if batch is None:
        raise ResourceNotFoundError(f'Delivery batch {batch_id} not found')

    if delivery_id is not None:
        delivery = db.get(Delivery, delivery_id)
        if delivery is None or delivery.batch_id != batch_id or delivery.epp_id != epp_id:
            raise ResourceNotFoundError(f'Delivery {delivery_id} not found in batch {batch.code}')
    else:
        delivery = db.execute(
            select(Delivery)
            .where(Delivery.batch_id == batch_id, Delivery.epp_id == epp_id)
            .order_by(Delivery.id.asc())
        ).scalars().first()

    if delivery is None:
        raise ResourceNotFoundError(f'No delivery for EPP {epp_id} in batch {batch.code}')

    existing = _find_correlated_movement(db, delivery, batch)
    if existing is not None:
        return FixResult(
            action=FixAction.CREATE_MOVEMENT,
            message=f'Delivery {delivery.id} already has stock movement {existing.id}; nothing changed',
            changed=False,
        )

    units = quantity if quantity is not None else delivery.quantity
    apply_stock_delta(db, epp_id=epp_id, warehouse_id=batch.warehouse_id, delta=-units)
    movement = StockMovement(
        type=MovementType.EXIT,
        epp_id=epp_id,
        warehouse_id=batch.warehouse_id,
        quantity=units,
        note=f'{delivery_note(batch.code)} (movement created manually)',
        status=MovementStatus.APPROVED,
        delivery_id=delivery.id,
        created_by_id=actor_id,
        created_at=_now(),
    )
    db.add(movement)
    db.flush()

    return FixResult(
        action=FixAction.CREATE_MOVEMENT,
        message=f'Stock movement {movement.id} created: {units} units',
        created_movement_ids=[movement.id],
        audit_events=[
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type='StockMovement',
                entity_id=movement.id,
                new_values=movement_snapshot(movement),
            )
        ],
    )


def apply_fix(
    db: Session,
    request: ConsistencyFixRequest,
    *,
    actor_id: int | None,
    audit_writer: AuditLogWriter | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> FixResult:
    try:
        if request.action == FixAction.DELETE_MOVEMENT:
            result = delete_movements(db, actor_id=actor_id, movement_ids=request.movement_ids or [])
        elif request.action == FixAction.UPDATE_DELIVERY:
            result = update_delivery_quantity(
                db,
                actor_id=actor_id,
                delivery_id=request.delivery_id,
                new_quantity=request.new_quantity,
            )
        else:
            result = create_missing_movement(
                db,
                actor_id=actor_id,
                epp_id=request.epp_id,
                batch_id=request.batch_id,
                quantity=request.new_quantity,
                delivery_id=request.delivery_id,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info('Applied %s for actor %s: %s', request.action.value, actor_id, result.message)
    if audit_writer is not None:
        event_metadata = {**(metadata or {}), 'reason': FIX_REASON, 'issue_type': request.type}
        for event in result.audit_events:
            audit_writer.log_change(
                actor_id,
                event.action,
                event.entity_type,
                event.entity_id,
                old_values=event.old_values,
                new_values=event.new_values,
                metadata=event_metadata,
            )
    return result
