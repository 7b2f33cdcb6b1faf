from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_audit.exceptions import InsufficientStockError, StockConflictError
from warehouse_audit.models import EppStock, MovementType, StockMovement

MOVEMENT_STOCK_SIGN = {
    MovementType.ENTRY: 1,
    MovementType.TRANSFER_IN: 1,
    MovementType.EXIT: -1,
    MovementType.TRANSFER_OUT: -1,
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def stock_effect(movement_type: MovementType, quantity: int) -> int:
    """Signed change a movement applied to its stock level."""
    sign = MOVEMENT_STOCK_SIGN.get(MovementType(movement_type))
    if sign is None:
        raise StockConflictError(f'{movement_type} movements have no reversible stock effect')
    return sign * quantity


def get_stock_level(db: Session, *, epp_id: int, warehouse_id: int, for_update: bool = False) -> EppStock | None:
    stmt = select(EppStock).where(EppStock.epp_id == epp_id, EppStock.warehouse_id == warehouse_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def apply_stock_delta(
    db: Session,
    *,
    epp_id: int,
    warehouse_id: int,
    delta: int,
    allow_negative: bool = False,
) -> EppStock:
    stock = get_stock_level(db, epp_id=epp_id, warehouse_id=warehouse_id, for_update=True)
    if stock is None:
        stock = EppStock(epp_id=epp_id, warehouse_id=warehouse_id, quantity=0)
        db.add(stock)

    new_quantity = stock.quantity + delta
    if new_quantity < 0 and not allow_negative:
        raise InsufficientStockError(
            f'Insufficient stock for EPP {epp_id} in warehouse {warehouse_id}: '
            f'available {stock.quantity}, required {-delta}'
        )
    stock.quantity = new_quantity
    stock.updated_at = _now()
    db.flush()
    return stock


def movement_snapshot(movement: StockMovement) -> dict:
    return {
        'id': movement.id,
        'type': movement.type.value if hasattr(movement.type, 'value') else movement.type,
        'epp_id': movement.epp_id,
        'warehouse_id': movement.warehouse_id,
        'quantity': movement.quantity,
        'note': movement.note,
        'status': movement.status.value if hasattr(movement.status, 'value') else movement.status,
        'delivery_id': movement.delivery_id,
        'created_by_id': movement.created_by_id,
        'created_at': movement.created_at.isoformat() if movement.created_at else None,
    }
