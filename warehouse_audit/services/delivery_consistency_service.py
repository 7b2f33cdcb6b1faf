"""Cross-check deliveries against the EXIT movements that should discharge them."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warehouse_audit.config import settings
from warehouse_audit.exceptions import ConsistencyAnalysisError
from warehouse_audit.models import (
    Delivery,
    DeliveryBatch,
    Epp,
    EppStock,
    IssueSeverity,
    IssueType,
    MovementType,
    StockMovement,
    User,
    Warehouse,
)
from warehouse_audit.services.delivery_service import DELIVERY_NOTE_PREFIX

logger = logging.getLogger(__name__)

ADJUSTMENT_NOTE_PREFIX = 'Adjustment'

_ISSUE_ORDER = {
    IssueType.NEGATIVE_STOCK: 0,
    IssueType.MISSING_MOVEMENT: 1,
    IssueType.QUANTITY_MISMATCH: 2,
    IssueType.ORPHAN_MOVEMENT: 3,
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DeliveryRow:
    id: int
    batch_id: int
    batch_code: str
    warehouse_id: int
    epp_id: int
    epp_code: str
    epp_name: str
    quantity: int
    created_at: datetime


@dataclass(frozen=True)
class MovementRow:
    id: int
    epp_id: int
    epp_code: str
    epp_name: str
    warehouse_id: int
    warehouse_name: str
    quantity: int
    note: str | None
    status: str
    created_at: datetime
    created_by: str | None = None
    delivery_id: int | None = None
    type: str = MovementType.EXIT.value


@dataclass(frozen=True)
class StockRow:
    epp_id: int
    epp_code: str
    epp_name: str
    warehouse_id: int
    warehouse_name: str
    quantity: int
    updated_at: datetime


@dataclass(frozen=True)
class MovementRef:
    id: int
    quantity: int
    created_at: datetime
    status: str
    created_by: str | None


@dataclass(frozen=True)
class Issue:
    type: IssueType
    severity: IssueSeverity
    cause: str
    impact: str
    impact_units: int
    created_at: datetime
    batch_code: str | None = None
    batch_id: int | None = None
    delivery_id: int | None = None
    movement_id: int | None = None
    movement_ids: tuple[int, ...] = ()
    movements: tuple[MovementRef, ...] = ()
    epp_id: int | None = None
    epp_code: str | None = None
    epp_name: str | None = None
    warehouse_id: int | None = None
    warehouse_name: str | None = None
    delivery_qty: int | None = None
    movement_qty: int | None = None
    difference: int | None = None
    quantity: int | None = None
    created_by: str | None = None
    status: str | None = None
    days_since_creation: int | None = None
    ambiguous: bool = False

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload['type'] = self.type.value
        payload['severity'] = self.severity.value
        payload['created_at'] = self.created_at.isoformat()
        payload['movement_ids'] = list(self.movement_ids)
        payload['movements'] = [
            {**asdict(ref), 'created_at': ref.created_at.isoformat()} for ref in self.movements
        ]
        return payload


@dataclass(frozen=True)
class ConsistencyReport:
    issues: list[Issue] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.issues)

    @property
    def critical(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == IssueSeverity.CRITICAL)

    @property
    def warning(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == IssueSeverity.WARNING)

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'critical': self.critical,
            'warning': self.warning,
            'issues': [issue.to_dict() for issue in self.issues],
        }


def is_correction_note(note: str | None) -> bool:
    return bool(note) and note.startswith(ADJUSTMENT_NOTE_PREFIX)


def is_delivery_note(note: str | None) -> bool:
    return bool(note) and note.startswith(DELIVERY_NOTE_PREFIX)


def note_mentions_batch(note: str | None, batch_code: str | None) -> bool:
    return bool(note) and bool(batch_code) and batch_code in note


def batch_code_from_note(note: str | None) -> str | None:
    parts = (note or '').split()
    return parts[1] if len(parts) > 1 else None


def _movement_ref(movement: MovementRow) -> MovementRef:
    return MovementRef(
        id=movement.id,
        quantity=movement.quantity,
        created_at=_as_utc(movement.created_at),
        status=movement.status,
        created_by=movement.created_by,
    )


def _mismatch_cause(related: Sequence[MovementRow], total: int, delivery_qty: int, window: timedelta) -> str:
    if len(related) == 1:
        return (
            f'The movement quantity ({total}) does not match the delivery ({delivery_qty}). '
            'Likely cause: the movement was edited after it was created.'
        )
    timestamps = sorted(_as_utc(movement.created_at) for movement in related)
    span = timestamps[-1] - timestamps[0]
    if span < window:
        minutes = int(span.total_seconds() // 60)
        return (
            f'Found {len(related)} movements created within {minutes} minute(s) of each other. '
            'Likely cause: the delivery was edited and additional movements were created '
            'instead of updating the existing one.'
        )
    return (
        f'Found {len(related)} movements for this delivery. Likely cause: repeated edits of '
        'the delivery created duplicate movements that were never consolidated.'
    )


def _orphan_cause(days: int) -> str:
    if days < 1:
        return (
            'Temporary inconsistency: the movement was created less than 24 hours ago but has no '
            'matching delivery. Likely cause: the delivery is not recorded yet or synchronization is lagging.'
        )
    if days < 7:
        return (
            f'The related delivery was deleted {days} day(s) ago but its stock movement was not '
            'reversed, leaving an orphaned movement that still affects inventory.'
        )
    return (
        f'The related delivery was deleted {days} days ago without reversing its stock movement. '
        'This points to an old error in delivery deletion.'
    )


def analyze_consistency(
    deliveries: Iterable[DeliveryRow],
    movements: Iterable[MovementRow],
    *,
    now: datetime | None = None,
    negative_stock: Iterable[StockRow] = (),
    duplicate_window: timedelta = timedelta(minutes=60),
) -> ConsistencyReport:
    now = _as_utc(now or _now())
    deliveries = list(deliveries)
    movements = [movement for movement in movements if not is_correction_note(movement.note)]
    delivery_ids = {delivery.id for delivery in deliveries}

    linked: dict[int, list[MovementRow]] = defaultdict(list)
    legacy: dict[tuple[int, int], list[MovementRow]] = defaultdict(list)
    for movement in movements:
        if movement.delivery_id is not None and movement.delivery_id in delivery_ids:
            linked[movement.delivery_id].append(movement)
        else:
            legacy[(movement.epp_id, movement.warehouse_id)].append(movement)

    related_by_delivery: dict[int, list[MovementRow]] = {}
    legacy_match_count: dict[int, int] = defaultdict(int)
    for delivery in deliveries:
        heuristic = [
            movement
            for movement in legacy.get((delivery.epp_id, delivery.warehouse_id), [])
            if note_mentions_batch(movement.note, delivery.batch_code)
        ]
        for movement in heuristic:
            legacy_match_count[movement.id] += 1
        related_by_delivery[delivery.id] = [*linked.get(delivery.id, []), *heuristic]

    def _ambiguous(related: Sequence[MovementRow]) -> bool:
        return any(legacy_match_count.get(movement.id, 0) > 1 for movement in related)

    issues: list[Issue] = []
    for delivery in deliveries:
        related = related_by_delivery[delivery.id]
        common = {
            'batch_code': delivery.batch_code,
            'batch_id': delivery.batch_id,
            'delivery_id': delivery.id,
            'epp_id': delivery.epp_id,
            'epp_code': delivery.epp_code,
            'epp_name': delivery.epp_name,
            'warehouse_id': delivery.warehouse_id,
            'delivery_qty': delivery.quantity,
            'created_at': _as_utc(delivery.created_at),
        }
        if not related:
            issues.append(
                Issue(
                    type=IssueType.MISSING_MOVEMENT,
                    severity=IssueSeverity.CRITICAL,
                    cause=(
                        'The delivery was recorded but no matching stock movement was created. '
                        'Likely cause: an error while creating it or a failure during the transaction.'
                    ),
                    impact=f'{delivery.quantity} units undischarged from stock',
                    impact_units=delivery.quantity,
                    movement_qty=0,
                    difference=delivery.quantity,
                    **common,
                )
            )
            continue

        total = sum(movement.quantity for movement in related)
        if total == delivery.quantity:
            continue
        difference = delivery.quantity - total
        ordered = sorted(related, key=lambda movement: (_as_utc(movement.created_at), movement.id))
        issues.append(
            Issue(
                type=IssueType.QUANTITY_MISMATCH,
                severity=IssueSeverity.CRITICAL,
                cause=_mismatch_cause(ordered, total, delivery.quantity, duplicate_window),
                impact=(
                    f'Stock discharged {total} units instead of {delivery.quantity}, '
                    f'a discrepancy of {abs(difference)} units'
                ),
                impact_units=abs(difference),
                movement_qty=total,
                difference=difference,
                movement_ids=tuple(movement.id for movement in ordered),
                movements=tuple(_movement_ref(movement) for movement in ordered),
                ambiguous=_ambiguous(related),
                **common,
            )
        )

    for movement in movements:
        if movement.delivery_id is not None and movement.delivery_id in delivery_ids:
            continue
        if legacy_match_count.get(movement.id, 0) > 0:
            continue
        if not is_delivery_note(movement.note):
            continue
        created_at = _as_utc(movement.created_at)
        days = max(int((now - created_at).total_seconds() // 86400), 0)
        issues.append(
            Issue(
                type=IssueType.ORPHAN_MOVEMENT,
                severity=IssueSeverity.WARNING,
                cause=_orphan_cause(days),
                impact=(
                    f'{movement.quantity} units of stock discharged without delivery documentation, '
                    'skewing available inventory'
                ),
                impact_units=movement.quantity,
                created_at=created_at,
                batch_code=batch_code_from_note(movement.note),
                movement_id=movement.id,
                movement_ids=(movement.id,),
                epp_id=movement.epp_id,
                epp_code=movement.epp_code,
                epp_name=movement.epp_name,
                warehouse_id=movement.warehouse_id,
                warehouse_name=movement.warehouse_name,
                quantity=movement.quantity,
                created_by=movement.created_by,
                status=movement.status,
                days_since_creation=days,
            )
        )

    for stock in negative_stock:
        if stock.quantity >= 0:
            continue
        issues.append(
            Issue(
                type=IssueType.NEGATIVE_STOCK,
                severity=IssueSeverity.CRITICAL,
                cause='The stock level dropped below zero; more units were discharged than were ever received.',
                impact=f'{-stock.quantity} units below zero',
                impact_units=-stock.quantity,
                created_at=_as_utc(stock.updated_at),
                epp_id=stock.epp_id,
                epp_code=stock.epp_code,
                epp_name=stock.epp_name,
                warehouse_id=stock.warehouse_id,
                warehouse_name=stock.warehouse_name,
                quantity=stock.quantity,
            )
        )

    issues.sort(
        key=lambda issue: (
            issue.created_at,
            -_ISSUE_ORDER[issue.type],
            issue.delivery_id or 0,
            issue.movement_id or 0,
            issue.epp_id or 0,
        ),
        reverse=True,
    )
    return ConsistencyReport(issues=issues)


def load_deliveries(db: Session, *, warehouse_id: int | None = None) -> list[DeliveryRow]:
    stmt = (
        select(Delivery, DeliveryBatch, Epp)
        .join(DeliveryBatch, DeliveryBatch.id == Delivery.batch_id)
        .join(Epp, Epp.id == Delivery.epp_id)
        .order_by(Delivery.id.asc())
    )
    if warehouse_id is not None:
        stmt = stmt.where(DeliveryBatch.warehouse_id == warehouse_id)
    return [
        DeliveryRow(
            id=delivery.id,
            batch_id=batch.id,
            batch_code=batch.code,
            warehouse_id=batch.warehouse_id,
            epp_id=epp.id,
            epp_code=epp.code,
            epp_name=epp.name,
            quantity=delivery.quantity,
            created_at=delivery.created_at,
        )
        for delivery, batch, epp in db.execute(stmt).all()
    ]


def load_exit_movements(db: Session, *, warehouse_id: int | None = None) -> list[MovementRow]:
    stmt = (
        select(StockMovement, Epp, Warehouse, User.email)
        .join(Epp, Epp.id == StockMovement.epp_id)
        .join(Warehouse, Warehouse.id == StockMovement.warehouse_id)
        .outerjoin(User, User.id == StockMovement.created_by_id)
        .where(StockMovement.type == MovementType.EXIT)
        .order_by(StockMovement.id.asc())
    )
    if warehouse_id is not None:
        stmt = stmt.where(StockMovement.warehouse_id == warehouse_id)
    return [
        MovementRow(
            id=movement.id,
            epp_id=epp.id,
            epp_code=epp.code,
            epp_name=epp.name,
            warehouse_id=warehouse.id,
            warehouse_name=warehouse.name,
            quantity=movement.quantity,
            note=movement.note,
            status=movement.status.value,
            created_at=movement.created_at,
            created_by=email,
            delivery_id=movement.delivery_id,
            type=movement.type.value,
        )
        for movement, epp, warehouse, email in db.execute(stmt).all()
    ]


def load_negative_stock(db: Session, *, warehouse_id: int | None = None) -> list[StockRow]:
    stmt = (
        select(EppStock, Epp, Warehouse)
        .join(Epp, Epp.id == EppStock.epp_id)
        .join(Warehouse, Warehouse.id == EppStock.warehouse_id)
        .where(EppStock.quantity < 0)
        .order_by(EppStock.epp_id.asc(), EppStock.warehouse_id.asc())
    )
    if warehouse_id is not None:
        stmt = stmt.where(EppStock.warehouse_id == warehouse_id)
    return [
        StockRow(
            epp_id=epp.id,
            epp_code=epp.code,
            epp_name=epp.name,
            warehouse_id=warehouse.id,
            warehouse_name=warehouse.name,
            quantity=stock.quantity,
            updated_at=stock.updated_at,
        )
        for stock, epp, warehouse in db.execute(stmt).all()
    ]


def run_consistency_analysis(
    db: Session,
    *,
    warehouse_id: int | None = None,
    now: datetime | None = None,
) -> ConsistencyReport:
    try:
        deliveries = load_deliveries(db, warehouse_id=warehouse_id)
        movements = load_exit_movements(db, warehouse_id=warehouse_id)
        negative_stock = load_negative_stock(db, warehouse_id=warehouse_id)
    except SQLAlchemyError as exc:
        logger.exception('Could not load ledgers for consistency analysis')
        raise ConsistencyAnalysisError('Consistency analysis failed') from exc

    report = analyze_consistency(
        deliveries,
        movements,
        now=now,
        negative_stock=negative_stock,
        duplicate_window=timedelta(minutes=settings.consistency_duplicate_window_minutes),
    )
    logger.info(
        'Consistency analysis found %d issues (%d critical, %d warning)',
        report.total,
        report.critical,
        report.warning,
    )
    return report
