from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class MovementType(str, Enum):
    ENTRY = 'ENTRY'
    EXIT = 'EXIT'
    ADJUSTMENT = 'ADJUSTMENT'
    TRANSFER_IN = 'TRANSFER_IN'
    TRANSFER_OUT = 'TRANSFER_OUT'


class MovementStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class AuditAction(str, Enum):
    CREATE = 'CREATE'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


class IssueType(str, Enum):
    MISSING_MOVEMENT = 'MISSING_MOVEMENT'
    QUANTITY_MISMATCH = 'QUANTITY_MISMATCH'
    ORPHAN_MOVEMENT = 'ORPHAN_MOVEMENT'
    NEGATIVE_STOCK = 'NEGATIVE_STOCK'


class IssueSeverity(str, Enum):
    CRITICAL = 'CRITICAL'
    WARNING = 'WARNING'


class FixAction(str, Enum):
    DELETE_MOVEMENT = 'DELETE_MOVEMENT'
    UPDATE_DELIVERY = 'UPDATE_DELIVERY'
    CREATE_MOVEMENT = 'CREATE_MOVEMENT'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Warehouse(Base):
    __tablename__ = 'warehouses'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    location: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Epp(Base):
    __tablename__ = 'epps'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class EppStock(Base):
    __tablename__ = 'epp_stocks'

    epp_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('epps.id', ondelete='CASCADE'), primary_key=True)
    warehouse_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('warehouses.id', ondelete='CASCADE'), primary_key=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeliveryBatch(Base):
    __tablename__ = 'delivery_batches'
    __table_args__ = (
        UniqueConstraint('code', name='delivery_batches_code_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    warehouse_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('warehouses.id'), nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    created_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Delivery(Base):
    __tablename__ = 'deliveries'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('delivery_batches.id', ondelete='CASCADE'), nullable=False, index=True
    )
    epp_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('epps.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockMovement(Base):
    __tablename__ = 'stock_movements'
    __table_args__ = (
        Index('ix_stock_movements_epp_warehouse', 'epp_id', 'warehouse_id'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    type: Mapped[MovementType] = mapped_column(SQLEnum(MovementType, name='movement_type'), nullable=False)
    epp_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('epps.id'), nullable=False)
    warehouse_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('warehouses.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    status: Mapped[MovementStatus] = mapped_column(
        SQLEnum(MovementStatus, name='movement_status'),
        nullable=False,
        default=MovementStatus.APPROVED,
        server_default='APPROVED',
    )
    # Explicit correlation to the delivery this movement discharges. Legacy rows
    # leave it empty and are correlated through the batch code in the note.
    delivery_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey('deliveries.id', ondelete='SET NULL'), index=True
    )
    created_by_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'
    __table_args__ = (
        Index('ix_audit_log_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_log_expires_at', 'expires_at'),
        Index('ix_audit_log_created_at', 'created_at'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction, name='audit_action'), nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    meta: Mapped[dict | None] = mapped_column('metadata', JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
