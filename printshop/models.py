from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    INTAKE = 'INTAKE'
    CASHIER = 'CASHIER'
    OPERATOR = 'OPERATOR'


class PaymentStatus(str, Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    FAILED = 'FAILED'


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    PAID = 'PAID'
    IN_PRODUCTION = 'IN_PRODUCTION'
    COMPLETED = 'COMPLETED'


class PaymentMethod(str, Enum):
    CASH = 'CASH'
    CARD = 'CARD'


class ProductionStatus(str, Enum):
    PENDING = 'PENDING'
    PRINTING = 'PRINTING'
    FINISHING = 'FINISHING'
    DONE = 'DONE'


# Ordered production pipeline; a work order only ever moves one slot to the right.
PRODUCTION_PIPELINE: tuple[ProductionStatus, ...] = (
    ProductionStatus.PENDING,
    ProductionStatus.PRINTING,
    ProductionStatus.FINISHING,
    ProductionStatus.DONE,
)


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    identity: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Customer(Base):
    __tablename__ = 'customers'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50))
    email: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        CheckConstraint(
            "order_status = 'PENDING' OR payment_status = 'PAID'",
            name='ck_orders_status_requires_payment',
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('customers.id'), nullable=False)
    intake_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name='payment_status'),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    order_status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    customer: Mapped[Customer] = relationship()
    items: Mapped[list['OrderItem']] = relationship(
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderItem.id',
    )


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='ck_order_items_price_non_negative'),
        CheckConstraint('subtotal = quantity * unit_price', name='ck_order_items_subtotal'),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped[Order] = relationship(back_populates='items')


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    # Unique: an order carries at most one successful payment.
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id'), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod, name='payment_method'), nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(255))
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    cashier_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order: Mapped[Order] = relationship()


class ProductionWorkOrder(Base):
    __tablename__ = 'work_orders'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    spk_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id'), nullable=False, unique=True)
    production_status: Mapped[ProductionStatus] = mapped_column(
        SQLEnum(ProductionStatus, name='production_status'),
        nullable=False,
        default=ProductionStatus.PENDING,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    operator_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order: Mapped[Order] = relationship()


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_table: Mapped[str | None] = mapped_column(String(64))
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
