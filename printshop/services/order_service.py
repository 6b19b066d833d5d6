from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload

from printshop.auth import Action, Principal, authorize
from printshop.errors import NotFoundError, NumberCollisionError, StoreUnavailableError, ValidationError
from printshop.logging_config import get_logger
from printshop.models import Customer, Order, OrderItem, OrderStatus, PaymentStatus
from printshop.services.numbering import ORDER_PREFIX, generate_number

logger = get_logger(__name__)


@dataclass
class NewCustomerInput:
    name: str
    phone: str | None = None
    email: str | None = None


@dataclass
class OrderItemInput:
    product_name: str
    quantity: int
    price: int


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validated_items(items: list[OrderItemInput]) -> list[OrderItemInput]:
    kept = [item for item in items if item.product_name and item.product_name.strip()]
    if not kept:
        raise ValidationError('Add at least one item with a product name')
    for item in kept:
        if not _is_int(item.quantity) or item.quantity < 1:
            raise ValidationError(f'Quantity for {item.product_name.strip()} must be a positive whole number')
        if not _is_int(item.price) or item.price < 0:
            raise ValidationError(f'Price for {item.product_name.strip()} cannot be negative')
    return kept


def _resolve_customer(
    db: Session,
    *,
    customer_id: int | None,
    new_customer: NewCustomerInput | None,
) -> Customer:
    if customer_id is not None and new_customer is not None:
        raise ValidationError('Choose an existing customer or enter a new one, not both')
    if customer_id is not None:
        customer = db.get(Customer, customer_id)
        if not customer:
            raise ValidationError(f'Customer {customer_id} does not exist')
        return customer
    if new_customer is None or not _clean(new_customer.name):
        raise ValidationError('Select a customer or enter a new customer name')
    customer = Customer(
        name=_clean(new_customer.name),
        phone=_clean(new_customer.phone),
        email=_clean(new_customer.email),
    )
    db.add(customer)
    return customer


def order_total(items: list[OrderItemInput]) -> int:
    return sum(item.quantity * item.price for item in items)


def create_order(
    db: Session,
    *,
    actor: Principal,
    items: list[OrderItemInput],
    customer_id: int | None = None,
    new_customer: NewCustomerInput | None = None,
    notes: str | None = None,
    deadline: datetime | None = None,
    order_number: str | None = None,
) -> Order:
    authorize(actor, Action.CREATE_ORDER)
    kept = _validated_items(items)
    customer = _resolve_customer(db, customer_id=customer_id, new_customer=new_customer)

    order = Order(
        order_number=order_number or generate_number(ORDER_PREFIX),
        customer=customer,
        intake_principal_id=actor.id,
        total_amount=order_total(kept),
        payment_status=PaymentStatus.PENDING,
        order_status=OrderStatus.PENDING,
        notes=_clean(notes),
        deadline=deadline,
        items=[
            OrderItem(
                product_name=item.product_name.strip(),
                quantity=item.quantity,
                unit_price=item.price,
                subtotal=item.quantity * item.price,
            )
            for item in kept
        ],
    )
    db.add(order)
    try:
        db.flush()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if 'order_number' in str(exc.orig):
            logger.warning('Order number collision', extra={'extra_fields': {'order_number': order.order_number}})
            raise NumberCollisionError(f'Order number {order.order_number} is already taken; submit again') from exc
        raise
    except OperationalError as exc:
        db.rollback()
        raise StoreUnavailableError('create_order: store unavailable') from exc

    logger.info(
        'Order created',
        extra={
            'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'total_amount': order.total_amount,
                'items': len(kept),
            }
        },
    )
    return order


def get_order(db: Session, *, actor: Principal, order_id: int) -> Order:
    authorize(actor, Action.LIST_ORDERS)
    order = db.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.customer))
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_id} not found')
    return order


def order_to_dict(order: Order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'customer': {
            'id': order.customer.id,
            'name': order.customer.name,
            'phone': order.customer.phone,
            'email': order.customer.email,
        },
        'intake_principal_id': order.intake_principal_id,
        'total_amount': order.total_amount,
        'payment_status': order.payment_status.value,
        'order_status': order.order_status.value,
        'deadline': order.deadline,
        'notes': order.notes,
        'created_at': order.created_at,
        'items': [
            {
                'id': item.id,
                'product_name': item.product_name,
                'quantity': item.quantity,
                'unit_price': item.unit_price,
                'subtotal': item.subtotal,
            }
            for item in order.items
        ],
    }


def list_orders(
    db: Session,
    *,
    actor: Principal,
    search_text: str | None = None,
    payment_status: PaymentStatus | None = None,
    order_status: OrderStatus | None = None,
    limit: int | None = None,
) -> list[dict]:
    authorize(actor, Action.LIST_ORDERS)
    stmt = (
        select(Order)
        .join(Customer, Customer.id == Order.customer_id)
        .options(selectinload(Order.items), selectinload(Order.customer))
        .execution_options(populate_existing=True)
    )
    term = _clean(search_text)
    if term:
        needle = f'%{term.lower()}%'
        stmt = stmt.where(or_(func.lower(Order.order_number).like(needle), func.lower(Customer.name).like(needle)))
    if payment_status is not None:
        stmt = stmt.where(Order.payment_status == payment_status)
    if order_status is not None:
        stmt = stmt.where(Order.order_status == order_status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
    if limit:
        stmt = stmt.limit(limit)
    return [order_to_dict(order) for order in db.execute(stmt).scalars().all()]


def list_customers(db: Session, *, actor: Principal) -> list[dict]:
    authorize(actor, Action.VIEW_CUSTOMERS)
    customers = db.execute(select(Customer).order_by(Customer.name.asc(), Customer.id.asc())).scalars().all()
    return [{'id': c.id, 'name': c.name, 'phone': c.phone, 'email': c.email} for c in customers]


def intake_stats(db: Session, *, actor: Principal) -> dict:
    authorize(actor, Action.LIST_ORDERS)
    total_orders = db.execute(select(func.count(Order.id))).scalar_one()
    unpaid = db.execute(
        select(func.count(Order.id)).where(Order.payment_status == PaymentStatus.PENDING)
    ).scalar_one()
    in_production = db.execute(
        select(func.count(Order.id)).where(Order.order_status == OrderStatus.IN_PRODUCTION)
    ).scalar_one()
    revenue = db.execute(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(Order.payment_status == PaymentStatus.PAID)
    ).scalar_one()
    return {
        'total_orders': total_orders,
        'unpaid_orders': unpaid,
        'in_production': in_production,
        'revenue': int(revenue),
    }
