from __future__ import annotations

import uuid
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.auth import Action, Principal, authorize
from printshop.config import settings
from printshop.errors import (
    AlreadyPaidError,
    AmountMismatchError,
    InconsistentStateError,
    NotFoundError,
    NotPayableError,
    PaymentGatewayError,
    ValidationError,
)
from printshop.logging_config import get_logger
from printshop.models import Customer, Order, OrderStatus, Payment, PaymentMethod, PaymentStatus
from printshop.services.audit_service import log_audit
from printshop.services.change_feed import ChangeOperation, record_change
from printshop.services.payment_gateway import PaymentGateway
from printshop.services.unit_of_work import RetryPolicy, commit_atomically

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _parse_method(method: PaymentMethod | str) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(str(method).strip().upper())
    except ValueError as exc:
        raise ValidationError(f'Unsupported payment method: {method}') from exc


def _load_order(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_id} not found')
    return order


def _check_payable(order: Order, amount: int) -> None:
    if order.payment_status == PaymentStatus.PAID:
        raise AlreadyPaidError(f'Order {order.order_number} is already paid')
    if order.payment_status != PaymentStatus.PENDING:
        raise NotPayableError(f'Order {order.order_number} has payment status {order.payment_status.value}')
    if amount != order.total_amount:
        raise AmountMismatchError(
            f'Amount {amount} does not match order total {order.total_amount} for {order.order_number}'
        )


def settle_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    order_id: int,
    amount: int,
    method: PaymentMethod | str,
    card_token: str | None = None,
    policy: RetryPolicy | None = None,
) -> Payment:
    authorize(actor, Action.SETTLE_PAYMENT)
    method = _parse_method(method)
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValidationError('Amount must be a non-negative whole number')
    if method == PaymentMethod.CARD and not (card_token and card_token.strip()):
        raise ValidationError('Card payments need a card token from the payment form')
    if method == PaymentMethod.CASH and card_token:
        raise ValidationError('Cash payments do not take a card token')

    order = _load_order(db, order_id)
    _check_payable(order, amount)
    order_number = order.order_number

    gateway_reference = None
    if method == PaymentMethod.CARD:
        result = gateway.authorize(
            token=card_token.strip(),
            amount=amount,
            currency=settings.payment_currency,
            reference=order_number,
        )
        if not result.approved:
            logger.warning(
                'Card payment declined',
                extra={'extra_fields': {'order_number': order_number, 'reason': result.decline_reason}},
            )
            raise PaymentGatewayError(
                f'Card payment for {order_number} was declined',
                reason=result.decline_reason,
            )
        gateway_reference = result.reference

    idempotency_key = uuid.uuid4().hex

    def apply() -> Payment:
        flipped = db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status == OrderStatus.PENDING,
            )
            .values(payment_status=PaymentStatus.PAID, order_status=OrderStatus.PAID)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise AlreadyPaidError(f'Order {order_number} was settled by another request')
        record_change(db, Order.__tablename__, ChangeOperation.UPDATE, order_id)

        payment = Payment(
            order_id=order_id,
            amount=amount,
            method=method,
            gateway_reference=gateway_reference,
            idempotency_key=idempotency_key,
            cashier_principal_id=actor.id,
        )
        db.add(payment)
        try:
            db.flush()
        except IntegrityError as exc:
            raise AlreadyPaidError(f'Order {order_number} already has a payment') from exc
        log_audit(
            db,
            actor_principal_id=actor.id,
            action='PAYMENT_SETTLED',
            entity_table=Payment.__tablename__,
            entity_id=payment.id,
            metadata={'order_id': order_id, 'amount': amount, 'method': method.value},
        )
        db.expire(order, ['payment_status', 'order_status'])
        return payment

    def confirm() -> Payment | None:
        payment = db.execute(
            select(Payment).where(Payment.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if payment is None:
            return None
        statuses = db.execute(
            select(Order.payment_status, Order.order_status).where(Order.id == order_id)
        ).one()
        if statuses.payment_status != PaymentStatus.PAID:
            raise InconsistentStateError(f'Payment recorded for {order_number} but the order is not marked paid')
        return payment

    try:
        payment = commit_atomically(db, operation='settle_payment', apply=apply, confirm=confirm, policy=policy)
    except AlreadyPaidError:
        if gateway_reference:
            logger.warning(
                'Card charged for an order settled by another request',
                extra={'extra_fields': {'order_number': order_number, 'gateway_reference': gateway_reference}},
            )
        raise
    logger.info(
        'Payment settled',
        extra={
            'extra_fields': {
                'order_id': order_id,
                'order_number': order_number,
                'payment_id': payment.id,
                'amount': amount,
                'method': method.value,
            }
        },
    )
    return payment


def payment_to_dict(payment: Payment, *, order_number: str | None = None, customer_name: str | None = None) -> dict:
    return {
        'id': payment.id,
        'order_id': payment.order_id,
        'order_number': order_number,
        'customer_name': customer_name,
        'amount': payment.amount,
        'method': payment.method.value,
        'gateway_reference': payment.gateway_reference,
        'cashier_principal_id': payment.cashier_principal_id,
        'paid_at': payment.paid_at,
    }


def list_payments(db: Session, *, actor: Principal, limit: int = 20) -> list[dict]:
    authorize(actor, Action.LIST_PAYMENTS)
    rows = db.execute(
        select(Payment, Order.order_number, Customer.name)
        .join(Order, Order.id == Payment.order_id)
        .join(Customer, Customer.id == Order.customer_id)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .limit(limit)
    ).all()
    return [
        payment_to_dict(payment, order_number=order_number, customer_name=customer_name)
        for payment, order_number, customer_name in rows
    ]


def cashier_stats(db: Session, *, actor: Principal, today: datetime | None = None) -> dict:
    authorize(actor, Action.LIST_PAYMENTS)
    day = (today or _now()).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    pending = db.execute(
        select(func.count(Order.id)).where(Order.payment_status == PaymentStatus.PENDING)
    ).scalar_one()
    today_count, today_total = db.execute(
        select(func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.paid_at >= start,
            Payment.paid_at < end,
        )
    ).one()
    total = db.execute(select(func.count(Payment.id))).scalar_one()
    return {
        'pending_orders': pending,
        'payments_today': today_count,
        'total_today': int(today_total),
        'total_transactions': total,
    }
