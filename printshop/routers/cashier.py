from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from printshop.auth import Principal, Role, require_role
from printshop.db import get_db
from printshop.models import PaymentStatus
from printshop.schemas import PaymentCreate
from printshop.services.order_service import get_order, list_orders, order_to_dict
from printshop.services.payment_gateway import PaymentGateway
from printshop.services.payment_service import cashier_stats, list_payments, payment_to_dict, settle_payment
from printshop.services.provider_factory import get_payment_gateway

router = APIRouter(prefix='/cashier', tags=['cashier'])


@router.get('/orders')
def pending_orders(
    search: str | None = None,
    principal: Principal = Depends(require_role(Role.CASHIER)),
    db: Session = Depends(get_db),
):
    return list_orders(db, actor=principal, search_text=search, payment_status=PaymentStatus.PENDING)


@router.post('/orders/{order_id}/payment', status_code=201)
def payment_create(
    order_id: int,
    payload: PaymentCreate,
    principal: Principal = Depends(require_role(Role.CASHIER)),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = settle_payment(
        db,
        gateway,
        actor=principal,
        order_id=order_id,
        amount=payload.amount,
        method=payload.method,
        card_token=payload.card_token,
    )
    order = get_order(db, actor=principal, order_id=order_id)
    return {
        'payment': payment_to_dict(payment, order_number=order.order_number, customer_name=order.customer.name),
        'order': order_to_dict(order),
    }


@router.get('/payments')
def payments_index(
    limit: int = 20,
    principal: Principal = Depends(require_role(Role.CASHIER)),
    db: Session = Depends(get_db),
):
    return list_payments(db, actor=principal, limit=max(1, min(limit, 200)))


@router.get('/stats')
def stats(
    principal: Principal = Depends(require_role(Role.CASHIER)),
    db: Session = Depends(get_db),
):
    return cashier_stats(db, actor=principal)
