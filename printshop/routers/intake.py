from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from printshop.auth import Principal, Role, require_role
from printshop.db import get_db
from printshop.models import OrderStatus, PaymentStatus
from printshop.routers.filters import parse_status_filter
from printshop.schemas import OrderCreate, WorkOrderCreate
from printshop.services.order_service import (
    NewCustomerInput,
    OrderItemInput,
    create_order,
    get_order,
    intake_stats,
    list_customers,
    list_orders,
    order_to_dict,
)
from printshop.services.production_service import create_work_order, work_order_to_dict

router = APIRouter(prefix='/intake', tags=['intake'])


@router.get('/orders')
def orders_index(
    search: str | None = None,
    payment_status: str | None = None,
    order_status: str | None = None,
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    return list_orders(
        db,
        actor=principal,
        search_text=search,
        payment_status=parse_status_filter(PaymentStatus, payment_status),
        order_status=parse_status_filter(OrderStatus, order_status),
    )


@router.post('/orders', status_code=201)
def orders_create(
    payload: OrderCreate,
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    new_customer = None
    if payload.new_customer is not None:
        new_customer = NewCustomerInput(
            name=payload.new_customer.name,
            phone=payload.new_customer.phone,
            email=payload.new_customer.email,
        )
    order = create_order(
        db,
        actor=principal,
        customer_id=payload.customer_id,
        new_customer=new_customer,
        items=[OrderItemInput(product_name=i.product_name, quantity=i.quantity, price=i.price) for i in payload.items],
        notes=payload.notes,
        deadline=payload.deadline,
    )
    return order_to_dict(get_order(db, actor=principal, order_id=order.id))


@router.get('/orders/{order_id}')
def orders_detail(
    order_id: int,
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    return order_to_dict(get_order(db, actor=principal, order_id=order_id))


@router.post('/orders/{order_id}/work-order', status_code=201)
def work_order_create(
    order_id: int,
    payload: WorkOrderCreate | None = None,
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    work_order = create_work_order(db, actor=principal, order_id=order_id, notes=payload.notes if payload else None)
    return work_order_to_dict(work_order)


@router.get('/customers')
def customers_index(
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    return list_customers(db, actor=principal)


@router.get('/stats')
def stats(
    principal: Principal = Depends(require_role(Role.INTAKE)),
    db: Session = Depends(get_db),
):
    return intake_stats(db, actor=principal)
