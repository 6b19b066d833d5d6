from __future__ import annotations

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.auth import Action, Principal, authorize
from printshop.errors import (
    DuplicateWorkOrderError,
    InconsistentStateError,
    NotFoundError,
    NotPayableError,
    NumberCollisionError,
    TerminalStateError,
    ValidationError,
)
from printshop.logging_config import get_logger
from printshop.models import (
    PRODUCTION_PIPELINE,
    Customer,
    Order,
    OrderStatus,
    PaymentStatus,
    ProductionStatus,
    ProductionWorkOrder,
)
from printshop.services.audit_service import log_audit
from printshop.services.change_feed import ChangeOperation, record_change
from printshop.services.numbering import WORK_ORDER_PREFIX, generate_number
from printshop.services.unit_of_work import RetryPolicy, commit_atomically

logger = get_logger(__name__)


def next_stage(stage: ProductionStatus) -> ProductionStatus | None:
    idx = PRODUCTION_PIPELINE.index(stage)
    if idx + 1 >= len(PRODUCTION_PIPELINE):
        return None
    return PRODUCTION_PIPELINE[idx + 1]


def parse_stage(value: ProductionStatus | str) -> ProductionStatus:
    if isinstance(value, ProductionStatus):
        return value
    try:
        return ProductionStatus(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(f'Unknown production stage: {value}') from exc


def _work_order_for(db: Session, order_id: int) -> ProductionWorkOrder | None:
    return db.execute(
        select(ProductionWorkOrder).where(ProductionWorkOrder.order_id == order_id)
    ).scalar_one_or_none()


def _load_work_order(db: Session, work_order_id: int) -> ProductionWorkOrder:
    work_order = db.execute(
        select(ProductionWorkOrder)
        .where(ProductionWorkOrder.id == work_order_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not work_order:
        raise NotFoundError(f'Work order {work_order_id} not found')
    return work_order


def _raise_creation_conflict(db: Session, order_id: int, order_number: str) -> None:
    if _work_order_for(db, order_id) is not None:
        raise DuplicateWorkOrderError(f'Order {order_number} already has a work order')
    payment_status = db.execute(select(Order.payment_status).where(Order.id == order_id)).scalar_one()
    if payment_status != PaymentStatus.PAID:
        raise NotPayableError(f'Order {order_number} is not paid yet')
    raise DuplicateWorkOrderError(f'Order {order_number} is already past the paid stage')


def create_work_order(
    db: Session,
    *,
    actor: Principal,
    order_id: int,
    notes: str | None = None,
    spk_number: str | None = None,
    policy: RetryPolicy | None = None,
) -> ProductionWorkOrder:
    authorize(actor, Action.CREATE_WORK_ORDER)
    order = db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not order:
        raise NotFoundError(f'Order {order_id} not found')
    order_number = order.order_number
    if _work_order_for(db, order_id) is not None:
        raise DuplicateWorkOrderError(f'Order {order_number} already has a work order')
    if order.payment_status != PaymentStatus.PAID:
        raise NotPayableError(f'Order {order_number} is not paid yet')

    number = spk_number or generate_number(WORK_ORDER_PREFIX)
    cleaned_notes = notes.strip() if notes and notes.strip() else None

    def apply() -> ProductionWorkOrder:
        moved = db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == PaymentStatus.PAID,
                Order.order_status == OrderStatus.PAID,
            )
            .values(order_status=OrderStatus.IN_PRODUCTION)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            _raise_creation_conflict(db, order_id, order_number)
        record_change(db, Order.__tablename__, ChangeOperation.UPDATE, order_id)

        work_order = ProductionWorkOrder(
            spk_number=number,
            order_id=order_id,
            production_status=ProductionStatus.PENDING,
            notes=cleaned_notes,
        )
        db.add(work_order)
        try:
            db.flush()
        except IntegrityError as exc:
            if 'spk_number' in str(exc.orig):
                raise NumberCollisionError(f'Work order number {number} is already taken; submit again') from exc
            raise DuplicateWorkOrderError(f'Order {order_number} already has a work order') from exc
        log_audit(
            db,
            actor_principal_id=actor.id,
            action='WORK_ORDER_CREATED',
            entity_table=ProductionWorkOrder.__tablename__,
            entity_id=work_order.id,
            metadata={'order_id': order_id, 'spk_number': number},
        )
        db.expire(order, ['order_status'])
        return work_order

    def confirm() -> ProductionWorkOrder | None:
        work_order = db.execute(
            select(ProductionWorkOrder).where(ProductionWorkOrder.spk_number == number)
        ).scalar_one_or_none()
        if work_order is None:
            return None
        order_status = db.execute(select(Order.order_status).where(Order.id == order_id)).scalar_one()
        if order_status == OrderStatus.PAID:
            raise InconsistentStateError(f'Work order {number} exists but order {order_number} is not in production')
        return work_order

    work_order = commit_atomically(db, operation='create_work_order', apply=apply, confirm=confirm, policy=policy)
    logger.info(
        'Work order created',
        extra={'extra_fields': {'order_id': order_id, 'order_number': order_number, 'spk_number': number}},
    )
    return work_order


def advance_stage(
    db: Session,
    *,
    actor: Principal,
    work_order_id: int,
    expected_stage: ProductionStatus | str | None = None,
    policy: RetryPolicy | None = None,
) -> ProductionWorkOrder:
    """Move a work order one stage along the pipeline.

    ``expected_stage`` is the stage the caller saw when it issued the request.
    If the work order has already left that stage, the request is a duplicate
    (or was overtaken) and the current state is returned unchanged. Without it,
    a request that loses the race to a concurrent advance also returns the
    current state instead of advancing twice.
    """
    authorize(actor, Action.ADVANCE_STAGE)
    expected = parse_stage(expected_stage) if expected_stage is not None else None
    work_order = _load_work_order(db, work_order_id)
    current = work_order.production_status

    if expected is not None and current != expected:
        logger.info(
            'Advance request already applied',
            extra={
                'extra_fields': {
                    'work_order_id': work_order_id,
                    'expected_stage': expected.value,
                    'current_stage': current.value,
                }
            },
        )
        return work_order

    target = next_stage(current)
    if target is None:
        logger.warning('Advance rejected on finished work order', extra={'extra_fields': {'work_order_id': work_order_id}})
        raise TerminalStateError(f'Work order {work_order.spk_number} is already done')
    order_id = work_order.order_id
    spk_number = work_order.spk_number

    def apply() -> ProductionWorkOrder | None:
        moved = db.execute(
            update(ProductionWorkOrder)
            .where(
                ProductionWorkOrder.id == work_order_id,
                ProductionWorkOrder.production_status == current,
            )
            .values(
                production_status=target,
                operator_principal_id=func.coalesce(ProductionWorkOrder.operator_principal_id, actor.id),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            return None
        record_change(db, ProductionWorkOrder.__tablename__, ChangeOperation.UPDATE, work_order_id)

        if target == ProductionStatus.DONE:
            completed = db.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.payment_status == PaymentStatus.PAID,
                    Order.order_status == OrderStatus.IN_PRODUCTION,
                )
                .values(order_status=OrderStatus.COMPLETED)
                .execution_options(synchronize_session=False)
            )
            if completed.rowcount != 1:
                raise InconsistentStateError(f'Order {order_id} for {spk_number} is not in production')
            record_change(db, Order.__tablename__, ChangeOperation.UPDATE, order_id)

        log_audit(
            db,
            actor_principal_id=actor.id,
            action='WORK_ORDER_ADVANCED',
            entity_table=ProductionWorkOrder.__tablename__,
            entity_id=work_order_id,
            metadata={'from': current.value, 'to': target.value},
        )
        db.expire(work_order)
        return work_order

    def confirm() -> ProductionWorkOrder | None:
        stage = db.execute(
            select(ProductionWorkOrder.production_status).where(ProductionWorkOrder.id == work_order_id)
        ).scalar_one()
        if stage == current:
            return None
        if stage == ProductionStatus.DONE:
            order_status = db.execute(select(Order.order_status).where(Order.id == order_id)).scalar_one()
            if order_status != OrderStatus.COMPLETED:
                raise InconsistentStateError(f'{spk_number} is done but order {order_id} is not completed')
        return _load_work_order(db, work_order_id)

    advanced = commit_atomically(db, operation='advance_stage', apply=apply, confirm=confirm, policy=policy)
    if advanced is None:
        logger.info(
            'Advance lost to a concurrent request',
            extra={'extra_fields': {'work_order_id': work_order_id, 'from': current.value}},
        )
        return _load_work_order(db, work_order_id)

    logger.info(
        'Work order advanced',
        extra={
            'extra_fields': {
                'work_order_id': work_order_id,
                'spk_number': spk_number,
                'from': current.value,
                'to': target.value,
                'order_completed': target == ProductionStatus.DONE,
            }
        },
    )
    return advanced


def work_order_to_dict(
    work_order: ProductionWorkOrder,
    *,
    order_number: str | None = None,
    customer_name: str | None = None,
    total_amount: int | None = None,
) -> dict:
    upcoming = next_stage(work_order.production_status)
    return {
        'id': work_order.id,
        'spk_number': work_order.spk_number,
        'order_id': work_order.order_id,
        'order_number': order_number,
        'customer_name': customer_name,
        'total_amount': total_amount,
        'production_status': work_order.production_status.value,
        'next_stage': upcoming.value if upcoming else None,
        'notes': work_order.notes,
        'operator_principal_id': work_order.operator_principal_id,
        'created_at': work_order.created_at,
        'updated_at': work_order.updated_at,
    }


def list_work_orders(
    db: Session,
    *,
    actor: Principal,
    search_text: str | None = None,
    production_status: ProductionStatus | None = None,
) -> list[dict]:
    authorize(actor, Action.LIST_WORK_ORDERS)
    stmt = (
        select(ProductionWorkOrder, Order.order_number, Customer.name, Order.total_amount)
        .join(Order, Order.id == ProductionWorkOrder.order_id)
        .join(Customer, Customer.id == Order.customer_id)
        .execution_options(populate_existing=True)
    )
    term = (search_text or '').strip().lower()
    if term:
        needle = f'%{term}%'
        stmt = stmt.where(
            or_(
                func.lower(ProductionWorkOrder.spk_number).like(needle),
                func.lower(Order.order_number).like(needle),
                func.lower(Customer.name).like(needle),
            )
        )
    if production_status is not None:
        stmt = stmt.where(ProductionWorkOrder.production_status == production_status)
    stmt = stmt.order_by(ProductionWorkOrder.created_at.desc(), ProductionWorkOrder.id.desc())
    return [
        work_order_to_dict(wo, order_number=order_number, customer_name=customer_name, total_amount=total)
        for wo, order_number, customer_name, total in db.execute(stmt).all()
    ]


def operator_stats(db: Session, *, actor: Principal) -> dict:
    authorize(actor, Action.LIST_WORK_ORDERS)
    counts = dict(
        db.execute(
            select(ProductionWorkOrder.production_status, func.count(ProductionWorkOrder.id)).group_by(
                ProductionWorkOrder.production_status
            )
        ).all()
    )
    return {
        'total': sum(counts.values()),
        'pending': counts.get(ProductionStatus.PENDING, 0),
        'in_progress': counts.get(ProductionStatus.PRINTING, 0) + counts.get(ProductionStatus.FINISHING, 0),
        'done': counts.get(ProductionStatus.DONE, 0),
    }
