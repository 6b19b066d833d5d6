from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from printshop.auth import Principal, Role, require_role
from printshop.db import get_db
from printshop.models import ProductionStatus
from printshop.routers.filters import parse_status_filter
from printshop.schemas import AdvanceRequest
from printshop.services.production_service import (
    advance_stage,
    list_work_orders,
    operator_stats,
    work_order_to_dict,
)

router = APIRouter(prefix='/operator', tags=['operator'])


@router.get('/work-orders')
def work_orders_index(
    search: str | None = None,
    status: str | None = None,
    principal: Principal = Depends(require_role(Role.OPERATOR)),
    db: Session = Depends(get_db),
):
    return list_work_orders(
        db,
        actor=principal,
        search_text=search,
        production_status=parse_status_filter(ProductionStatus, status),
    )


@router.post('/work-orders/{work_order_id}/advance')
def work_order_advance(
    work_order_id: int,
    payload: AdvanceRequest,
    principal: Principal = Depends(require_role(Role.OPERATOR)),
    db: Session = Depends(get_db),
):
    work_order = advance_stage(
        db,
        actor=principal,
        work_order_id=work_order_id,
        expected_stage=payload.expected_stage,
    )
    return work_order_to_dict(work_order)


@router.get('/stats')
def stats(
    principal: Principal = Depends(require_role(Role.OPERATOR)),
    db: Session = Depends(get_db),
):
    return operator_stats(db, actor=principal)
