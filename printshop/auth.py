from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from printshop.errors import ForbiddenError


class Role(str, Enum):
    INTAKE = "INTAKE"
    CASHIER = "CASHIER"
    OPERATOR = "OPERATOR"


class Action(str, Enum):
    CREATE_ORDER = "CREATE_ORDER"
    LIST_ORDERS = "LIST_ORDERS"
    VIEW_CUSTOMERS = "VIEW_CUSTOMERS"
    CREATE_WORK_ORDER = "CREATE_WORK_ORDER"
    LIST_WORK_ORDERS = "LIST_WORK_ORDERS"
    SETTLE_PAYMENT = "SETTLE_PAYMENT"
    LIST_PAYMENTS = "LIST_PAYMENTS"
    ADVANCE_STAGE = "ADVANCE_STAGE"


@dataclass(frozen=True)
class Principal:
    id: int
    identity: str
    full_name: str
    role: Role
    active: bool = True


def allowed_actions(role: Role) -> frozenset[Action]:
    if role == Role.INTAKE:
        return frozenset(
            {
                Action.CREATE_ORDER,
                Action.LIST_ORDERS,
                Action.VIEW_CUSTOMERS,
                Action.CREATE_WORK_ORDER,
                Action.LIST_WORK_ORDERS,
            }
        )
    if role == Role.CASHIER:
        return frozenset({Action.LIST_ORDERS, Action.SETTLE_PAYMENT, Action.LIST_PAYMENTS})
    if role == Role.OPERATOR:
        return frozenset({Action.LIST_WORK_ORDERS, Action.ADVANCE_STAGE})
    raise ValueError(f"Unhandled role: {role!r}")


def authorize(principal: Principal, action: Action) -> None:
    if not principal.active:
        raise ForbiddenError(f"Principal {principal.identity} is inactive")
    if action not in allowed_actions(principal.role):
        raise ForbiddenError(f"Role {principal.role.value} may not perform {action.value}")


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise ForbiddenError(f"Principal {principal.identity} is inactive")
    return principal


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise ForbiddenError(f"Role {principal.role.value} may not use this endpoint")
        return principal

    return _dep
