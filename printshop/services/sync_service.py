from __future__ import annotations

import threading
from collections.abc import Callable

from sqlalchemy.orm import Session, sessionmaker

from printshop.auth import Principal, Role
from printshop.logging_config import get_logger
from printshop.models import Order, OrderItem, Payment, PaymentStatus, ProductionWorkOrder
from printshop.services.change_feed import ChangeEvent, ChangeFeed, Subscription
from printshop.services.order_service import intake_stats, list_orders
from printshop.services.payment_service import cashier_stats, list_payments
from printshop.services.production_service import list_work_orders, operator_stats

logger = get_logger(__name__)

RECENT_PAYMENTS_LIMIT = 20


ROLE_TABLES: dict[Role, frozenset[str]] = {
    Role.INTAKE: frozenset({Order.__tablename__, OrderItem.__tablename__}),
    Role.CASHIER: frozenset({Order.__tablename__, Payment.__tablename__}),
    Role.OPERATOR: frozenset({ProductionWorkOrder.__tablename__}),
}


def role_tables(role: Role) -> frozenset[str]:
    try:
        return ROLE_TABLES[role]
    except KeyError:
        raise ValueError(f'Unhandled role: {role!r}') from None


def fetch_role_view(db: Session, principal: Principal) -> dict:
    """Read the caller's whole dashboard from the store."""
    role = principal.role
    if role == Role.INTAKE:
        return {
            'role': role.value,
            'orders': list_orders(db, actor=principal),
            'stats': intake_stats(db, actor=principal),
        }
    if role == Role.CASHIER:
        return {
            'role': role.value,
            'pending_orders': list_orders(db, actor=principal, payment_status=PaymentStatus.PENDING),
            'recent_payments': list_payments(db, actor=principal, limit=RECENT_PAYMENTS_LIMIT),
            'stats': cashier_stats(db, actor=principal),
        }
    if role == Role.OPERATOR:
        return {
            'role': role.value,
            'work_orders': list_work_orders(db, actor=principal),
            'stats': operator_stats(db, actor=principal),
        }
    raise ValueError(f'Unhandled role: {role!r}')


def make_view_fetcher(session_factory: sessionmaker, principal: Principal) -> Callable[[], dict]:
    def _fetch() -> dict:
        with session_factory() as db:
            return fetch_role_view(db, principal)

    return _fetch


class ViewSynchronizer:
    """Keeps one client's view equal to the store by re-reading it on every change.

    No deltas are applied: any notification on a table the role watches, and
    any reconnect of the feed, triggers a full authoritative fetch. ``trigger``
    replaces the immediate refresh when the caller wants to schedule it itself.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        *,
        role: Role,
        fetch_view: Callable[[], dict],
        on_view: Callable[[dict], None],
        trigger: Callable[[], None] | None = None,
    ) -> None:
        self.feed = feed
        self.role = role
        self.tables = role_tables(role)
        self.fetch_view = fetch_view
        self.on_view = on_view
        self.trigger = trigger or self.refresh
        self.refresh_count = 0
        self._subscription: Subscription | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.feed.subscribe(self.tables, self._on_change, on_reconnect=self._on_reconnect)
        self.refresh()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def reconnect(self) -> None:
        """Drop and re-establish the subscription, then catch up with one fetch."""
        self.stop()
        self.start()

    def refresh(self) -> dict:
        with self._lock:
            view = self.fetch_view()
            self.refresh_count += 1
        self.on_view(view)
        return view

    def _on_change(self, change: ChangeEvent) -> None:
        logger.debug(
            'Change received, re-fetching view',
            extra={'extra_fields': {'role': self.role.value, 'table': change.table, 'operation': change.operation.value}},
        )
        self.trigger()

    def _on_reconnect(self) -> None:
        logger.info('Feed reconnected, re-fetching view', extra={'extra_fields': {'role': self.role.value}})
        self.trigger()
