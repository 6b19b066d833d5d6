from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from printshop.logging_config import get_logger

logger = get_logger(__name__)

PENDING_CHANGES_KEY = 'printshop.pending_changes'


class ChangeOperation(str, Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    operation: ChangeOperation
    row_id: int | None = None

    def to_payload(self) -> str:
        return json.dumps({'table': self.table, 'operation': self.operation.value, 'row_id': self.row_id})

    @classmethod
    def from_payload(cls, raw: str) -> ChangeEvent:
        data = json.loads(raw)
        return cls(table=data['table'], operation=ChangeOperation(data['operation']), row_id=data.get('row_id'))


ChangeCallback = Callable[[ChangeEvent], None]
ReconnectCallback = Callable[[], None]


class Subscription:
    def __init__(
        self,
        feed: ChangeFeed,
        tables: Iterable[str],
        callback: ChangeCallback,
        on_reconnect: ReconnectCallback | None = None,
    ) -> None:
        self.feed = feed
        self.tables = frozenset(tables)
        self.callback = callback
        self.on_reconnect = on_reconnect
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        return not self.closed and change.table in self.tables

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed.unsubscribe(self)


def record_change(db: Session, table: str, operation: ChangeOperation, row_id: int | None) -> None:
    """Queue a change that the ORM flush does not see, such as a conditional UPDATE statement."""
    db.info.setdefault(PENDING_CHANGES_KEY, []).append(ChangeEvent(table, operation, row_id))


def pending_changes(db: Session) -> list[ChangeEvent]:
    return list(db.info.get(PENDING_CHANGES_KEY, []))


def drain_changes(db: Session) -> list[ChangeEvent]:
    pending = db.info.pop(PENDING_CHANGES_KEY, [])
    unique: list[ChangeEvent] = []
    seen: set[ChangeEvent] = set()
    for change in pending:
        if change in seen:
            continue
        seen.add(change)
        unique.append(change)
    return unique


def _discard_changes(session: Session, *_args) -> None:
    session.info.pop(PENDING_CHANGES_KEY, None)


def _collect_flushed(session: Session, _flush_context) -> None:
    pending = session.info.setdefault(PENDING_CHANGES_KEY, [])
    for obj in session.new:
        pending.append(ChangeEvent(obj.__table__.name, ChangeOperation.INSERT, getattr(obj, 'id', None)))
    for obj in session.dirty:
        if session.is_modified(obj, include_collections=False):
            pending.append(ChangeEvent(obj.__table__.name, ChangeOperation.UPDATE, getattr(obj, 'id', None)))
    for obj in session.deleted:
        pending.append(ChangeEvent(obj.__table__.name, ChangeOperation.DELETE, getattr(obj, 'id', None)))


class ChangeFeed(ABC):
    """Fan-out point for committed row changes.

    Subclasses decide how committed changes leave the writing session; this
    base class owns subscriptions and delivery to subscribers in this process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._bound: set[int] = set()

    def subscribe(
        self,
        tables: Iterable[str],
        callback: ChangeCallback,
        *,
        on_reconnect: ReconnectCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(self, tables, callback, on_reconnect)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def dispatch(self, changes: Iterable[ChangeEvent]) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for change in changes:
            for subscription in subscriptions:
                if not subscription.matches(change):
                    continue
                try:
                    subscription.callback(change)
                except Exception:
                    logger.exception(
                        'Change subscriber failed',
                        extra={'extra_fields': {'table': change.table, 'operation': change.operation.value}},
                    )

    def notify_reconnected(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if subscription.closed or subscription.on_reconnect is None:
                continue
            try:
                subscription.on_reconnect()
            except Exception:
                logger.exception('Change subscriber failed to resynchronise after reconnect')

    def bind(self, session_factory: sessionmaker) -> None:
        key = id(session_factory)
        if key in self._bound:
            return
        self._bound.add(key)
        event.listen(session_factory, 'after_flush', _collect_flushed)
        event.listen(session_factory, 'after_rollback', _discard_changes)
        self._install_publisher(session_factory)

    @abstractmethod
    def _install_publisher(self, session_factory: sessionmaker) -> None:
        """Hook the transport that carries committed changes to subscribers."""

    def start(self) -> None:
        pass

    def close(self) -> None:
        pass


class InMemoryChangeFeed(ChangeFeed):
    """Delivers changes to subscribers in the same process once the writer commits."""

    def _install_publisher(self, session_factory: sessionmaker) -> None:
        event.listen(session_factory, 'after_commit', self._after_commit)

    def _after_commit(self, session: Session) -> None:
        changes = drain_changes(session)
        if changes:
            self.dispatch(changes)
