from __future__ import annotations

import threading

import psycopg
from psycopg import sql
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from printshop.logging_config import get_logger
from printshop.services.change_feed import ChangeEvent, ChangeFeed, drain_changes

logger = get_logger(__name__)


def psycopg_dsn(database_url: str) -> str:
    return make_url(database_url).set(drivername='postgresql').render_as_string(hide_password=False)


class PostgresChangeFeed(ChangeFeed):
    """Cross-process change feed on top of PostgreSQL LISTEN/NOTIFY.

    Writers emit ``pg_notify`` inside their own transaction, so a notification
    is delivered only if the change commits. Each process runs one listener
    thread on a dedicated autocommit connection and fans notifications out to
    its local subscribers. A dropped connection is re-established after
    ``reconnect_seconds``; subscribers are then told to re-read, which covers
    anything missed while disconnected.
    """

    def __init__(
        self,
        database_url: str,
        *,
        channel: str,
        reconnect_seconds: float = 2.0,
        poll_seconds: float = 1.0,
    ) -> None:
        super().__init__()
        self.dsn = psycopg_dsn(database_url)
        self.channel = channel
        self.reconnect_seconds = reconnect_seconds
        self.poll_seconds = poll_seconds
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def _install_publisher(self, session_factory: sessionmaker) -> None:
        event.listen(session_factory, 'before_commit', self._before_commit)

    def _before_commit(self, session: Session) -> None:
        session.flush()
        for change in drain_changes(session):
            session.execute(
                text('SELECT pg_notify(:channel, :payload)'),
                {'channel': self.channel, 'payload': change.to_payload()},
            )

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._listen_forever, name='change-feed-listener', daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_seconds + 1)
            self._thread = None

    def _listen_forever(self) -> None:
        while not self._stopped.is_set():
            try:
                with psycopg.connect(self.dsn, autocommit=True) as conn:
                    conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(self.channel)))
                    logger.info('Change feed listening', extra={'extra_fields': {'channel': self.channel}})
                    self.notify_reconnected()
                    while not self._stopped.is_set():
                        for notify in conn.notifies(timeout=self.poll_seconds):
                            self._handle_payload(notify.payload)
            except psycopg.OperationalError as exc:
                logger.warning(
                    'Change feed connection lost, reconnecting',
                    extra={'extra_fields': {'channel': self.channel, 'error': str(exc)}},
                )
                self._stopped.wait(self.reconnect_seconds)

    def _handle_payload(self, payload: str) -> None:
        try:
            change = ChangeEvent.from_payload(payload)
        except (ValueError, KeyError):
            logger.warning('Ignoring malformed change notification', extra={'extra_fields': {'payload': payload}})
            return
        self.dispatch([change])
