from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from printshop.config import settings
from printshop.errors import InconsistentStateError, StoreUnavailableError
from printshop.logging_config import get_logger
from printshop.services.change_feed import ChangeEvent, pending_changes, record_change

logger = get_logger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    delay_seconds: float = 0.5

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            attempts=max(1, settings.store_retry_attempts),
            delay_seconds=max(0.0, settings.store_retry_delay_seconds),
        )


def commit_atomically(
    db: Session,
    *,
    operation: str,
    apply: Callable[[], T],
    confirm: Callable[[], T | None],
    policy: RetryPolicy | None = None,
) -> T:
    """Apply one multi-row transition and commit it as a unit.

    ``apply`` stages the conditional updates and inserts and returns the result.
    ``confirm`` re-reads the store after an ambiguous commit failure and returns
    the committed result, ``None`` if nothing landed, or raises
    ``InconsistentStateError`` if it finds the unit half applied.

    A commit that fails on connectivity is either confirmed, re-applied under the
    same conditional updates, or, once the store stays unreachable for the whole
    policy, reported as ``InconsistentStateError``.
    """
    policy = policy or RetryPolicy.from_settings()
    for attempt in range(1, policy.attempts + 1):
        try:
            result = apply()
            db.flush()
        except OperationalError as exc:
            db.rollback()
            raise StoreUnavailableError(f'{operation}: store unavailable') from exc
        except Exception:
            db.rollback()
            raise

        staged = pending_changes(db)
        try:
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            logger.warning(
                'Commit outcome unknown, re-reading store',
                extra={'extra_fields': {'operation': operation, 'attempt': attempt, 'error': str(exc)}},
            )

        committed = _confirm_outcome(db, operation=operation, confirm=confirm, policy=policy)
        if committed is not None:
            logger.info(
                'Commit confirmed after retry',
                extra={'extra_fields': {'operation': operation, 'attempt': attempt}},
            )
            _republish(db, operation=operation, changes=staged)
            return committed
        time.sleep(policy.delay_seconds)

    logger.error('Giving up on commit', extra={'extra_fields': {'operation': operation}})
    raise InconsistentStateError(f'{operation}: could not commit after {policy.attempts} attempts')


def _confirm_outcome(
    db: Session,
    *,
    operation: str,
    confirm: Callable[[], T | None],
    policy: RetryPolicy,
) -> T | None:
    for _ in range(policy.attempts):
        try:
            return confirm()
        except OperationalError:
            db.rollback()
            time.sleep(policy.delay_seconds)
    logger.error('Store unreachable while confirming commit', extra={'extra_fields': {'operation': operation}})
    raise InconsistentStateError(f'{operation}: store unreachable, outcome of the last commit is unknown')


def _republish(db: Session, *, operation: str, changes: list[ChangeEvent]) -> None:
    """Publish the changes of a unit whose commit landed without an acknowledgement.

    The rollback after the failed commit dropped them, so subscribers would
    otherwise never hear of the write.
    """
    if not changes:
        return
    for change in changes:
        record_change(db, change.table, change.operation, change.row_id)
    try:
        db.commit()
    except OperationalError as exc:
        db.rollback()
        logger.warning(
            'Could not publish changes of a confirmed commit',
            extra={'extra_fields': {'operation': operation, 'changes': len(changes), 'error': str(exc)}},
        )
