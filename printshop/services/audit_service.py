from __future__ import annotations

from sqlalchemy.orm import Session

from printshop.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    entity_table: str | None = None,
    entity_id: int | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            entity_table=entity_table,
            entity_id=entity_id,
            meta=metadata or {},
        )
    )
