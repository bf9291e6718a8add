"""Append-only audit trail for escrow and dispute state changes."""

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
    user_id: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    """Queue an audit entry in the caller's unit of work.

    The entry commits or rolls back together with the change it records.
    """
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=json.dumps(details, default=str, sort_keys=True) if details else None,
    )
    db.add(entry)
    logger.info(
        "audit %s",
        action,
        extra={"entity_type": entity_type, "entity_id": entity_id, "user_id": user_id},
    )
    return entry
