"""
Side channels that hang off the transactional core:

- audit entries, written best-effort in their own transaction after the
  business change committed; a failure here is logged and swallowed
- notification outbox rows, written inside the caller's transaction so a
  confirmation exists if and only if the change it describes exists
"""
from __future__ import annotations
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .orm import AuditLog, NotificationOutbox

logger = structlog.get_logger(__name__)


async def record(
    db: GatedAsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: str,
    org_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> bool:
    try:
        async with db.gated():
            async with db.session.begin():
                db.session.add(AuditLog(
                    id=new_id(),
                    org_id=org_id,
                    actor_user_id=actor_user_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    details=details or {},
                    created_at=now_ts(),
                ))
    except SQLAlchemyError as e:
        logger.warning(
            "audit_write_failed", action=action, entity_id=entity_id,
            error=str(e),
        )
        return False
    return True


def enqueue_notification(
    session: AsyncSession,
    *,
    recipient: str,
    template: str,
    payload: dict[str, Any],
    org_id: Optional[str] = None,
) -> NotificationOutbox:
    row = NotificationOutbox(
        id=new_id(),
        org_id=org_id,
        recipient=recipient,
        template=template,
        payload=payload,
        status="queued",
        created_at=now_ts(),
    )
    session.add(row)
    logger.info("notification_enqueued", template=template,
                notification_id=row.id)
    return row
