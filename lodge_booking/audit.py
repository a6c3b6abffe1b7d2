"""
Audit Trail
===========

Audit rows are written inside the caller's transaction so they commit or roll
back together with the change they describe. Each entry is also emitted as an
``audit`` log event.
"""

from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog

logger = structlog.get_logger("lodge_booking.audit")


async def record_audit(
    session: AsyncSession,
    actor_id: Optional[UUID],
    action: str,
    resource_type: str,
    resource_id: Optional[UUID],
    old_data: Optional[Dict[str, Any]] = None,
    new_data: Optional[Dict[str, Any]] = None
) -> AuditLog:
    entry = AuditLog(
        user_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        old_data=old_data,
        new_data=new_data,
    )
    session.add(entry)

    logger.info(
        "audit",
        action=action,
        actor_id=str(actor_id) if actor_id else None,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id else None,
        old_data=old_data,
        new_data=new_data
    )
    return entry
