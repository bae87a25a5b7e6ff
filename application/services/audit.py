"""
Audit trail helpers shared by the lending services.
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.entity import ActorType, AuditLogEntry, UserRole


def actor_for_role(role: UserRole | None) -> ActorType:
    if role == UserRole.ADMIN:
        return ActorType.ADMIN
    if role == UserRole.OPERATOR:
        return ActorType.OPERATOR
    return ActorType.SYSTEM


async def record_audit(
    uow: AbstractUnitOfWork,
    *,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    actor_type: ActorType = ActorType.SYSTEM,
    actor_user_id: Optional[int] = None,
    before: Optional[dict[str, Any]] = None,
    after: Optional[dict[str, Any]] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        actor_type=actor_type,
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before=before,
        after=after,
        metadata=metadata,
    )
    return await uow.audit_logs.add(entry)
