"""
Audit trail for lead lifecycle and account events.

Every committed mutation records who did what to which resource. Writing the
record is best-effort: a failed insert is logged and the caller carries on,
since the mutation it describes has already happened.
"""
from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_logs"


def changed_fields(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """{field: {"from": old, "to": new}} for every field whose value differs."""
    before = before or {}
    after = after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    company_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Record one audit entry; returns its id, or "" when the write failed."""
    metadata = dict(metadata or {})
    if before_state is not None or after_state is not None:
        changes = changed_fields(before_state, after_state)
        if changes:
            metadata["changes"] = changes

    entry = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        company_id=company_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata or None,
        ip_address=ip_address,
    )
    # Keep timestamp a real datetime so timeline queries sort by date
    doc = {**entry.model_dump(mode="json"), "timestamp": entry.timestamp}

    try:
        await database.get_db()[AUDIT_COLLECTION].insert_one(doc)
    except Exception as e:
        logger.error(f"Failed to write audit log {action.value} for {resource_type}:{resource_id}: {e}")
        return ""

    logger.debug(f"Audit {action.value} by {actor_id} on {resource_type}:{resource_id}")
    return entry.audit_id
