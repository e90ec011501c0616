from database import database
from models import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

async def create_audit_log(
    action: AuditAction,
    actor_type: Optional[str] = "system",
    resource_type: Optional[str] = "document",
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry.

    Args:
        action: The audit action type
        actor_type: Who caused the action (system, customer, professional, gateway)
        resource_type: Type of resource affected (document, payment_session, gateway_event)
        resource_id: ID of the specific resource
        metadata: Additional metadata
    """
    try:
        db = database.get_db()

        audit_log = AuditLog(
            action=action,
            actor_type=actor_type,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
        )

        doc = audit_log.model_dump()
        doc["action"] = action.value
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} resource_id={resource_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_trail(resource_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Newest-first audit entries for one document, payment session or gateway event."""
    db = database.get_db()
    cursor = db.audit_logs.find({"resource_id": resource_id}, {"_id": 0}).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
