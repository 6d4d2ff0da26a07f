from typing import Optional

from sqlalchemy.orm import Session

from ..database.models import AuditLog


def log_action(db: Session, user_id: Optional[int], action: str, entity_type: str, entity_id, details: dict):
    """Create audit log entry (committed with the caller's transaction)"""
    audit = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=details
    )
    db.add(audit)
