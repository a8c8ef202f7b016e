"""
Activity log service.
Append-only history for quotes, jobs and invoices with integrity hashing.
"""
import hashlib
import json
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from ..models.models import ActivityLog, utcnow
from ..config import settings


def _integrity_hash(canonical: Dict[str, Any], secret: str) -> str:
    # Remove None values and sort keys for consistency
    canonical = {k: v for k, v in canonical.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_activity(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    details: Optional[str] = None,
    metadata: Optional[Dict] = None,
    actor_id=None,
    org_id=None,
    integrity_secret: Optional[str] = None,
) -> ActivityLog:
    """
    Append an activity entry for an entity.

    The entry is flushed but not committed so it lands in the same
    transaction as the change it describes.

    Args:
        db: Database session
        entity_type: Type of entity (quote|job|invoice)
        entity_id: Entity ID
        action: Short action label, e.g. "Status changed to sent"
        details: Free-form human readable details
        metadata: Structured data (previous_status, new_status, source, ...)
        actor_id: User ID who performed the action, None for system/webhook
        org_id: Owning organization
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        Created ActivityLog object
    """
    created_at = utcnow()
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity = None
    if integrity_secret:
        integrity = _integrity_hash(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "details": details,
                "metadata": metadata,
                "actor_id": str(actor_id) if actor_id else None,
                "created_at": created_at.isoformat(),
            },
            integrity_secret,
        )

    entry = ActivityLog(
        org_id=org_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        details=details,
        metadata_json=metadata,
        actor_id=actor_id,
        created_at=created_at,
        integrity_hash=integrity,
    )
    db.add(entry)
    db.flush()
    return entry


def get_activity(
    db: Session,
    entity_type: str,
    entity_id,
    limit: int = 100,
    offset: int = 0,
) -> List[ActivityLog]:
    """Entries for one entity, newest first."""
    query = db.query(ActivityLog).filter(
        ActivityLog.entity_type == entity_type,
        ActivityLog.entity_id == entity_id,
    )
    query = query.order_by(ActivityLog.created_at.desc())
    return query.limit(limit).offset(offset).all()


def delete_activity_for(db: Session, entity_type: str, entity_id) -> int:
    """Bulk cascade used when the owning entity itself is deleted."""
    return (
        db.query(ActivityLog)
        .filter(ActivityLog.entity_type == entity_type, ActivityLog.entity_id == entity_id)
        .delete(synchronize_session=False)
    )


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
