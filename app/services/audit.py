"""Helpers for writing audit log entries.

Audit writes are a side channel: they run in their own session so a failure
can never roll back or fail the request that triggered them.
"""
import logging
from typing import Any, Dict, Optional

from app.db import session as db_session
from app.models.audit import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    action: str,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    order_id: Optional[int] = None,
    changes: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Optional[str]]] = None,
) -> bool:
    """Append a best-effort audit record. Returns False when the write failed."""
    context = context or {}
    db = None
    try:
        db = db_session.SessionLocal()
        db.add(
            AuditLog(
                user_id=user_id,
                order_id=order_id,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                changes=changes,
                details=metadata,
                ip_address=context.get("ip_address"),
                user_agent=context.get("user_agent"),
            )
        )
        db.commit()
        return True
    except Exception:
        logger.exception("Failed to write audit log entry %s for %s %s", action, entity_type, entity_id)
        if db is not None:
            db.rollback()
        return False
    finally:
        if db is not None:
            db.close()
