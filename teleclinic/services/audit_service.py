"""Audit trail for reads and writes of protected resources"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditLog, User

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        actor: Optional[User] = None,
        trace_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Write one audit row. Failures are logged and never reach the caller."""
        entry = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor.id if actor else None,
            actor_role=actor.role if actor else None,
            trace_id=trace_id,
            ip=ip,
            user_agent=user_agent,
            metadata_json=metadata,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Audit log failed for {resource_type}:{resource_id}: {e}")
