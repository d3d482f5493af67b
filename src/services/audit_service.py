from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.database import storage_guard
from src.models import AuditLog


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _dump(values: Optional[Dict[str, Any]]) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(values, default=_json_default, sort_keys=True)


class AuditService:
    """Writes audit rows into the caller's transaction and reads them back."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[int],
        actor_id: Optional[int],
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        event_type: str = "business",
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLog:
        """Stage an audit row; the caller commits it with the change it describes."""
        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=actor_id,
            action=action,
            old_values=_dump(old_values),
            new_values=_dump(new_values),
            success=success,
            error_message=error_message,
        )
        self.db.add(entry)
        self.logger.info(
            "Audit %s on %s %s",
            action,
            entity_type,
            entity_id,
            extra={"actor_id": actor_id},
        )
        return entry

    def list_entries(
        self,
        actor_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        action: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLog]:
        with storage_guard(self.db, "audit log query"):
            query = self.db.query(AuditLog)
            if actor_id is not None:
                query = query.filter(AuditLog.user_id == actor_id)
            if entity_type:
                query = query.filter(AuditLog.entity_type == entity_type)
            if entity_id is not None:
                query = query.filter(AuditLog.entity_id == entity_id)
            if action:
                query = query.filter(AuditLog.action.ilike(f"%{action}%"))
            if start is not None:
                query = query.filter(AuditLog.timestamp >= start)
            if end is not None:
                query = query.filter(AuditLog.timestamp <= end)
            query = query.order_by(AuditLog.timestamp.desc(), AuditLog.auditID.desc())
            if limit:
                query = query.limit(limit)
            return query.all()

    @staticmethod
    def decode(entry: AuditLog) -> Dict[str, Any]:
        return {
            "id": entry.auditID,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "user_id": entry.user_id,
            "old_values": json.loads(entry.old_values) if entry.old_values else None,
            "new_values": json.loads(entry.new_values) if entry.new_values else None,
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
            "success": entry.success,
        }
