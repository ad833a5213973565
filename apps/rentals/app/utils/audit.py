from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models import AuditEvent


def record_event(db: Session, type: str, subject: Optional[str], actor: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
    db.add(AuditEvent(type=type, subject=subject, actor=actor, data=data or {}))
