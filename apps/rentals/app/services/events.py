from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import ProcessedEvent


def claim(db: Session, source: str, token: str, subject: str | None = None) -> bool:
    """Record a callback dedup token; False when the same token was already processed."""
    existing = (
        db.query(ProcessedEvent.id)
        .filter(ProcessedEvent.source == source, ProcessedEvent.token == token)
        .first()
    )
    if existing is not None:
        return False
    try:
        with db.begin_nested():
            db.add(ProcessedEvent(source=source, token=token, subject=subject))
    except IntegrityError:
        # a concurrent replay of the same delivery won the insert
        return False
    return True
