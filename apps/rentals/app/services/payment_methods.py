from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import User
from ..utils.audit import record_event
from .gating import load_user


def attach(db: Session, email: str, method_ref: str) -> User:
    """Mark a tokenized instrument as attached; re-attaching replaces the reference."""
    if not method_ref or not method_ref.strip():
        raise ValidationError("payment method reference is required")
    user = load_user(db, email)
    user.has_payment_method = True
    user.payment_method_ref = method_ref.strip()
    db.flush()
    record_event(db, "payment_method.attached", email, actor=email)
    return user


def detach(db: Session, email: str) -> User:
    user = load_user(db, email)
    if user.has_payment_method:
        user.has_payment_method = False
        user.payment_method_ref = None
        db.flush()
        record_event(db, "payment_method.detached", email, actor=email)
    return user
