import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..schemas import DisputeOut, ResolveDisputeIn
from ..services import bookings, conditions, gating
from ..utils.audit import record_event
from .bookings import dispute_out


router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    incoming = x_admin_token or ""
    for candidate in [t.strip() for t in (settings.ADMIN_TOKEN or "").split(",") if t.strip()]:
        if secrets.compare_digest(incoming, candidate):
            return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token invalid")


@router.post("/users/{email}/deactivate")
def deactivate_user(email: str, db: Session = Depends(get_db), _: None = Depends(require_admin)):
    user = gating.load_user(db, email.strip().lower())
    if user.active:
        user.active = False
        db.flush()
        record_event(db, "user.deactivated", user.email, actor="admin")
    return {"email": user.email, "active": False}


@router.post("/bookings/{booking_id}/resolve_dispute", response_model=DisputeOut)
def resolve_dispute(booking_id: str, payload: ResolveDisputeIn, db: Session = Depends(get_db), _: None = Depends(require_admin)):
    b = conditions.resolve_dispute(db, booking_id, payload.resolution, resolved_by="admin")
    return dispute_out(b, False)


@router.post("/bookings/expire_unpaid")
def expire_unpaid(db: Session = Depends(get_db), _: None = Depends(require_admin)):
    expired = bookings.expire_unpaid(db)
    return {"expired": expired, "count": len(expired)}
