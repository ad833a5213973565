from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..schemas import IntentIn, MeOut, PaymentMethodIn, SubmissionOut
from ..services import gating, payment_methods, verification


router = APIRouter(prefix="/me", tags=["me"])


def _me_out(user: User) -> MeOut:
    cap = gating.can_enable_instant_booking(user)
    return MeOut(
        email=user.email,
        name=user.name,
        intent=user.intent,
        identity_status=user.identity_status,
        payout_status=user.payout_status,
        has_payment_method=bool(user.has_payment_method),
        active=bool(user.active),
        can_enable_instant_booking=cap.allowed,
        instant_booking_blocker=cap.precondition,
    )


@router.get("", response_model=MeOut)
def get_me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _me_out(gating.load_user(db, user.email))


@router.post("/intent", response_model=MeOut)
def set_intent(payload: IntentIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user.intent = payload.intent
    db.flush()
    return _me_out(user)


@router.post("/identity/submit", response_model=SubmissionOut)
def submit_identity(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return SubmissionOut(**verification.submit(db, user.email, "identity"))


@router.post("/payout/submit", response_model=SubmissionOut)
def submit_payout(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return SubmissionOut(**verification.submit(db, user.email, "payout"))


@router.post("/payment_method", response_model=MeOut)
def attach_payment_method(payload: PaymentMethodIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _me_out(payment_methods.attach(db, user.email, payload.method_ref))


@router.delete("/payment_method", response_model=MeOut)
def detach_payment_method(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _me_out(payment_methods.detach(db, user.email))
