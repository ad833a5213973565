from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..errors import ValidationError
from ..models import Booking, BookingExtension, ConditionReport, User
from ..schemas import (
    BookingCreateIn,
    BookingOut,
    BookingsListOut,
    ConditionReportIn,
    ConditionReportOut,
    ConversationOut,
    DecideIn,
    DisputeIn,
    DisputeOut,
    ExtensionIn,
    ExtensionOut,
    ReturnOut,
)
from ..services import bookings as svc
from ..services import conditions, extensions


router = APIRouter(prefix="/bookings", tags=["bookings"])


def booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=str(b.id),
        item_id=str(b.item_id),
        renter_email=b.renter_email,
        owner_email=b.owner_email,
        start_date=b.start_date,
        end_date=b.end_date,
        days=b.days,
        total_cents=b.total_cents,
        deposit_cents=b.deposit_cents,
        mode=b.mode,
        state=b.state,
        charge_status=b.charge_status,
        hold_status=b.hold_status,
        payment_error=b.payment_error,
        created_at=b.created_at,
        decided_at=b.decided_at,
        paid_at=b.paid_at,
        completed_at=b.completed_at,
        cancelled_at=b.cancelled_at,
    )


def report_out(r: ConditionReport) -> ConditionReportOut:
    return ConditionReportOut(
        id=str(r.id),
        booking_id=str(r.booking_id),
        report_type=r.report_type,
        reported_by=r.reported_by,
        reporter_role=r.reporter_role,
        notes=r.notes,
        damages=list(r.damages or []),
        photos=list(r.photos or []),
        created_at=r.created_at,
    )


def dispute_out(b: Booking, is_open: bool) -> DisputeOut:
    return DisputeOut(
        booking_id=str(b.id),
        open=is_open,
        state=b.state,
        reason=b.dispute_reason,
        description=b.dispute_description,
        evidence_urls=list(b.dispute_evidence or []),
        opened_at=b.dispute_opened_at,
        resolved_at=b.dispute_resolved_at,
        resolution=b.dispute_resolution,
    )


def _damages(payload: ConditionReportIn) -> list[dict]:
    return [d.model_dump() for d in payload.damages]


@router.post("", response_model=BookingOut)
def create_booking(payload: BookingCreateIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    b = svc.create_booking(db, payload.item_id, user.email, payload.start_date, payload.end_date)
    return booking_out(b)


@router.get("", response_model=BookingsListOut)
def list_bookings(role: Optional[str] = None, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if role not in (None, "renter", "owner"):
        raise ValidationError("role must be renter or owner")
    return BookingsListOut(bookings=[booking_out(b) for b in svc.list_bookings(db, user.email, role)])


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return booking_out(svc.get_for_party(db, booking_id, user.email))


@router.post("/{booking_id}/decide", response_model=BookingOut)
def decide(booking_id: str, payload: DecideIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return booking_out(svc.decide(db, booking_id, user.email, payload.approve))


@router.post("/{booking_id}/confirm_payment", response_model=BookingOut)
def confirm_payment(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return booking_out(svc.confirm_payment(db, booking_id, user.email))


@router.post("/{booking_id}/pickup", response_model=ConditionReportOut)
def confirm_pickup(booking_id: str, payload: ConditionReportIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    r = conditions.confirm_pickup(db, booking_id, user.email, payload.notes, _damages(payload), payload.photos)
    return report_out(r)


@router.post("/{booking_id}/return", response_model=ReturnOut)
def confirm_return(booking_id: str, payload: ConditionReportIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    b, r = conditions.confirm_return(db, booking_id, user.email, payload.notes, _damages(payload), payload.photos)
    return ReturnOut(booking=booking_out(b), report=report_out(r))


@router.post("/{booking_id}/cancel", response_model=BookingOut)
def cancel(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return booking_out(svc.cancel(db, booking_id, user.email))


@router.post("/{booking_id}/disputes", response_model=DisputeOut)
def raise_dispute(booking_id: str, payload: DisputeIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    b = conditions.raise_dispute(db, booking_id, user.email, payload.reason, payload.description, payload.evidence_urls)
    return dispute_out(b, True)


@router.get("/{booking_id}/dispute", response_model=DisputeOut)
def get_dispute(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    b = svc.get_for_party(db, booking_id, user.email)
    return dispute_out(b, conditions.has_open_dispute(db, b.id))


@router.get("/{booking_id}/reports", response_model=list[ConditionReportOut])
def list_reports(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    svc.get_for_party(db, booking_id, user.email)
    return [report_out(r) for r in conditions.list_reports(db, booking_id)]


@router.get("/{booking_id}/conversation", response_model=ConversationOut)
def conversation(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ConversationOut(**svc.conversation_ref_for_booking(db, booking_id, user.email))


def extension_out(e: BookingExtension) -> ExtensionOut:
    return ExtensionOut(
        id=str(e.id),
        booking_id=str(e.booking_id),
        requested_by=e.requested_by,
        previous_end_date=e.previous_end_date,
        new_end_date=e.new_end_date,
        extra_days=e.extra_days,
        extra_cents=e.extra_cents,
        message=e.message,
        status=e.status,
        charge_status=e.charge_status,
        created_at=e.created_at,
        decided_at=e.decided_at,
    )


@router.post("/{booking_id}/extensions", response_model=ExtensionOut)
def request_extension(booking_id: str, payload: ExtensionIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return extension_out(extensions.request_extension(db, booking_id, user.email, payload.new_end_date, payload.message))


@router.get("/{booking_id}/extensions", response_model=list[ExtensionOut])
def list_extensions(booking_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return [extension_out(e) for e in extensions.list_extensions(db, booking_id, user.email)]


@router.post("/{booking_id}/extensions/{extension_id}/decide", response_model=ExtensionOut)
def decide_extension(booking_id: str, extension_id: str, payload: DecideIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return extension_out(extensions.decide_extension(db, booking_id, extension_id, user.email, payload.approve))
