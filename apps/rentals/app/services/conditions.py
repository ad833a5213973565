"""Condition reports and the dispute workflow.

Reports are an append-only log keyed by (booking, report type, reporter).
A dispute is not stored separately: it is the ``disputed`` state of the
booking, entered either from a return report listing damages or by an
explicit filing against a recently completed booking.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InvalidTransition, ValidationError
from ..models import ACTIVE, COMPLETED, DISPUTED, Booking, ConditionReport
from ..utils.audit import record_event
from ..utils.notify import emit
from . import lifecycle


PICKUP = "pickup"
RETURN = "return"
SEVERITIES = ("minor", "moderate", "severe")
DISPUTE_REASONS = ("item_damaged", "item_not_returned", "item_not_as_described", "payment_issue", "other")


def _clean_damages(damages: Optional[Iterable[dict]]) -> List[dict]:
    out: List[dict] = []
    for d in damages or []:
        description = (d.get("description") or "").strip()
        if not description:
            continue
        severity = d.get("severity") or "minor"
        if severity not in SEVERITIES:
            raise ValidationError(f"Invalid damage severity: {severity}")
        out.append({"severity": severity, "description": description, "photo_url": d.get("photo_url")})
    return out


def outcome_for_return(damages: List[dict]) -> str:
    return DISPUTED if damages else COMPLETED


def record_report(
    db: Session,
    b: Booking,
    report_type: str,
    reporter_email: str,
    notes: Optional[str] = None,
    damages: Optional[Iterable[dict]] = None,
    photos: Optional[Iterable[str]] = None,
) -> ConditionReport:
    role = lifecycle.require_party(b, reporter_email)
    report = ConditionReport(
        booking_id=b.id,
        report_type=report_type,
        reported_by=reporter_email,
        reporter_role=role,
        notes=notes,
        damages=_clean_damages(damages),
        photos=[p for p in (photos or []) if p],
    )
    try:
        with db.begin_nested():
            db.add(report)
    except IntegrityError:
        raise ValidationError(f"{report_type} report already recorded by {reporter_email}")
    return report


def list_reports(db: Session, booking_id) -> List[ConditionReport]:
    b = lifecycle.get_booking(db, booking_id)
    return (
        db.query(ConditionReport)
        .filter(ConditionReport.booking_id == b.id)
        .order_by(ConditionReport.created_at.asc())
        .all()
    )


def _within_grace(b: Booking, now: datetime) -> bool:
    return b.completed_at is not None and now - b.completed_at <= settings.dispute_grace


def _open_dispute(db: Session, b: Booking, actor: str, reason: str, description: Optional[str], evidence=None) -> Booking:
    now = datetime.utcnow()
    b = lifecycle.transition(
        db, b, (ACTIVE, COMPLETED), DISPUTED, actor=actor,
        dispute_opened_at=now,
        dispute_reason=reason,
        dispute_description=description,
        dispute_evidence=list(evidence or []),
    )
    emit(db, "disputeOpened", {"booking_id": str(b.id), "by": actor, "reason": reason, "renter": b.renter_email, "owner": b.owner_email})
    return b


def confirm_pickup(db: Session, booking_id, reporter_email: str, notes=None, damages=None, photos=None) -> ConditionReport:
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    lifecycle.require_party(b, reporter_email)
    if b.state != ACTIVE:
        raise InvalidTransition(f"Pickup requires an active booking (state={b.state})", state=b.state)
    report = record_report(db, b, PICKUP, reporter_email, notes, damages, photos)
    emit(db, "pickupConfirmed", {"booking_id": str(b.id), "by": reporter_email})
    return report


def confirm_return(db: Session, booking_id, reporter_email: str, notes=None, damages=None, photos=None) -> tuple[Booking, ConditionReport]:
    """Attach a return report and derive the booking outcome from it.

    The first return report closes an active booking: damages -> disputed,
    none -> completed. The other party may still file their own return
    report on a completed booking during the grace window; if it lists
    damages the booking is reopened as disputed.
    """
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    lifecycle.require_party(b, reporter_email)
    now = datetime.utcnow()
    if b.state == ACTIVE:
        report = record_report(db, b, RETURN, reporter_email, notes, damages, photos)
        target = outcome_for_return(report.damages)
        if target == DISPUTED:
            b = lifecycle.transition(db, b, (ACTIVE,), DISPUTED, actor=reporter_email, completed_at=now, dispute_opened_at=now, dispute_reason="item_damaged", dispute_description=notes)
            emit(db, "disputeOpened", {"booking_id": str(b.id), "by": reporter_email, "reason": "item_damaged", "renter": b.renter_email, "owner": b.owner_email})
        else:
            b = lifecycle.transition(db, b, (ACTIVE,), COMPLETED, actor=reporter_email, completed_at=now)
            emit(db, "bookingCompleted", {"booking_id": str(b.id), "renter": b.renter_email, "owner": b.owner_email})
        return b, report
    if b.state == COMPLETED and _within_grace(b, now):
        report = record_report(db, b, RETURN, reporter_email, notes, damages, photos)
        if report.damages:
            b = _open_dispute(db, b, reporter_email, "item_damaged", notes)
        return b, report
    raise InvalidTransition(f"Return requires an active booking (state={b.state})", state=b.state)


def raise_dispute(db: Session, booking_id, reporter_email: str, reason: str, description: str, evidence_urls=None) -> Booking:
    if reason not in DISPUTE_REASONS:
        raise ValidationError(f"Invalid dispute reason: {reason}")
    if not (description or "").strip():
        raise ValidationError("Dispute description is required")
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    lifecycle.require_party(b, reporter_email)
    if b.state != COMPLETED:
        raise InvalidTransition(f"Only completed bookings can be disputed (state={b.state})", state=b.state)
    if not _within_grace(b, datetime.utcnow()):
        raise ValidationError(f"Dispute window of {settings.DISPUTE_GRACE_HOURS}h has passed")
    return _open_dispute(db, b, reporter_email, reason, description.strip(), evidence_urls)


def has_open_dispute(db: Session, booking_id) -> bool:
    b = lifecycle.get_booking(db, booking_id)
    return b.state == DISPUTED and b.dispute_resolved_at is None


def resolve_dispute(db: Session, booking_id, resolution: str, resolved_by: str = "support") -> Booking:
    """Record the out-of-band arbitration outcome; the booking stays disputed and becomes terminal."""
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if b.state != DISPUTED:
        raise InvalidTransition(f"Booking is not disputed (state={b.state})", state=b.state)
    if b.dispute_resolved_at is not None:
        raise InvalidTransition("Dispute already resolved", state=b.state)
    b = lifecycle.transition(db, b, (DISPUTED,), None, actor=resolved_by, dispute_resolved_at=datetime.utcnow(), dispute_resolution=resolution)
    record_event(db, "dispute.resolved", str(b.id), actor=resolved_by, data={"resolution": resolution})
    emit(db, "disputeResolved", {"booking_id": str(b.id), "renter": b.renter_email, "owner": b.owner_email})
    return b
