"""Rental extensions.

The renter of an ``active`` booking asks to move its end date later; the
owner approves or declines. Approval re-runs the item's overlap check under
the same per-item lock as booking creation, charges the extra days and then
moves ``end_date`` and ``total_cents`` in one compare-and-swap on the booking.

    pending -> approved | declined
"""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..errors import ExternalProviderFailure, Forbidden, InvalidTransition, NotFound, ValidationError
from ..models import ACTIVE, BookingExtension, Item
from ..utils.audit import record_event
from ..utils.ids import as_uuid
from ..utils.notify import emit
from . import gating, lifecycle, provider
from .bookings import find_overlaps, lock_item_calendar, rental_days


log = logging.getLogger("rentals.extensions")

PENDING = "pending"
APPROVED = "approved"
DECLINED = "declined"


def _get_extension(db: Session, booking_id, extension_id) -> BookingExtension:
    stmt = (
        select(BookingExtension)
        .where(
            BookingExtension.id == as_uuid(extension_id, "Extension"),
            BookingExtension.booking_id == booking_id,
        )
        .execution_options(populate_existing=True)
    )
    ext = db.execute(stmt).scalars().first()
    if ext is None:
        raise NotFound("Extension not found")
    return ext


def _has_pending(db: Session, booking_id) -> bool:
    return (
        db.query(BookingExtension.id)
        .filter(BookingExtension.booking_id == booking_id, BookingExtension.status == PENDING)
        .first()
        is not None
    )


def _settle(db: Session, ext: BookingExtension, status: str, **values) -> BookingExtension:
    res = db.execute(
        update(BookingExtension)
        .where(BookingExtension.id == ext.id, BookingExtension.status == PENDING)
        .values(status=status, decided_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        fresh = _get_extension(db, ext.booking_id, ext.id)
        raise InvalidTransition(f"Extension already {fresh.status}", state=fresh.status)
    return _get_extension(db, ext.booking_id, ext.id)


def request_extension(db: Session, booking_id, renter_email: str, new_end_date: date, message: Optional[str] = None) -> BookingExtension:
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if lifecycle.require_party(b, renter_email) != "renter":
        raise Forbidden("Only the renter can request an extension")
    if b.state != ACTIVE:
        raise InvalidTransition(f"Cannot extend a booking in state {b.state}", state=b.state)
    if new_end_date <= b.end_date:
        raise ValidationError("new_end_date must be after the current end_date")
    item = db.get(Item, b.item_id)
    if rental_days(b.start_date, new_end_date) > item.max_rental_days:
        raise ValidationError(f"Maximum rental is {item.max_rental_days} day(s)")
    if _has_pending(db, b.id):
        raise ValidationError("An extension request is already pending for this booking")
    # early answer for the renter; the binding check runs on approval
    if find_overlaps(db, item.id, b.end_date + timedelta(days=1), new_end_date, exclude_id=b.id):
        raise ValidationError("Item is already booked for some of these dates")

    extra_days = (new_end_date - b.end_date).days
    ext = BookingExtension(
        booking_id=b.id,
        requested_by=renter_email,
        previous_end_date=b.end_date,
        new_end_date=new_end_date,
        extra_days=extra_days,
        extra_cents=extra_days * int(item.daily_rate_cents),
        message=(message or "").strip()[:1024] or None,
        status=PENDING,
    )
    db.add(ext)
    db.flush()
    record_event(db, "extension.requested", str(b.id), actor=renter_email, data={"extension_id": str(ext.id), "new_end_date": new_end_date.isoformat()})
    emit(db, "extensionRequested", {
        "booking_id": str(b.id),
        "extension_id": str(ext.id),
        "owner": b.owner_email,
        "extra_days": extra_days,
        "extra_cents": ext.extra_cents,
    })
    return ext


def decide_extension(db: Session, booking_id, extension_id, owner_email: str, approve: bool) -> BookingExtension:
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if b.owner_email != owner_email:
        raise Forbidden("Only the owner can decide on an extension")
    ext = _get_extension(db, b.id, extension_id)
    if ext.status != PENDING:
        raise InvalidTransition(f"Extension already {ext.status}", state=ext.status)

    if not approve:
        ext = _settle(db, ext, DECLINED)
        record_event(db, "extension.declined", str(b.id), actor=owner_email, data={"extension_id": str(ext.id)})
        emit(db, "extensionDecided", {"booking_id": str(b.id), "extension_id": str(ext.id), "approved": False, "renter": b.renter_email})
        return ext

    if b.state != ACTIVE:
        raise InvalidTransition(f"Cannot extend a booking in state {b.state}", state=b.state)
    if b.end_date != ext.previous_end_date:
        raise InvalidTransition("Booking dates changed since the extension was requested", state=b.state)

    lock_item_calendar(db, b.item_id)
    if find_overlaps(db, b.item_id, ext.previous_end_date + timedelta(days=1), ext.new_end_date, exclude_id=b.id):
        raise ValidationError("Item is already booked for some of these dates")

    gating.require_capture(db, b.owner_email, b.renter_email)
    p = provider.get_provider()
    key = f"rentals:{b.id}:extension:{ext.id}"
    res = provider.call("initiate_charge", lambda: p.initiate_charge(str(b.id), b.renter_email, ext.extra_cents, key), idempotent=True)
    if res.status == provider.FAILED:
        log.warning("extension charge for booking %s declined: %s", b.id, res.reason)
        raise ExternalProviderFailure("initiate_charge", f"Extension charge declined: {res.reason or 'declined'}", declined=True)

    ext = _settle(db, ext, APPROVED, charge_status=res.status, charge_ref=res.ref)
    b = lifecycle.transition(
        db,
        b,
        (ACTIVE,),
        None,
        actor=owner_email,
        end_date=ext.new_end_date,
        days=rental_days(b.start_date, ext.new_end_date),
        total_cents=b.total_cents + ext.extra_cents,
    )
    record_event(db, "extension.approved", str(b.id), actor=owner_email, data={"extension_id": str(ext.id), "end_date": b.end_date.isoformat()})
    emit(db, "extensionDecided", {"booking_id": str(b.id), "extension_id": str(ext.id), "approved": True, "renter": b.renter_email})
    return ext


def list_extensions(db: Session, booking_id, email: str) -> List[BookingExtension]:
    b = lifecycle.get_booking(db, booking_id)
    lifecycle.require_party(b, email)
    return (
        db.query(BookingExtension)
        .filter(BookingExtension.booking_id == b.id)
        .order_by(BookingExtension.created_at)
        .all()
    )
