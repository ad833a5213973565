"""Booking state machine.

    request mode:  pendingReview -> awaitingPayment -> active -> completed | disputed
                   pendingReview -> rejected
    instant mode:  instantConfirmed -> active -> ...
    pendingReview | instantConfirmed | awaitingPayment -> cancelled

Payment capture re-checks owner and renter gating at capture time, not
only at creation.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ExternalProviderFailure, Forbidden, GatingFailure, InvalidTransition, NotFound, ValidationError
from ..models import (
    ACTIVE,
    AWAITING_PAYMENT,
    CANCELLED,
    DISPUTED,
    INSTANT_CONFIRMED,
    OCCUPYING_STATES,
    PENDING_REVIEW,
    PRE_PAYMENT_STATES,
    REJECTED,
    Booking,
    Item,
    Relation,
)
from ..utils.audit import record_event
from ..utils.ids import as_uuid
from ..utils.notify import emit
from . import events, gating, lifecycle, provider


log = logging.getLogger("rentals.bookings")

CANCELLABLE_STATES = (PENDING_REVIEW, INSTANT_CONFIRMED, AWAITING_PAYMENT)
CHARGE = "charge"
HOLD = "hold"


def rental_days(start: date, end: date) -> int:
    # inclusive calendar days
    return (end - start).days + 1


def _validate_range(item: Item, start: date, end: date) -> int:
    if end < start:
        raise ValidationError("end_date must not be before start_date")
    days = rental_days(start, end)
    if days < item.min_rental_days:
        raise ValidationError(f"Minimum rental is {item.min_rental_days} day(s)")
    if days > item.max_rental_days:
        raise ValidationError(f"Maximum rental is {item.max_rental_days} day(s)")
    return days


def occupies_dates():
    """SQL criterion for bookings that still hold their dates.

    A disputed booking keeps the item until the dispute is resolved.
    """
    return or_(
        Booking.state.in_(OCCUPYING_STATES),
        and_(Booking.state == DISPUTED, Booking.dispute_resolved_at.is_(None)),
    )


def find_overlaps(db: Session, item_id, start: date, end: date, exclude_id=None) -> List[Booking]:
    q = db.query(Booking).filter(
        Booking.item_id == item_id,
        occupies_dates(),
        Booking.start_date <= end,
        Booking.end_date >= start,
    )
    if exclude_id is not None:
        q = q.filter(Booking.id != exclude_id)
    return q.all()


def lock_item_calendar(db: Session, item_id) -> None:
    # the row write holds the item lock until commit, so an overlap check
    # and the write that follows it are atomic per item
    db.execute(
        update(Item)
        .where(Item.id == item_id)
        .values(booking_seq=Item.booking_seq + 1)
        .execution_options(synchronize_session=False)
    )


def _is_blocked(db: Session, owner_email: str, renter_email: str) -> bool:
    return (
        db.query(Relation.id)
        .filter(Relation.kind == "block", Relation.actor_email == owner_email, Relation.target_key == renter_email)
        .first()
        is not None
    )


def create_booking(db: Session, item_id, renter_email: str, start: date, end: date) -> Booking:
    item = db.get(Item, as_uuid(item_id, "Item"))
    if item is None:
        raise NotFound("Item not found")
    if not item.availability:
        raise ValidationError("Item is not available for booking")
    if item.owner_email == renter_email:
        raise ValidationError("Owners cannot book their own items")
    renter = gating.load_user(db, renter_email)
    if not renter.active:
        raise GatingFailure("account_active")
    days = _validate_range(item, start, end)
    if _is_blocked(db, item.owner_email, renter_email):
        raise ValidationError("This owner does not accept bookings from you")

    lock_item_calendar(db, item.id)
    if find_overlaps(db, item.id, start, end):
        raise ValidationError("Item is already booked for some of these dates")

    db.refresh(item)
    owner = gating.load_user(db, item.owner_email)
    instant = bool(item.instant_booking_enabled) and gating.can_instant_book(owner, renter)
    b = Booking(
        item_id=item.id,
        renter_email=renter_email,
        owner_email=item.owner_email,
        start_date=start,
        end_date=end,
        days=days,
        total_cents=days * int(item.daily_rate_cents),
        deposit_cents=int(item.deposit_cents or 0),
        mode="instant" if instant else "request",
        state=INSTANT_CONFIRMED if instant else PENDING_REVIEW,
    )
    db.add(b)
    db.flush()
    lifecycle.count_transition("", b.state)
    record_event(db, "booking.created", str(b.id), actor=renter_email, data={"mode": b.mode, "state": b.state})
    if item.instant_booking_enabled and not instant:
        log.info("booking %s fell back to request mode (instant gating not met)", b.id)
    emit(db, "bookingCreated", {
        "booking_id": str(b.id),
        "item_id": str(item.id),
        "owner": b.owner_email,
        "renter": b.renter_email,
        "mode": b.mode,
        "state": b.state,
    })
    return b


def list_bookings(db: Session, email: str, role: Optional[str] = None) -> List[Booking]:
    q = db.query(Booking)
    if role == "renter":
        q = q.filter(Booking.renter_email == email)
    elif role == "owner":
        q = q.filter(Booking.owner_email == email)
    else:
        q = q.filter((Booking.renter_email == email) | (Booking.owner_email == email))
    return q.order_by(Booking.created_at.desc()).limit(200).all()


def get_for_party(db: Session, booking_id, email: str) -> Booking:
    b = lifecycle.get_booking(db, booking_id)
    lifecycle.require_party(b, email)
    return b


def decide(db: Session, booking_id, owner_email: str, approve: bool) -> Booking:
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if b.owner_email != owner_email:
        raise Forbidden("Only the owner can decide on this booking")
    now = datetime.utcnow()
    target = AWAITING_PAYMENT if approve else REJECTED
    b = lifecycle.transition(db, b, (PENDING_REVIEW,), target, actor=owner_email, decided_at=now)
    emit(db, "bookingDecided", {"booking_id": str(b.id), "approved": bool(approve), "renter": b.renter_email, "state": b.state})
    return b


def _payment_key(b: Booking, leg: str) -> str:
    return f"rentals:{b.id}:{leg}:{b.payment_attempts}"


def _legs_done(charge_status: str, hold_status: str, deposit_cents: int) -> bool:
    hold_ok = hold_status == provider.SUCCEEDED or deposit_cents <= 0
    return charge_status == provider.SUCCEEDED and hold_ok


def _activate_if_paid(db: Session, b: Booking, actor: Optional[str]) -> Booking:
    if b.state in PRE_PAYMENT_STATES and _legs_done(b.charge_status, b.hold_status, b.deposit_cents):
        b = lifecycle.transition(db, b, PRE_PAYMENT_STATES, ACTIVE, actor=actor, paid_at=datetime.utcnow(), payment_error=None)
        emit(db, "bookingPaid", {"booking_id": str(b.id), "renter": b.renter_email, "owner": b.owner_email})
    return b


def confirm_payment(db: Session, booking_id, actor_email: Optional[str] = None) -> Booking:
    """Capture the rental charge and authorize the deposit hold.

    The booking only becomes ``active`` once both legs have succeeded. A
    declined or unreachable leg leaves it in its pre-payment state; leg
    results are committed before the failure is raised so a captured charge
    is never forgotten.
    """
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if actor_email is not None:
        lifecycle.require_party(b, actor_email)
    if b.state not in PRE_PAYMENT_STATES:
        raise InvalidTransition(f"Payment not expected in state {b.state}", state=b.state)
    if provider.PENDING in (b.charge_status, b.hold_status):
        # waiting on provider callbacks
        return b

    # gate at the edge: owner payout status and renter card are read now
    gating.require_capture(db, b.owner_email, b.renter_email)

    b = lifecycle.transition(db, b, PRE_PAYMENT_STATES, None, actor=actor_email, payment_attempts=b.payment_attempts + 1, payment_error=None)
    p = provider.get_provider()
    legs = {"charge_status": b.charge_status, "charge_ref": b.charge_ref, "hold_status": b.hold_status, "hold_ref": b.hold_ref}
    failure: Optional[ExternalProviderFailure] = None

    if b.charge_status != provider.SUCCEEDED:
        key = _payment_key(b, CHARGE)
        try:
            res = provider.call("initiate_charge", lambda: p.initiate_charge(str(b.id), b.renter_email, b.total_cents, key), idempotent=True)
            legs["charge_status"], legs["charge_ref"] = res.status, res.ref or legs["charge_ref"]
            if res.status == provider.FAILED:
                failure = ExternalProviderFailure("initiate_charge", f"Charge declined: {res.reason or 'declined'}", declined=True)
        except ExternalProviderFailure as exc:
            failure = exc

    if failure is None and b.deposit_cents > 0 and b.hold_status != provider.SUCCEEDED:
        key = _payment_key(b, HOLD)
        try:
            res = provider.call("initiate_deposit_hold", lambda: p.initiate_deposit_hold(str(b.id), b.renter_email, b.deposit_cents, key), idempotent=True)
            legs["hold_status"], legs["hold_ref"] = res.status, res.ref or legs["hold_ref"]
            if res.status == provider.FAILED:
                failure = ExternalProviderFailure("initiate_deposit_hold", f"Deposit hold declined: {res.reason or 'declined'}", declined=True)
        except ExternalProviderFailure as exc:
            failure = exc

    if failure is not None:
        legs["payment_error"] = failure.message[:256]
    b = lifecycle.transition(db, b, PRE_PAYMENT_STATES, None, actor=actor_email, **legs)
    if failure is not None:
        log.warning("payment for booking %s failed: %s", b.id, failure.message)
        emit(db, "paymentFailed", {"booking_id": str(b.id), "renter": b.renter_email, "op": failure.op})
        db.commit()
        raise failure
    return _activate_if_paid(db, b, actor_email)


def apply_charge_result(db: Session, booking_id, leg: str, status: str, token: str, ref: Optional[str] = None, reason: Optional[str] = None) -> str:
    """Provider callback for a pending payment leg. Returns applied|duplicate|ignored|compensated."""
    if leg not in (CHARGE, HOLD):
        raise ValidationError(f"Unknown payment leg: {leg}")
    if status not in (provider.SUCCEEDED, provider.FAILED):
        raise ValidationError(f"Unknown charge status: {status}")
    if not token:
        raise ValidationError("Missing dedup token")
    if not events.claim(db, "charge.result", token, subject=str(booking_id)):
        return "duplicate"
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    status_col, ref_col = f"{leg}_status", f"{leg}_ref"
    if b.state == CANCELLED and status == provider.SUCCEEDED:
        # the provider committed after we cancelled: compensate
        values = {ref_col: ref or getattr(b, ref_col)}
        b = lifecycle.transition(db, b, (CANCELLED,), None, **{status_col: provider.SUCCEEDED}, **values)
        _compensate(db, b)
        return "compensated"
    if b.state not in PRE_PAYMENT_STATES or getattr(b, status_col) == provider.SUCCEEDED:
        return "ignored"
    values = {status_col: status, ref_col: ref or getattr(b, ref_col)}
    if status == provider.FAILED:
        values["payment_error"] = f"{leg} failed: {reason or 'declined'}"[:256]
    b = lifecycle.transition(db, b, PRE_PAYMENT_STATES, None, **values)
    if status == provider.FAILED:
        emit(db, "paymentFailed", {"booking_id": str(b.id), "renter": b.renter_email, "op": leg})
    else:
        _activate_if_paid(db, b, None)
    return "applied"


def _compensate(db: Session, b: Booking) -> None:
    """Release an authorized hold and refund a captured charge; failures are recorded, not raised."""
    p = provider.get_provider()
    values = {}
    if b.hold_ref and b.hold_status in (provider.SUCCEEDED, provider.PENDING):
        key = f"rentals:{b.id}:release:{b.hold_ref}"
        try:
            res = provider.call("release_deposit_hold", lambda: p.release_deposit_hold(b.hold_ref, key), idempotent=True)
            values["hold_status"] = "released" if res.status != provider.FAILED else "release_failed"
        except ExternalProviderFailure:
            values["hold_status"] = "release_failed"
    if b.charge_ref and b.charge_status in (provider.SUCCEEDED, provider.PENDING):
        key = f"rentals:{b.id}:refund:{b.charge_ref}"
        try:
            res = provider.call("refund_charge", lambda: p.refund_charge(b.charge_ref, b.total_cents, key), idempotent=True)
            values["charge_status"] = "refunded" if res.status != provider.FAILED else "refund_failed"
        except ExternalProviderFailure:
            values["charge_status"] = "refund_failed"
    if not values:
        return
    lifecycle.transition(db, b, (b.state,), None, **values)
    if "release_failed" in values.values() or "refund_failed" in values.values():
        log.error("compensation for booking %s incomplete: %s", b.id, values)
        emit(db, "compensationFailed", {"booking_id": str(b.id), **values})


def cancel(db: Session, booking_id, by_email: str) -> Booking:
    b = lifecycle.get_booking(db, booking_id, for_update=True)
    if by_email != "system":
        lifecycle.require_party(b, by_email)
    if b.state not in CANCELLABLE_STATES:
        raise InvalidTransition(f"Cannot cancel a booking in state {b.state}", state=b.state)
    b = lifecycle.transition(db, b, CANCELLABLE_STATES, CANCELLED, actor=by_email, cancelled_at=datetime.utcnow(), cancelled_by=by_email)
    _compensate(db, b)
    b = lifecycle.get_booking(db, b.id)
    emit(db, "bookingCancelled", {"booking_id": str(b.id), "by": by_email, "renter": b.renter_email, "owner": b.owner_email})
    return b


def expire_unpaid(db: Session, now: Optional[datetime] = None) -> List[str]:
    """Cancel approved bookings whose payment deadline has passed."""
    cutoff = (now or datetime.utcnow()) - settings.payment_deadline
    rows = (
        db.query(Booking.id)
        .filter(Booking.state == AWAITING_PAYMENT, Booking.decided_at.isnot(None), Booking.decided_at < cutoff)
        .limit(500)
        .all()
    )
    expired: List[str] = []
    for (bid,) in rows:
        b = lifecycle.get_booking(db, bid)
        if provider.PENDING in (b.charge_status, b.hold_status):
            continue
        try:
            cancel(db, bid, "system")
        except InvalidTransition:
            continue
        expired.append(str(bid))
    return expired


def conversation_ref_for_booking(db: Session, booking_id, email: str) -> dict:
    b = get_for_party(db, booking_id, email)
    ref = f"booking:{b.id}"
    return {
        "booking_id": str(b.id),
        "conversation_ref": ref,
        "participants": [b.renter_email, b.owner_email],
        "url": f"{settings.CHAT_BASE_URL.rstrip('/')}/conversations/{ref}",
    }
