"""Single-aggregate access to bookings.

Every write goes through :func:`transition`, a compare-and-swap on
``(state, version)``. Two callers racing on the same booking cannot both
win: the loser re-reads the row and gets InvalidTransition when the state
moved on, or ConcurrencyConflict when only the version did.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..errors import ConcurrencyConflict, Forbidden, InvalidTransition, NotFound
from ..models import Booking
from ..utils.audit import record_event
from ..utils.ids import as_uuid


log = logging.getLogger("rentals.bookings")

TRANSITIONS = Counter(
    "rentals_booking_transitions_total",
    "Booking state transitions",
    ["from", "to"],
)


def get_booking(db: Session, booking_id, for_update: bool = False) -> Booking:
    stmt = select(Booking).where(Booking.id == as_uuid(booking_id, "Booking")).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    b = db.execute(stmt).scalars().first()
    if b is None:
        raise NotFound("Booking not found")
    return b


def require_party(b: Booking, email: str) -> str:
    if email == b.renter_email:
        return "renter"
    if email == b.owner_email:
        return "owner"
    raise Forbidden("Not a party to this booking")


def count_transition(frm: str, to: str) -> None:
    try:
        TRANSITIONS.labels(frm, to).inc()
    except Exception:
        pass


def transition(
    db: Session,
    b: Booking,
    from_states: Iterable[str],
    to_state: Optional[str] = None,
    actor: Optional[str] = None,
    **values,
) -> Booking:
    """Move ``b`` to ``to_state`` (or just update ``values`` when None) if it is still in ``from_states``."""
    allowed = tuple(from_states)
    if b.state not in allowed:
        raise InvalidTransition(f"Cannot go from {b.state} to {to_state or b.state}", state=b.state)
    frm, version = b.state, b.version
    new_values = dict(values)
    new_values["version"] = version + 1
    new_values["updated_at"] = datetime.utcnow()
    if to_state is not None:
        new_values["state"] = to_state
    try:
        res = db.execute(
            update(Booking)
            .where(Booking.id == b.id, Booking.state == frm, Booking.version == version)
            .values(**new_values)
            .execution_options(synchronize_session=False)
        )
    except OperationalError as exc:
        # lock timeout / deadlock victim
        log.warning("booking %s transition lost a lock race: %s", b.id, exc)
        raise ConcurrencyConflict()
    if res.rowcount != 1:
        fresh = get_booking(db, b.id)
        if fresh.state not in allowed:
            raise InvalidTransition(f"Cannot go from {fresh.state} to {to_state or fresh.state}", state=fresh.state)
        raise ConcurrencyConflict()
    b = get_booking(db, b.id)
    if to_state is not None and to_state != frm:
        count_transition(frm, to_state)
        record_event(db, "booking.transition", str(b.id), actor=actor, data={"from": frm, "to": to_state})
        log.info("booking %s %s -> %s", b.id, frm, to_state)
    return b
