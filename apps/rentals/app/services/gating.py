"""Capability queries the booking machine consults at each gated transition.

Status is always read from the current row at the moment of the gated
action; nothing here caches verification state across calls.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import GatingFailure, NotFound
from ..models import VERIFIED, User


@dataclass(frozen=True)
class Capability:
    allowed: bool
    precondition: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


OK = Capability(True)


def load_user(db: Session, email: str) -> User:
    # populate_existing so a status flipped by a concurrent callback is seen
    user = db.query(User).populate_existing().filter(User.email == email).one_or_none()
    if user is None:
        raise NotFound("User not found")
    return user


def _owner_capability(owner: User) -> Capability:
    if not owner.active:
        return Capability(False, "account_active")
    if owner.payout_status != VERIFIED:
        return Capability(False, "payout_verification")
    return OK


def renter_payment_capability(renter: User) -> Capability:
    if not renter.active:
        return Capability(False, "account_active")
    if not renter.has_payment_method:
        return Capability(False, "payment_method")
    return OK


def can_instant_book(owner: User, renter: User) -> bool:
    return bool(_owner_capability(owner)) and bool(renter_payment_capability(renter))


def can_enable_instant_booking(owner: User) -> Capability:
    return _owner_capability(owner)


def can_capture_payment(owner: User) -> Capability:
    return _owner_capability(owner)


def require(capability: Capability) -> None:
    if not capability:
        raise GatingFailure(capability.precondition or "unknown")


def require_capture(db: Session, owner_email: str, renter_email: str) -> None:
    """Re-check both parties right before money moves."""
    require(can_capture_payment(load_user(db, owner_email)))
    require(renter_payment_capability(load_user(db, renter_email)))
