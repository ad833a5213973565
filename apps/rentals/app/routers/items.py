from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import settings
from ..database import get_db
from ..errors import Forbidden, GatingFailure, NotFound, ValidationError
from ..models import Item, User
from ..schemas import ItemCreateIn, ItemOut, ItemUpdateIn
from ..services import gating
from ..utils.ids import as_uuid


router = APIRouter(prefix="/items", tags=["items"])


def item_out(item: Item, owner: User) -> ItemOut:
    # the stored flag is the owner's preference; it is only advertised
    # while the owner can currently take instant bookings
    instant = bool(item.instant_booking_enabled) and bool(gating.can_enable_instant_booking(owner))
    return ItemOut(
        id=str(item.id),
        owner_email=item.owner_email,
        title=item.title,
        description=item.description,
        daily_rate_cents=item.daily_rate_cents,
        deposit_cents=item.deposit_cents,
        min_rental_days=item.min_rental_days,
        max_rental_days=item.max_rental_days,
        instant_booking_enabled=instant,
        availability=bool(item.availability),
    )


def _check_limits(min_days: int, max_days: int) -> None:
    if min_days > max_days:
        raise ValidationError("min_rental_days must not exceed max_rental_days")


@router.post("", response_model=ItemOut)
def create_item(payload: ItemCreateIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    owner = gating.load_user(db, user.email)
    if not owner.active:
        raise GatingFailure("account_active")
    if payload.instant_booking_enabled:
        gating.require(gating.can_enable_instant_booking(owner))
    if not payload.title.strip():
        raise ValidationError("title is required")
    min_days = payload.min_rental_days or settings.DEFAULT_MIN_RENTAL_DAYS
    max_days = payload.max_rental_days or settings.DEFAULT_MAX_RENTAL_DAYS
    _check_limits(min_days, max_days)
    item = Item(
        owner_email=owner.email,
        title=payload.title.strip(),
        description=payload.description,
        daily_rate_cents=payload.daily_rate_cents,
        deposit_cents=payload.deposit_cents,
        min_rental_days=min_days,
        max_rental_days=max_days,
        instant_booking_enabled=payload.instant_booking_enabled,
    )
    db.add(item)
    db.flush()
    return item_out(item, owner)


@router.get("/{item_id}", response_model=ItemOut)
def get_item(item_id: str, db: Session = Depends(get_db)):
    item = db.get(Item, as_uuid(item_id, "Item"))
    if item is None:
        raise NotFound("Item not found")
    return item_out(item, gating.load_user(db, item.owner_email))


@router.patch("/{item_id}", response_model=ItemOut)
def update_item(item_id: str, payload: ItemUpdateIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    item = db.get(Item, as_uuid(item_id, "Item"))
    if item is None:
        raise NotFound("Item not found")
    if item.owner_email != user.email:
        raise Forbidden("Only the owner can edit this item")
    changes = payload.model_dump(exclude_unset=True)
    owner = gating.load_user(db, user.email)
    if changes.get("instant_booking_enabled"):
        gating.require(gating.can_enable_instant_booking(owner))
    _check_limits(changes.get("min_rental_days", item.min_rental_days), changes.get("max_rental_days", item.max_rental_days))
    for field, value in changes.items():
        if value is not None:
            setattr(item, field, value)
    db.flush()
    return item_out(item, owner)
