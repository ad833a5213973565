from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime, date


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class DevLoginIn(BaseModel):
    email: str
    name: Optional[str] = None


class MeOut(BaseModel):
    email: str
    name: Optional[str] = None
    intent: str
    identity_status: str
    payout_status: str
    has_payment_method: bool
    active: bool
    can_enable_instant_booking: bool = False
    instant_booking_blocker: Optional[str] = None


class IntentIn(BaseModel):
    intent: Literal["renter", "owner", "both"]


class SubmissionOut(BaseModel):
    status: str
    session_ref: Optional[str] = None
    url: Optional[str] = None


class PaymentMethodIn(BaseModel):
    method_ref: str = Field(..., description="Tokenized instrument reference from the provider")


class ItemCreateIn(BaseModel):
    title: str
    description: Optional[str] = None
    daily_rate_cents: int = Field(..., gt=0)
    deposit_cents: int = Field(0, ge=0)
    min_rental_days: Optional[int] = Field(None, ge=1)
    max_rental_days: Optional[int] = Field(None, ge=1)
    instant_booking_enabled: bool = False


class ItemUpdateIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    daily_rate_cents: Optional[int] = Field(None, gt=0)
    deposit_cents: Optional[int] = Field(None, ge=0)
    min_rental_days: Optional[int] = Field(None, ge=1)
    max_rental_days: Optional[int] = Field(None, ge=1)
    instant_booking_enabled: Optional[bool] = None
    availability: Optional[bool] = None


class ItemOut(BaseModel):
    id: str
    owner_email: str
    title: str
    description: Optional[str] = None
    daily_rate_cents: int
    deposit_cents: int
    min_rental_days: int
    max_rental_days: int
    instant_booking_enabled: bool
    availability: bool


class BookingCreateIn(BaseModel):
    item_id: str
    start_date: date
    end_date: date


class BookingOut(BaseModel):
    id: str
    item_id: str
    renter_email: str
    owner_email: str
    start_date: date
    end_date: date
    days: int
    total_cents: int
    deposit_cents: int
    mode: str
    state: str
    charge_status: str
    hold_status: str
    payment_error: Optional[str] = None
    created_at: datetime
    decided_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class BookingsListOut(BaseModel):
    bookings: List[BookingOut]


class DecideIn(BaseModel):
    approve: bool


class DamageIn(BaseModel):
    severity: Literal["minor", "moderate", "severe"] = "minor"
    description: str
    photo_url: Optional[str] = None


class ConditionReportIn(BaseModel):
    notes: Optional[str] = None
    damages: List[DamageIn] = []
    photos: List[str] = []


class ConditionReportOut(BaseModel):
    id: str
    booking_id: str
    report_type: str
    reported_by: str
    reporter_role: str
    notes: Optional[str] = None
    damages: List[dict] = []
    photos: List[str] = []
    created_at: datetime


class ReturnOut(BaseModel):
    booking: BookingOut
    report: ConditionReportOut


class DisputeIn(BaseModel):
    reason: Literal["item_damaged", "item_not_returned", "item_not_as_described", "payment_issue", "other"]
    description: str
    evidence_urls: List[str] = []


class DisputeOut(BaseModel):
    booking_id: str
    open: bool
    state: str
    reason: Optional[str] = None
    description: Optional[str] = None
    evidence_urls: List[str] = []
    opened_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class ResolveDisputeIn(BaseModel):
    resolution: str


class ConversationOut(BaseModel):
    booking_id: str
    conversation_ref: str
    participants: List[str]
    url: str


class RelationIn(BaseModel):
    target: str
    desired: bool
    relation_id: Optional[str] = None


class RelationOut(BaseModel):
    kind: str
    target: str
    active: bool
    changed: bool
    id: Optional[str] = None


class RelationsListOut(BaseModel):
    kind: str
    targets: List[str]


class ExtensionIn(BaseModel):
    new_end_date: date
    message: Optional[str] = None


class ExtensionOut(BaseModel):
    id: str
    booking_id: str
    requested_by: str
    previous_end_date: date
    new_end_date: date
    extra_days: int
    extra_cents: int
    message: Optional[str] = None
    status: str
    charge_status: str
    created_at: datetime
    decided_at: Optional[datetime] = None
