import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


# Verification ledger statuses (identity and payout share one shape)
UNVERIFIED = "unverified"
PENDING = "pending"
VERIFIED = "verified"
FAILED = "failed"

# Booking states
PENDING_REVIEW = "pendingReview"
INSTANT_CONFIRMED = "instantConfirmed"
REJECTED = "rejected"
AWAITING_PAYMENT = "awaitingPayment"
ACTIVE = "active"
COMPLETED = "completed"
DISPUTED = "disputed"
CANCELLED = "cancelled"

# States that hold the item's dates; an unresolved dispute holds them too
OCCUPYING_STATES = (PENDING_REVIEW, INSTANT_CONFIRMED, AWAITING_PAYMENT, ACTIVE)
PRE_PAYMENT_STATES = (INSTANT_CONFIRMED, AWAITING_PAYMENT)


class User(Base):
    __tablename__ = "rentals_users"

    email = Column(String(254), primary_key=True)
    name = Column(String(128), nullable=True)
    intent = Column(String(8), nullable=False, default="unset")  # renter|owner|both|unset
    identity_status = Column(String(16), nullable=False, default=UNVERIFIED)
    identity_seq = Column(Integer, nullable=False, default=0)
    identity_session_ref = Column(String(128), nullable=True)
    payout_status = Column(String(16), nullable=False, default=UNVERIFIED)
    payout_seq = Column(Integer, nullable=False, default=0)
    payout_account_ref = Column(String(128), nullable=True)
    has_payment_method = Column(Boolean, nullable=False, default=False)
    payment_method_ref = Column(String(128), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("Item", back_populates="owner")


class Item(Base):
    __tablename__ = "rentals_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    owner_email = Column(String(254), ForeignKey("rentals_users.email"), nullable=False, index=True)
    title = Column(String(160), nullable=False)
    description = Column(String(2048), nullable=True)
    daily_rate_cents = Column(Integer, nullable=False)
    deposit_cents = Column(Integer, nullable=False, default=0)
    min_rental_days = Column(Integer, nullable=False, default=1)
    max_rental_days = Column(Integer, nullable=False, default=30)
    instant_booking_enabled = Column(Boolean, nullable=False, default=False)
    availability = Column(Boolean, nullable=False, default=True)
    # bumped by every booking creation so overlap checks serialize per item
    booking_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    owner = relationship("User", back_populates="items")
    bookings = relationship("Booking", back_populates="item")


class Booking(Base):
    __tablename__ = "rentals_bookings"
    __table_args__ = (
        Index("ix_rentals_bookings_item_dates", "item_id", "start_date", "end_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    item_id = Column(UUID(as_uuid=True), ForeignKey("rentals_items.id"), nullable=False)
    renter_email = Column(String(254), ForeignKey("rentals_users.email"), nullable=False, index=True)
    owner_email = Column(String(254), ForeignKey("rentals_users.email"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    days = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)
    deposit_cents = Column(Integer, nullable=False, default=0)
    mode = Column(String(8), nullable=False)  # instant|request
    state = Column(String(20), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    # payment legs: none|pending|succeeded|failed|released|refunded
    charge_status = Column(String(12), nullable=False, default="none")
    charge_ref = Column(String(128), nullable=True)
    hold_status = Column(String(12), nullable=False, default="none")
    hold_ref = Column(String(128), nullable=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    payment_error = Column(String(256), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(254), nullable=True)
    dispute_opened_at = Column(DateTime, nullable=True)
    dispute_reason = Column(String(32), nullable=True)
    dispute_description = Column(String(2048), nullable=True)
    dispute_evidence = Column(JSON, nullable=True)
    dispute_resolved_at = Column(DateTime, nullable=True)
    dispute_resolution = Column(String(1024), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    item = relationship("Item", back_populates="bookings")
    reports = relationship("ConditionReport", back_populates="booking", order_by="ConditionReport.created_at")
    extensions = relationship("BookingExtension", back_populates="booking", order_by="BookingExtension.created_at")


class ConditionReport(Base):
    __tablename__ = "rentals_condition_reports"
    __table_args__ = (
        UniqueConstraint("booking_id", "report_type", "reported_by", name="uq_rentals_report_booking_type_reporter"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("rentals_bookings.id"), nullable=False, index=True)
    report_type = Column(String(8), nullable=False)  # pickup|return
    reported_by = Column(String(254), nullable=False)
    reporter_role = Column(String(8), nullable=False)  # renter|owner
    notes = Column(Text, nullable=True)
    damages = Column(JSON, nullable=False, default=list)  # [{severity, description, photo_url}]
    photos = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    booking = relationship("Booking", back_populates="reports")


class BookingExtension(Base):
    __tablename__ = "rentals_booking_extensions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    booking_id = Column(UUID(as_uuid=True), ForeignKey("rentals_bookings.id"), nullable=False, index=True)
    requested_by = Column(String(254), nullable=False)
    previous_end_date = Column(Date, nullable=False)
    new_end_date = Column(Date, nullable=False)
    extra_days = Column(Integer, nullable=False)
    extra_cents = Column(Integer, nullable=False)
    message = Column(String(1024), nullable=True)
    status = Column(String(10), nullable=False, default="pending")  # pending|approved|declined
    charge_status = Column(String(12), nullable=False, default="none")
    charge_ref = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    decided_at = Column(DateTime, nullable=True)

    booking = relationship("Booking", back_populates="extensions")


class Relation(Base):
    __tablename__ = "rentals_relations"
    __table_args__ = (
        UniqueConstraint("kind", "actor_email", "target_key", name="uq_rentals_relation_kind_actor_target"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    kind = Column(String(12), nullable=False)  # favorite|follow|block
    actor_email = Column(String(254), nullable=False, index=True)
    target_key = Column(String(254), nullable=False)  # item id or user email
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ProcessedEvent(Base):
    __tablename__ = "rentals_processed_events"
    __table_args__ = (
        UniqueConstraint("source", "token", name="uq_rentals_processed_source_token"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    source = Column(String(32), nullable=False)  # charge.result|payout.status|identity.status
    token = Column(String(128), nullable=False)
    subject = Column(String(254), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AuditEvent(Base):
    __tablename__ = "rentals_audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=default_uuid)
    type = Column(String(64), nullable=False)
    subject = Column(String(254), nullable=True, index=True)  # booking id or user email
    actor = Column(String(254), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
