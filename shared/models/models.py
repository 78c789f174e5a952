"""
shared/models/models.py
All SQLAlchemy ORM models for the blood-donation coordination service.
UUID primary keys throughout; portable column types so the same models run
on PostgreSQL and SQLite.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    ADMIN = "ADMIN"
    DONOR = "DONOR"


class BloodGroup(str, PyEnum):
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"


class RequestStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class UrgencyLevel(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class DonationStatus(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class NotificationType(str, PyEnum):
    EMERGENCY = "EMERGENCY"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"
    DONATION_COMPLETED = "DONATION_COMPLETED"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Stored as the token itself ("AB+") rather than the member name
BloodGroupColumn = Enum(
    BloodGroup, name="blood_group", values_callable=_enum_values, length=3
)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for operators (ADMIN) and donors (DONOR)."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    blood_group: Mapped[BloodGroup] = mapped_column(BloodGroupColumn, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.DONOR
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    donor_profile: Mapped[Optional["Donor"]] = relationship(
        back_populates="user", uselist=False
    )
    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Donor(Base):
    """Donor profile. Links back to the User account (one-to-one)."""
    __tablename__ = "donors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_donation_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    health_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    user: Mapped["User"] = relationship(back_populates="donor_profile", lazy="joined")
    requests: Mapped[List["BloodRequest"]] = relationship(back_populates="donor")


class BloodRequest(Base):
    """
    Emergency blood request addressed to one candidate donor.
    Status transitions: PENDING → ACCEPTED → COMPLETED, PENDING → REJECTED,
    ACCEPTED → REJECTED (operator cancellation).
    OTP fields are written together and cleared together.
    """
    __tablename__ = "requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_name: Mapped[str] = mapped_column(String(100), nullable=False)
    blood_group: Mapped[BloodGroup] = mapped_column(BloodGroupColumn, nullable=False)
    donor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("donors.id"), nullable=False
    )
    donor_name: Mapped[str] = mapped_column(String(100), nullable=False)
    hospital_name: Mapped[str] = mapped_column(String(100), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_number: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING
    )
    urgency: Mapped[UrgencyLevel] = mapped_column(
        Enum(UrgencyLevel), nullable=False, default=UrgencyLevel.MEDIUM
    )

    otp_code: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    otp_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    donor: Mapped["Donor"] = relationship(back_populates="requests")
    donations: Mapped[List["Donation"]] = relationship(back_populates="request")
    audit_logs: Mapped[List["RequestAuditLog"]] = relationship(back_populates="request")

    __table_args__ = (
        CheckConstraint(
            "(otp_code IS NULL) = (otp_expires_at IS NULL)",
            name="ck_requests_otp_pair",
        ),
        Index("ix_requests_donor_id", "donor_id"),
        Index("ix_requests_status", "status"),
    )


class RequestAuditLog(Base):
    """Immutable log of all request status transitions."""
    __tablename__ = "request_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("requests.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    request: Mapped["BloodRequest"] = relationship(back_populates="audit_logs")


class Donation(Base):
    """Recorded outcome of a donor's response. Only written by request transitions."""
    __tablename__ = "donations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("requests.id"), nullable=False
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("donors.id"), nullable=False
    )
    blood_group: Mapped[BloodGroup] = mapped_column(BloodGroupColumn, nullable=False)
    hospital_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[DonationStatus] = mapped_column(
        Enum(DonationStatus), nullable=False, default=DonationStatus.SCHEDULED
    )
    donated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    units_donated: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    request: Mapped["BloodRequest"] = relationship(back_populates="donations")

    __table_args__ = (
        Index("ix_donations_request_id", "request_id"),
        Index("ix_donations_donor_id", "donor_id"),
    )


class BloodInventory(Base):
    """One row per blood group. Only incremented by confirmed donations."""
    __tablename__ = "blood_inventory"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    blood_group: Mapped[BloodGroup] = mapped_column(
        BloodGroupColumn, unique=True, nullable=False
    )
    units_available: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("units_available >= 0", name="ck_inventory_units_non_negative"),
    )


class Notification(Base):
    """In-app notification log. Append-only apart from the read flag."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("requests.id"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
