"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the API.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import BloodGroup, DonationStatus, RequestStatus, UrgencyLevel


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Requests ──────────────────────────────────────────────────

class EmergencyRequestCreate(BaseSchema):
    patient_name: str = Field(..., min_length=1, max_length=100)
    blood_group: BloodGroup
    donor_id: uuid.UUID
    hospital_name: str = Field(..., min_length=1, max_length=100)
    location: str = Field(..., min_length=1, max_length=255)
    contact_number: str = Field(..., min_length=1, max_length=20)

    @field_validator("patient_name", "hospital_name", "location", "contact_number")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class DonorContact(BaseSchema):
    id: uuid.UUID
    name: str
    phone: str


class EmergencyRequestCreated(BaseSchema):
    success: bool = True
    request_id: uuid.UUID
    message: str = "Emergency request created and notification sent"
    donor: DonorContact


class DonorResponseRequest(BaseSchema):
    accepted: bool


class VerifyOtpRequest(BaseSchema):
    otp: str = Field(..., min_length=1, max_length=12)


class OtpVerificationResponse(BaseSchema):
    success: bool
    reason: Optional[str] = None
    message: str


class RequestStatusResponse(BaseSchema):
    success: bool = True
    request_id: uuid.UUID
    status: str
    message: str


class BloodRequestResponse(BaseSchema):
    id: uuid.UUID
    patient_name: str
    blood_group: BloodGroup
    donor_id: uuid.UUID
    donor_name: str
    hospital_name: str
    location: str
    contact_number: str
    status: RequestStatus
    urgency: UrgencyLevel
    created_at: datetime
    otp_expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


# ── Donors ────────────────────────────────────────────────────

class AvailableDonorResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    phone: str
    blood_group: BloodGroup
    last_donation_at: Optional[datetime] = None


class DonationResponse(BaseSchema):
    id: uuid.UUID
    request_id: uuid.UUID
    blood_group: BloodGroup
    hospital_name: Optional[str] = None
    location: Optional[str] = None
    status: DonationStatus
    donated_at: datetime


# ── Inventory ─────────────────────────────────────────────────

class InventoryResponse(BaseSchema):
    blood_group: BloodGroup
    units_available: int
    last_updated: datetime
