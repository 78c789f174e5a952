"""
services/requests/router.py
HTTP surface of the emergency request lifecycle.
Operators (ADMIN) create, cancel and complete requests; donors respond.
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.dispatcher import NotificationDispatcher
from services.notification.sms import TwilioSmsSender, get_sms_sender
from services.realtime.registry import ConnectionRegistry, get_registry
from services.requests.lifecycle import RequestLifecycle
from shared.middleware.auth import get_current_donor, get_current_user, require_admin
from shared.models.models import BloodRequest, Donor, User, UserRole
from shared.schemas.schemas import (
    BloodRequestResponse,
    DonorContact,
    DonorResponseRequest,
    EmergencyRequestCreate,
    EmergencyRequestCreated,
    OtpVerificationResponse,
    RequestStatusResponse,
    VerifyOtpRequest,
)

router = APIRouter(prefix="/requests", tags=["Requests"])


def get_lifecycle(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    registry: ConnectionRegistry = Depends(get_registry),
    sms_sender: TwilioSmsSender = Depends(get_sms_sender),
) -> RequestLifecycle:
    dispatcher = NotificationDispatcher(db, registry, sms_sender, background_tasks)
    return RequestLifecycle(db, registry, dispatcher)


# ── Create ────────────────────────────────────────────────────

@router.post(
    "/emergency",
    response_model=EmergencyRequestCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_emergency_request(
    data: EmergencyRequestCreate,
    current_user: User = Depends(require_admin),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """
    Create a CRITICAL request for one donor. Steps:
    1. Resolve the donor (404 if unknown)
    2. Persist PENDING request with a 6-digit OTP valid for 30 minutes
    3. Notify the donor: in-app record, WebSocket push, SMS (best effort)
    """
    created = await lifecycle.create_emergency_request(
        patient_name=data.patient_name,
        blood_group=data.blood_group,
        donor_id=data.donor_id,
        hospital_name=data.hospital_name,
        location=data.location,
        contact_number=data.contact_number,
        operator=current_user,
    )
    return EmergencyRequestCreated(
        request_id=created.request_id,
        donor=DonorContact(
            id=created.donor_user_id,
            name=created.donor_name,
            phone=created.donor_phone,
        ),
    )


# ── Read ──────────────────────────────────────────────────────

@router.get("/{request_id}", response_model=BloodRequestResponse)
async def get_request(
    request_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Admins see any request; donors only the ones addressed to them."""
    request = await db.get(BloodRequest, request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Request not found")

    if current_user.role == UserRole.DONOR:
        donor = await db.get(Donor, request.donor_id)
        if not donor or donor.user_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized")

    return BloodRequestResponse.model_validate(request)


# ── Transitions ───────────────────────────────────────────────

@router.post("/{request_id}/cancel", response_model=RequestStatusResponse)
async def cancel_request(
    request_id: UUID,
    current_user: User = Depends(require_admin),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Operator cancels a PENDING or ACCEPTED request."""
    result = await lifecycle.cancel_request(request_id, operator=current_user)
    return RequestStatusResponse(
        request_id=result.request_id,
        status=result.status.value,
        message="Request cancelled successfully",
    )


@router.post("/{request_id}/respond", response_model=RequestStatusResponse)
async def respond_to_request(
    request_id: UUID,
    data: DonorResponseRequest,
    donor: Donor = Depends(get_current_donor),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """Donor accepts or declines. Same operation as the WebSocket `response` message."""
    result = await lifecycle.record_donor_response(request_id, data.accepted, donor)
    return RequestStatusResponse(
        request_id=result.request_id,
        status=result.status.value,
        message="Response recorded",
    )


@router.post("/{request_id}/verify-otp", response_model=OtpVerificationResponse)
async def verify_otp(
    request_id: UUID,
    data: VerifyOtpRequest,
    current_user: User = Depends(require_admin),
    lifecycle: RequestLifecycle = Depends(get_lifecycle),
):
    """
    Operator submits the donor's code. Wrong, expired, or premature codes are
    reported in the body with success=false, not as HTTP errors.
    """
    result = await lifecycle.verify_otp_and_complete(
        request_id, data.otp, operator=current_user
    )
    return OtpVerificationResponse(
        success=result.success,
        reason=result.reason.value if result.reason else None,
        message=result.message,
    )
