"""
services/requests/lifecycle.py
Emergency blood request lifecycle.

States: PENDING → ACCEPTED → COMPLETED
        PENDING → REJECTED              (donor declines)
        PENDING | ACCEPTED → REJECTED   (operator cancels)
COMPLETED and REJECTED are terminal.

Every state change commits before any notification is attempted, and
notification failures never reach the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from services.inventory.service import increment_on_donation
from services.notification.dispatcher import NotificationDispatcher
from services.realtime.registry import ConnectionRegistry
from shared.exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from shared.models.models import (
    BloodGroup,
    BloodRequest,
    Donation,
    DonationStatus,
    Donor,
    NotificationType,
    RequestAuditLog,
    RequestStatus,
    UrgencyLevel,
    User,
)
from shared.utils.otp import OtpCheck, check_otp, issue_otp

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    RequestStatus.PENDING: (RequestStatus.ACCEPTED, RequestStatus.REJECTED),
    RequestStatus.ACCEPTED: (RequestStatus.COMPLETED, RequestStatus.REJECTED),
    RequestStatus.REJECTED: (),
    RequestStatus.COMPLETED: (),
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


class VerificationFailure(str, Enum):
    NOT_ACCEPTED = "not_accepted"
    INVALID_OTP = "invalid_otp"
    OTP_EXPIRED = "otp_expired"


FAILURE_MESSAGES = {
    VerificationFailure.NOT_ACCEPTED: "Invalid request or request not accepted",
    VerificationFailure.INVALID_OTP: "Invalid OTP",
    VerificationFailure.OTP_EXPIRED: "OTP has expired",
}

SUCCESS_MESSAGE = "OTP verified successfully! Donation confirmed."


@dataclass(frozen=True)
class OtpVerificationResult:
    success: bool
    message: str
    reason: Optional[VerificationFailure] = None

    @classmethod
    def failed(cls, reason: VerificationFailure) -> "OtpVerificationResult":
        return cls(success=False, message=FAILURE_MESSAGES[reason], reason=reason)


@dataclass(frozen=True)
class CreatedRequest:
    request_id: UUID
    otp_expires_at: datetime
    donor_user_id: UUID
    donor_name: str
    donor_phone: str


@dataclass(frozen=True)
class TransitionResult:
    request_id: UUID
    status: RequestStatus


def _require_text(**fields: str) -> dict[str, str]:
    cleaned = {}
    for name, value in fields.items():
        if value is None or not str(value).strip():
            raise ValidationError(f"{name} is required")
        cleaned[name] = str(value).strip()
    return cleaned


class RequestLifecycle:
    """Orchestrates request state, OTPs, donations, inventory and notifications."""

    def __init__(
        self,
        db: AsyncSession,
        registry: ConnectionRegistry,
        dispatcher: NotificationDispatcher,
    ):
        self.db = db
        self.registry = registry
        self.dispatcher = dispatcher

    # ── Helpers ────────────────────────────────────────────────

    async def _get_request_or_404(self, request_id: UUID) -> BloodRequest:
        request = await self.db.get(BloodRequest, request_id)
        if not request:
            raise NotFoundError("Request not found")
        return request

    async def _get_donor_with_user(self, donor_id: UUID) -> Optional[Donor]:
        result = await self.db.execute(
            select(Donor).options(joinedload(Donor.user)).where(Donor.id == donor_id)
        )
        return result.scalar_one_or_none()

    def _log_status_change(
        self,
        request: BloodRequest,
        from_status: Optional[RequestStatus],
        to_status: RequestStatus,
        changed_by: Optional[User] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Append an immutable audit log entry for every status change."""
        self.db.add(RequestAuditLog(
            request_id=request.id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            changed_by_id=changed_by.id if changed_by else None,
            reason=reason,
        ))

    def _ensure_transition(self, request: BloodRequest, target: RequestStatus, action: str) -> None:
        if not can_transition(request.status, target):
            raise InvalidStateError(
                f"Cannot {action} request in '{request.status.value}' state",
                current_status=request.status.value,
            )

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # ── Create ─────────────────────────────────────────────────

    async def create_emergency_request(
        self,
        patient_name: str,
        blood_group,
        donor_id: UUID,
        hospital_name: str,
        location: str,
        contact_number: str,
        operator: Optional[User] = None,
    ) -> CreatedRequest:
        """
        Persist a PENDING, CRITICAL request with a fresh OTP, then notify the
        donor. Notification problems do not undo or fail the creation.
        """
        fields = _require_text(
            patient_name=patient_name,
            hospital_name=hospital_name,
            location=location,
            contact_number=contact_number,
        )
        try:
            group = BloodGroup(blood_group)
        except ValueError:
            raise ValidationError(f"Unknown blood group: {blood_group}")

        donor = await self._get_donor_with_user(donor_id)
        if not donor:
            raise NotFoundError("Donor not found")
        donor_user = donor.user

        now = datetime.now(timezone.utc)
        otp = issue_otp(now)

        request = BloodRequest(
            patient_name=fields["patient_name"],
            blood_group=group,
            donor_id=donor.id,
            donor_name=donor_user.full_name,
            hospital_name=fields["hospital_name"],
            location=fields["location"],
            contact_number=fields["contact_number"],
            created_at=now,
            status=RequestStatus.PENDING,
            urgency=UrgencyLevel.CRITICAL,
            otp_code=otp.code,
            otp_expires_at=otp.expires_at,
        )
        try:
            self.db.add(request)
            await self.db.flush()
            self._log_status_change(request, None, RequestStatus.PENDING, operator)
        except Exception:
            await self.db.rollback()
            raise
        await self._commit()

        created = CreatedRequest(
            request_id=request.id,
            otp_expires_at=otp.expires_at,
            donor_user_id=donor_user.id,
            donor_name=donor_user.full_name,
            donor_phone=donor_user.phone_number,
        )
        logger.info(f"Emergency request {created.request_id} created for donor {donor.id}")

        template_vars = {
            "patient_name": fields["patient_name"],
            "blood_group": group.value,
            "hospital_name": fields["hospital_name"],
            "otp": otp.code,
        }
        await self.dispatcher.dispatch(
            donor_user,
            NotificationType.EMERGENCY,
            template_vars,
            request_id=created.request_id,
            push_payload={
                "type": "emergency",
                "requestId": str(created.request_id),
                "patientName": fields["patient_name"],
                "bloodGroup": group.value,
                "hospitalName": fields["hospital_name"],
                "location": fields["location"],
                "contactNumber": fields["contact_number"],
                "otp": otp.code,
                "timestamp": now.isoformat(),
            },
        )
        return created

    # ── Cancel ─────────────────────────────────────────────────

    async def cancel_request(
        self,
        request_id: UUID,
        operator: Optional[User] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Operator cancellation: PENDING | ACCEPTED → REJECTED."""
        request = await self._get_request_or_404(request_id)
        self._ensure_transition(request, RequestStatus.REJECTED, "cancel")

        prev_status = request.status
        request.status = RequestStatus.REJECTED
        request.cancelled_at = datetime.now(timezone.utc)

        # An accepted request already has a scheduled donation
        await self.db.execute(
            update(Donation)
            .where(
                Donation.request_id == request.id,
                Donation.status == DonationStatus.SCHEDULED,
            )
            .values(status=DonationStatus.CANCELLED)
        )
        self._log_status_change(
            request, prev_status, RequestStatus.REJECTED, operator, reason or "Cancelled by operator"
        )
        await self._commit()

        result = TransitionResult(request_id=request.id, status=RequestStatus.REJECTED)
        template_vars = {
            "patient_name": request.patient_name,
            "hospital_name": request.hospital_name,
        }
        logger.info(f"Request {result.request_id} cancelled (was {prev_status.value})")

        donor = await self._get_donor_with_user(request.donor_id)
        if donor:
            await self.dispatcher.dispatch(
                donor.user,
                NotificationType.REQUEST_CANCELLED,
                template_vars,
                request_id=result.request_id,
                push_payload={"type": "request-cancelled", "requestId": str(result.request_id)},
                send_sms=False,
            )
        return result

    # ── Donor response ─────────────────────────────────────────

    async def record_donor_response(
        self,
        request_id: UUID,
        accepted: bool,
        responding_donor: Donor,
    ) -> TransitionResult:
        """
        PENDING → ACCEPTED (with a SCHEDULED donation) or PENDING → REJECTED.
        Connected administrators are told about the outcome.
        """
        request = await self._get_request_or_404(request_id)
        if request.donor_id != responding_donor.id:
            raise PermissionDeniedError("This request is addressed to another donor")
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(
                f"Cannot respond to request in '{request.status.value}' state",
                current_status=request.status.value,
            )

        target = RequestStatus.ACCEPTED if accepted else RequestStatus.REJECTED
        now = datetime.now(timezone.utc)

        request.status = target
        request.responded_at = now
        if accepted:
            self.db.add(Donation(
                request_id=request.id,
                donor_id=request.donor_id,
                blood_group=request.blood_group,
                hospital_name=request.hospital_name,
                location=request.location,
                status=DonationStatus.SCHEDULED,
                donated_at=now,
            ))
        self._log_status_change(
            request, RequestStatus.PENDING, target, responding_donor.user,
            "Donor accepted" if accepted else "Donor declined",
        )
        await self._commit()

        result = TransitionResult(request_id=request.id, status=target)
        logger.info(f"Donor {responding_donor.id} {target.value.lower()} request {result.request_id}")

        try:
            await self.registry.broadcast_to_admins({
                "type": "donor-response",
                "requestId": str(result.request_id),
                "donorName": request.donor_name,
                "status": "accepted" if accepted else "rejected",
            })
        except Exception as e:
            logger.warning(f"Admin broadcast for request {result.request_id} failed: {e}")
        return result

    # ── OTP verification ───────────────────────────────────────

    async def verify_otp_and_complete(
        self,
        request_id: UUID,
        submitted_otp: str,
        operator: Optional[User] = None,
    ) -> OtpVerificationResult:
        """
        Soft failures (not accepted, wrong code, expired code) come back as a
        result and change nothing. On success the status change, donation
        record and inventory increment commit together or not at all.
        """
        request = await self.db.get(BloodRequest, request_id)
        if not request or request.status != RequestStatus.ACCEPTED:
            logger.info(f"OTP verification refused for request {request_id}: not accepted")
            return OtpVerificationResult.failed(VerificationFailure.NOT_ACCEPTED)

        check = check_otp(request.otp_code, request.otp_expires_at, submitted_otp)
        if check is OtpCheck.MISMATCH:
            logger.info(f"OTP verification failed for request {request_id}: wrong code")
            return OtpVerificationResult.failed(VerificationFailure.INVALID_OTP)
        if check is OtpCheck.EXPIRED:
            logger.info(f"OTP verification failed for request {request_id}: code expired")
            return OtpVerificationResult.failed(VerificationFailure.OTP_EXPIRED)

        now = datetime.now(timezone.utc)
        try:
            request.status = RequestStatus.COMPLETED
            request.completed_at = now
            await self._record_completed_donation(request, now)

            donor = await self.db.get(Donor, request.donor_id)
            if donor:
                donor.last_donation_at = now

            await increment_on_donation(self.db, request.blood_group)
            self._log_status_change(
                request, RequestStatus.ACCEPTED, RequestStatus.COMPLETED, operator, "OTP verified"
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Request {request_id} completed; {request.blood_group.value} inventory +1")

        template_vars = {
            "blood_group": request.blood_group.value,
            "hospital_name": request.hospital_name,
        }
        donor = await self._get_donor_with_user(request.donor_id)
        if donor:
            await self.dispatcher.dispatch(
                donor.user,
                NotificationType.DONATION_COMPLETED,
                template_vars,
                request_id=request.id,
                push_payload={"type": "donation-completed", "requestId": str(request.id)},
                send_sms=False,
            )
        return OtpVerificationResult(success=True, message=SUCCESS_MESSAGE)

    async def _record_completed_donation(self, request: BloodRequest, now: datetime) -> Donation:
        """Promote the scheduled donation made at acceptance; insert one if it is missing."""
        result = await self.db.execute(
            select(Donation)
            .where(
                Donation.request_id == request.id,
                Donation.status == DonationStatus.SCHEDULED,
            )
            .order_by(Donation.donated_at)
        )
        donation = result.scalars().first()
        if donation is None:
            donation = Donation(
                request_id=request.id,
                donor_id=request.donor_id,
                blood_group=request.blood_group,
                hospital_name=request.hospital_name,
                location=request.location,
            )
            self.db.add(donation)

        donation.status = DonationStatus.COMPLETED
        donation.donated_at = now
        donation.units_donated = Decimal("1")
        return donation
