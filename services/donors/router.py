"""
services/donors/router.py
GET /donors?blood_group=O+   operators search available donors by group
GET /donors/me/donations     a donor's own donation history
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.donors.service import find_available_donors, list_donation_history
from shared.middleware.auth import get_current_donor, require_admin
from shared.models.models import BloodGroup, Donor, User
from shared.schemas.schemas import AvailableDonorResponse, DonationResponse

router = APIRouter(prefix="/donors", tags=["Donors"])


@router.get("", response_model=list[AvailableDonorResponse])
async def search_available_donors(
    blood_group: BloodGroup = Query(..., description="Blood group token, e.g. O+ or AB-"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    donors = await find_available_donors(db, blood_group)
    return [
        AvailableDonorResponse(
            id=donor.id,
            user_id=donor.user_id,
            name=donor.user.full_name,
            phone=donor.user.phone_number,
            blood_group=donor.user.blood_group,
            last_donation_at=donor.last_donation_at,
        )
        for donor in donors
    ]


@router.get("/me/donations", response_model=list[DonationResponse])
async def my_donation_history(
    donor: Donor = Depends(get_current_donor),
    db: AsyncSession = Depends(get_db),
):
    donations = await list_donation_history(db, donor.id)
    return [DonationResponse.model_validate(d) for d in donations]
