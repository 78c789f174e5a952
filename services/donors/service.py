"""
services/donors/service.py
Donor lookups for operators and donors. Read-only.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BloodGroup, Donation, Donor, User


async def find_available_donors(db: AsyncSession, blood_group: BloodGroup) -> list[Donor]:
    """
    Candidates an operator can address a request to: active accounts with a
    matching blood group whose donor profile is marked available. Ordered by
    name so the list is stable between calls.
    """
    result = await db.execute(
        select(Donor)
        .join(Donor.user)
        .where(
            User.blood_group == blood_group,
            User.is_active.is_(True),
            Donor.is_available.is_(True),
        )
        .order_by(User.full_name, Donor.id)
    )
    return list(result.scalars().unique().all())


async def list_donation_history(db: AsyncSession, donor_id: uuid.UUID) -> list[Donation]:
    """The donor's donations, newest first."""
    result = await db.execute(
        select(Donation)
        .where(Donation.donor_id == donor_id)
        .order_by(Donation.donated_at.desc(), Donation.id)
    )
    return list(result.scalars().all())
