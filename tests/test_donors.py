"""
tests/test_donors.py
Tests for the donor search and donation history endpoints.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from services.donors.service import find_available_donors
from shared.models.models import BloodGroup, Donor, User, UserRole
from tests.conftest import auth_headers


async def _add_donor(
    db: AsyncSession,
    name: str,
    email: str,
    blood_group: BloodGroup,
    is_available: bool = True,
    is_active: bool = True,
) -> Donor:
    user = User(
        full_name=name,
        email=email,
        phone_number="9811100000",
        blood_group=blood_group,
        role=UserRole.DONOR,
        is_active=is_active,
    )
    donor = Donor(user=user, is_available=is_available)
    db.add_all([user, donor])
    await db.commit()
    return donor


async def _accepted_request(lifecycle, donor: Donor):
    created = await lifecycle.create_emergency_request(
        patient_name="Sunita Devi",
        blood_group="O+",
        donor_id=donor.id,
        hospital_name="City General Hospital",
        location="Ward 4",
        contact_number="9123456780",
    )
    await lifecycle.record_donor_response(created.request_id, True, donor)
    return created.request_id


# ── Search ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_search_filters_unavailable_and_other_groups(db, donor: Donor):
    await _add_donor(
        db, "Arjun Rao", "arjun@bloodcare.test", BloodGroup.O_POSITIVE, is_available=False
    )
    await _add_donor(db, "Kavya Iyer", "kavya@bloodcare.test", BloodGroup.A_NEGATIVE)
    await _add_donor(
        db, "Imran Shah", "imran@bloodcare.test", BloodGroup.O_POSITIVE, is_active=False
    )

    found = await find_available_donors(db, BloodGroup.O_POSITIVE)
    assert [d.id for d in found] == [donor.id]

    found = await find_available_donors(db, BloodGroup.A_NEGATIVE)
    assert [d.user.full_name for d in found] == ["Kavya Iyer"]

    assert await find_available_donors(db, BloodGroup.AB_POSITIVE) == []


@pytest.mark.asyncio
async def test_admin_searches_donors_by_group(
    client, db, admin_user, donor: Donor, other_donor: Donor
):
    other_donor.is_available = False
    await db.commit()
    await _add_donor(db, "Kavya Iyer", "kavya@bloodcare.test", BloodGroup.A_NEGATIVE)

    response = await client.get(
        "/donors", params={"blood_group": "O+"}, headers=auth_headers(admin_user)
    )
    assert response.status_code == 200
    assert response.json() == [{
        "id": str(donor.id),
        "user_id": str(donor.user_id),
        "name": "Ravi Kumar",
        "phone": "9876543210",
        "blood_group": "O+",
        "last_donation_at": None,
    }]


@pytest.mark.asyncio
async def test_search_requires_valid_group(client, admin_user):
    headers = auth_headers(admin_user)
    assert (await client.get("/donors", headers=headers)).status_code == 422
    response = await client.get("/donors", params={"blood_group": "Z+"}, headers=headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_donor_cannot_search_donors(client, donor_user):
    response = await client.get(
        "/donors", params={"blood_group": "O+"}, headers=auth_headers(donor_user)
    )
    assert response.status_code == 403


# ── Donation history ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_history_lists_only_own_donations(
    client, lifecycle, donor: Donor, other_donor: Donor
):
    request_id = await _accepted_request(lifecycle, donor)
    await _accepted_request(lifecycle, other_donor)

    response = await client.get("/donors/me/donations", headers=auth_headers(donor.user))
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["request_id"] == str(request_id)
    assert data[0]["status"] == "SCHEDULED"
    assert data[0]["blood_group"] == "O+"
    assert data[0]["hospital_name"] == "City General Hospital"


@pytest.mark.asyncio
async def test_history_is_empty_without_donations(client, donor_user):
    response = await client.get("/donors/me/donations", headers=auth_headers(donor_user))
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_admin_has_no_donation_history(client, admin_user):
    response = await client.get("/donors/me/donations", headers=auth_headers(admin_user))
    assert response.status_code == 403
