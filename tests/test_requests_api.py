"""
tests/test_requests_api.py
HTTP tests for the request lifecycle endpoints: roles, status codes, bodies.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import FixedWindowRateLimiter, TokenDenyList
from shared.models.models import (
    BloodGroup,
    BloodInventory,
    BloodRequest,
    Donor,
    RequestStatus,
    User,
)
from shared.utils.security import create_access_token
from tests.conftest import auth_headers


async def _create(client: AsyncClient, admin_user: User, payload: dict) -> str:
    response = await client.post(
        "/requests/emergency", headers=auth_headers(admin_user), json=payload
    )
    assert response.status_code == 201
    return response.json()["request_id"]


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_creates_emergency_request(
    client: AsyncClient, admin_user: User, donor: Donor, create_payload: dict, sms_sender
):
    response = await client.post(
        "/requests/emergency", headers=auth_headers(admin_user), json=create_payload
    )
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["message"] == "Emergency request created and notification sent"
    assert data["donor"] == {
        "id": str(donor.user_id),
        "name": "Ravi Kumar",
        "phone": "9876543210",
    }
    assert "otp" not in str(data).lower()
    # BackgroundTasks run before the transport returns
    assert len(sms_sender.sent) == 1


@pytest.mark.asyncio
async def test_create_with_unknown_donor_is_404(
    client: AsyncClient, admin_user: User, create_payload: dict
):
    create_payload["donor_id"] = str(uuid.uuid4())
    response = await client.post(
        "/requests/emergency", headers=auth_headers(admin_user), json=create_payload
    )
    assert response.status_code == 404
    assert response.json() == {"success": False, "detail": "Donor not found"}


@pytest.mark.asyncio
async def test_create_with_blank_patient_is_422(
    client: AsyncClient, admin_user: User, create_payload: dict
):
    create_payload["patient_name"] = "   "
    response = await client.post(
        "/requests/emergency", headers=auth_headers(admin_user), json=create_payload
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_with_bad_blood_group_is_422(
    client: AsyncClient, admin_user: User, create_payload: dict
):
    create_payload["blood_group"] = "Z+"
    response = await client.post(
        "/requests/emergency", headers=auth_headers(admin_user), json=create_payload
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_donor_cannot_create_request(
    client: AsyncClient, donor_user: User, create_payload: dict
):
    response = await client.post(
        "/requests/emergency", headers=auth_headers(donor_user), json=create_payload
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unauthenticated_request_is_401(client: AsyncClient, create_payload: dict):
    response = await client.post("/requests/emergency", json=create_payload)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_revoked_token_is_401(
    client: AsyncClient, admin_user: User, create_payload: dict, redis
):
    token, jti = create_access_token(str(admin_user.id), admin_user.role.value, admin_user.email)
    await redis.setex(f"{TokenDenyList.PREFIX}{jti}", 60, "1")

    response = await client.post(
        "/requests/emergency",
        headers={"Authorization": f"Bearer {token}"},
        json=create_payload,
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has been revoked"


# ── Read ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_request_hides_otp(client, admin_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)

    response = await client.get(f"/requests/{request_id}", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["urgency"] == "CRITICAL"
    assert data["blood_group"] == "O+"
    assert "otp_code" not in data


@pytest.mark.asyncio
async def test_addressed_donor_can_read_request(client, admin_user, donor_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.get(f"/requests/{request_id}", headers=auth_headers(donor_user))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_other_donor_cannot_read_request(
    client, admin_user, other_donor: Donor, create_payload
):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.get(
        f"/requests/{request_id}", headers=auth_headers(other_donor.user)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_get_unknown_request_is_404(client, admin_user):
    response = await client.get(f"/requests/{uuid.uuid4()}", headers=auth_headers(admin_user))
    assert response.status_code == 404


# ── Respond / verify ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_lifecycle_over_http(
    client, db: AsyncSession, admin_user, donor_user, create_payload, inventory
):
    request_id = await _create(client, admin_user, create_payload)
    otp = (await db.get(BloodRequest, uuid.UUID(request_id))).otp_code

    response = await client.post(
        f"/requests/{request_id}/respond",
        headers=auth_headers(donor_user),
        json={"accepted": True},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ACCEPTED"

    response = await client.post(
        f"/requests/{request_id}/verify-otp",
        headers=auth_headers(admin_user),
        json={"otp": otp},
    )
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "reason": None,
        "message": "OTP verified successfully! Donation confirmed.",
    }

    units = (await db.execute(
        select(BloodInventory.units_available)
        .where(BloodInventory.blood_group == BloodGroup.O_POSITIVE)
    )).scalar_one()
    assert units == 1

    response = await client.get("/inventory", headers=auth_headers(admin_user))
    by_group = {row["blood_group"]: row["units_available"] for row in response.json()}
    assert by_group["O+"] == 1


@pytest.mark.asyncio
async def test_wrong_otp_is_soft_failure(client, admin_user, donor_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    await client.post(
        f"/requests/{request_id}/respond",
        headers=auth_headers(donor_user),
        json={"accepted": True},
    )

    response = await client.post(
        f"/requests/{request_id}/verify-otp",
        headers=auth_headers(admin_user),
        json={"otp": "000000"},
    )
    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["reason"] == "invalid_otp"


@pytest.mark.asyncio
async def test_verify_pending_request_is_soft_failure(client, admin_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.post(
        f"/requests/{request_id}/verify-otp",
        headers=auth_headers(admin_user),
        json={"otp": "123456"},
    )
    assert response.status_code == 200
    assert response.json()["reason"] == "not_accepted"


@pytest.mark.asyncio
async def test_second_response_is_409(client, admin_user, donor_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    headers = auth_headers(donor_user)
    await client.post(f"/requests/{request_id}/respond", headers=headers, json={"accepted": False})

    response = await client.post(
        f"/requests/{request_id}/respond", headers=headers, json={"accepted": True}
    )
    assert response.status_code == 409
    assert response.json()["status"] == "REJECTED"


@pytest.mark.asyncio
async def test_other_donor_response_is_403(client, admin_user, other_donor, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.post(
        f"/requests/{request_id}/respond",
        headers=auth_headers(other_donor.user),
        json={"accepted": True},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_cannot_respond(client, admin_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.post(
        f"/requests/{request_id}/respond",
        headers=auth_headers(admin_user),
        json={"accepted": True},
    )
    assert response.status_code == 403


# ── Cancel ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_then_cancel_again(client, db, admin_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    headers = auth_headers(admin_user)

    response = await client.post(f"/requests/{request_id}/cancel", headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == "REJECTED"
    assert response.json()["message"] == "Request cancelled successfully"

    status = (await db.execute(
        select(BloodRequest.status).where(BloodRequest.id == uuid.UUID(request_id))
    )).scalar_one()
    assert status == RequestStatus.REJECTED

    response = await client.post(f"/requests/{request_id}/cancel", headers=headers)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_donor_cannot_cancel(client, admin_user, donor_user, create_payload):
    request_id = await _create(client, admin_user, create_payload)
    response = await client.post(
        f"/requests/{request_id}/cancel", headers=auth_headers(donor_user)
    )
    assert response.status_code == 403


# ── Ops ────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_root_and_request_id_header(client):
    response = await client.get("/", headers={"X-Request-ID": "trace-123"})
    assert response.status_code == 200
    assert response.json()["name"] == "BloodCare Coordination API"
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.headers["X-Process-Time"].endswith("ms")


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_limit(redis):
    limiter = FixedWindowRateLimiter(redis, limit=2)
    assert await limiter.hit("rate:unauth:10.0.0.1")
    assert await limiter.hit("rate:unauth:10.0.0.1")
    assert not await limiter.hit("rate:unauth:10.0.0.1")
    assert await limiter.hit("rate:unauth:10.0.0.2")
    assert 0 < await redis.ttl("rate:unauth:10.0.0.1") <= 60
