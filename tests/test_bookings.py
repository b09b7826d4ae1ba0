"""
tests/test_bookings.py
HTTP tests for the booking endpoints:
create → conflict (409) → force → list → update → delete
"""

import uuid
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

from tests.conftest import auth_headers

# Far enough ahead that reminders are never already due
DAY = datetime(2030, 6, 10)


def _payload(participants, start_hour=10, end_hour=11, day_offset=0, **extra) -> dict:
    day = DAY + timedelta(days=day_offset)
    payload = {
        "title": "Kickoff",
        "start_time": day.replace(hour=start_hour).isoformat(),
        "end_time": day.replace(hour=end_hour).isoformat(),
        "participants": [str(p) for p in participants],
        "reminders": [{"offset_minutes": 15, "channels": ["EMAIL"]}],
    }
    payload.update(extra)
    return payload


async def _create(client, user_id, participants=None, **kwargs) -> dict:
    response = await client.post(
        "/bookings", headers=auth_headers(user_id), json=_payload(participants or [user_id], **kwargs)
    )
    assert response.status_code == 201, response.text
    return response.json()["bookings"][0]


# ── Creation ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_booking_success(client: AsyncClient, user_id):
    payload = _payload([user_id], resources=[{"kind": "ROOM", "id": "A-101"}])

    response = await client.post("/bookings", headers=auth_headers(user_id), json=payload)

    assert response.status_code == 201
    data = response.json()
    assert data["forced"] is False
    [booking] = data["bookings"]
    assert booking["title"] == "Kickoff"
    assert booking["participants"] == [str(user_id)]
    assert booking["resources"] == [{"kind": "ROOM", "id": "A-101"}]
    assert booking["created_by"] == str(user_id)
    # 10:00 Tokyo is 01:00 UTC
    assert booking["start_time"].startswith("2030-06-10T01:00:00")


@pytest.mark.asyncio
async def test_create_requires_auth(client: AsyncClient, user_id):
    response = await client.post("/bookings", json=_payload([user_id]))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_end_before_start_rejected(client: AsyncClient, user_id):
    response = await client.post(
        "/bookings", headers=auth_headers(user_id), json=_payload([user_id], start_hour=11, end_hour=10)
    )
    assert response.status_code == 422
    assert response.json()["code"] == "booking_invalid"


@pytest.mark.asyncio
async def test_custom_weekdays_without_weekdays_rejected(client: AsyncClient, user_id):
    payload = _payload([user_id], recurrence={"frequency": "custom_weekdays"})
    response = await client.post("/bookings", headers=auth_headers(user_id), json=payload)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_recurring_create_returns_every_occurrence(client: AsyncClient, user_id):
    payload = _payload(
        [user_id], recurrence={"frequency": "weekly", "end": {"type": "count", "count": 4}}
    )

    response = await client.post("/bookings", headers=auth_headers(user_id), json=payload)

    assert response.status_code == 201
    bookings = response.json()["bookings"]
    assert len(bookings) == 4
    assert len({b["series_id"] for b in bookings}) == 1


# ── Conflicts ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_conflict_returns_409_until_forced(client: AsyncClient, user_id, other_user_id):
    existing = await _create(client, user_id)
    payload = _payload([user_id, other_user_id], title="Clash")

    response = await client.post("/bookings", headers=auth_headers(other_user_id), json=payload)
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "booking_conflict"
    [occurrence] = body["conflicts"]
    assert occurrence["conflicts"][0]["id"] == existing["id"]
    assert occurrence["conflicts"][0]["shared_participants"] == [str(user_id)]

    response = await client.post(
        "/bookings", params={"force": "true"}, headers=auth_headers(other_user_id), json=payload
    )
    assert response.status_code == 201
    assert response.json()["forced"] is True
    assert len(response.json()["conflicts"]) == 1


@pytest.mark.asyncio
async def test_conflict_preview(client: AsyncClient, user_id):
    await _create(client, user_id)

    response = await client.post(
        "/bookings/conflicts", headers=auth_headers(user_id), json=_payload([user_id], 10, 12)
    )

    assert response.status_code == 200
    assert len(response.json()) == 1
    listed = await client.get(
        "/bookings",
        headers=auth_headers(user_id),
        params={"start": "2030-06-10T00:00:00", "end": "2030-06-11T00:00:00"},
    )
    assert len(listed.json()) == 1


@pytest.mark.asyncio
async def test_daily_cap_returns_422(client: AsyncClient):
    # Default cap is 10 bookings per business day
    for i in range(10):
        user = uuid.uuid4()
        await _create(client, user, start_hour=8 + i, end_hour=9 + i)

    late = uuid.uuid4()
    response = await client.post(
        "/bookings", headers=auth_headers(late), json=_payload([late], start_hour=19, end_hour=20)
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "daily_capacity_exceeded"
    assert body["date"] == "2030-06-10"
    assert body["cap"] == 10


# ── Listing ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_filters(client: AsyncClient, user_id, other_user_id):
    await _create(client, user_id, resources=[{"kind": "VEHICLE", "id": "van-1"}])
    await _create(client, other_user_id, start_hour=13, end_hour=14)
    params = {"start": "2030-06-10T00:00:00", "end": "2030-06-11T00:00:00"}

    everything = await client.get("/bookings", headers=auth_headers(user_id), params=params)
    mine = await client.get("/bookings", headers=auth_headers(user_id), params={**params, "mine": "true"})
    van = await client.get(
        "/bookings",
        headers=auth_headers(user_id),
        params={**params, "resource_kind": "VEHICLE", "resource_id": "van-1"},
    )

    assert len(everything.json()) == 2
    assert [b["created_by"] for b in mine.json()] == [str(user_id)]
    assert len(van.json()) == 1


@pytest.mark.asyncio
async def test_list_range_is_bounded(client: AsyncClient, user_id):
    response = await client.get(
        "/bookings",
        headers=auth_headers(user_id),
        params={"start": "2030-01-01T00:00:00", "end": "2031-01-01T00:00:00"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_unknown_booking(client: AsyncClient, user_id):
    response = await client.get(f"/bookings/{uuid.uuid4()}", headers=auth_headers(user_id))
    assert response.status_code == 404


# ── Update / Delete ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_moves_booking_and_replans_reminder(client: AsyncClient, user_id):
    booking = await _create(client, user_id)

    response = await client.put(
        f"/bookings/{booking['id']}", headers=auth_headers(user_id), json=_payload([user_id], 12, 13)
    )
    assert response.status_code == 200
    assert response.json()["bookings"][0]["start_time"].startswith("2030-06-10T03:00:00")

    queue = await client.get(f"/bookings/{booking['id']}/notifications", headers=auth_headers(user_id))
    statuses = sorted(r["status"] for r in queue.json() if r["category"] == "SCHEDULE_REMINDER")
    assert statuses == ["CANCELLED", "PENDING"]


@pytest.mark.asyncio
async def test_outsider_cannot_update(client: AsyncClient, user_id, other_user_id):
    booking = await _create(client, user_id)

    response = await client.put(
        f"/bookings/{booking['id']}", headers=auth_headers(other_user_id), json=_payload([user_id])
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_delete_any_booking(client: AsyncClient, user_id, admin_id):
    booking = await _create(client, user_id)

    response = await client.delete(f"/bookings/{booking['id']}", headers=auth_headers(admin_id, "ADMIN"))
    assert response.status_code == 200

    response = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(user_id))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_cancels_pending_reminders(client: AsyncClient, user_id):
    booking = await _create(client, user_id)

    await client.delete(f"/bookings/{booking['id']}", headers=auth_headers(user_id))

    queue = await client.get(f"/bookings/{booking['id']}/notifications", headers=auth_headers(user_id))
    assert queue.status_code == 200
    assert all(r["status"] == "CANCELLED" for r in queue.json())
