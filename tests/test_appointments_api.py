import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.appointment_store import clear_appointment_store_cache
from app.services.google_calendar_client import clear_google_calendar_client_cache

# Monday 2031-03-03 in Los Angeles (standard time).
MONDAY = "2031-03-03"


@pytest.fixture(autouse=True)
def reset_store_and_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APPOINTMENTS_STORE", "memory")
    monkeypatch.setenv("BUSINESS_TIMEZONE", "America/Los_Angeles")
    monkeypatch.setenv("BUSINESS_HOURS", "mon-fri=10:00-17:00;sat=10:00-15:00;sun=closed")
    monkeypatch.setenv("APPOINTMENT_BUFFER_MINUTES", "15")
    monkeypatch.setenv("GOOGLE_CALENDAR_REFRESH_TOKEN", "")

    clear_appointment_store_cache()
    clear_google_calendar_client_cache()
    get_settings.cache_clear()
    yield
    clear_appointment_store_cache()
    clear_google_calendar_client_cache()
    get_settings.cache_clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def _booking_payload(scheduled_at: str, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "scheduled_at": scheduled_at,
        "duration_minutes": 60,
        "client_name": "Alice Liddell",
        "pet_name": "Dinah",
        "client_phone": "+1 555 0100",
        "services": ["Bath", " ", "Nail trim"],
        "source": "web",
    }
    payload.update(overrides)
    return payload


def test_create_appointment_returns_201(client: TestClient) -> None:
    response = client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00"))

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["state"] == "committed"
    assert data["appointment_id"]
    appointment = data["appointment"]
    assert appointment["status"] == "PENDING"
    assert appointment["duration"] == 60
    assert appointment["services"] == ["Bath", "Nail trim"]
    assert appointment["scheduled_at"].startswith("2031-03-03T18:00:00")


def test_create_appointment_conflict_returns_409(client: TestClient) -> None:
    first = client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00"))
    second = client.post(
        "/api/appointments",
        json=_booking_payload(f"{MONDAY}T11:10:00-08:00", pet_name="Cheshire"),
    )

    assert first.status_code == 201
    assert second.status_code == 409
    data = second.json()
    assert data["success"] is False
    assert data["state"] == "rejected"
    assert data["error_kind"] == "unavailable"
    assert data["error"] == "This time slot is already booked"


def test_create_appointment_outside_hours_returns_409_with_reason(client: TestClient) -> None:
    response = client.post("/api/appointments", json=_booking_payload("2031-03-02T11:00:00-08:00"))

    assert response.status_code == 409
    assert response.json()["error"] == "We are closed on Sundays"


def test_create_appointment_validates_draft(client: TestClient) -> None:
    blank_name = client.post(
        "/api/appointments",
        json=_booking_payload(f"{MONDAY}T10:00:00-08:00", client_name="   "),
    )
    too_short = client.post(
        "/api/appointments",
        json=_booking_payload(f"{MONDAY}T10:00:00-08:00", duration_minutes=10),
    )

    assert blank_name.status_code == 422
    assert too_short.status_code == 422


def test_get_appointment_and_not_found(client: TestClient) -> None:
    created = client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00")).json()

    found = client.get(f"/api/appointments/{created['appointment_id']}")
    missing = client.get("/api/appointments/missing-appointment")

    assert found.status_code == 200
    assert found.json()["pet_name"] == "Dinah"
    assert missing.status_code == 404


def test_cancel_appointment_flow(client: TestClient) -> None:
    created = client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00")).json()
    appointment_id = created["appointment_id"]

    cancelled = client.post(f"/api/appointments/{appointment_id}/cancel", json={"reason": "Vet visit"})
    again = client.post(f"/api/appointments/{appointment_id}/cancel", json={})
    missing = client.post("/api/appointments/missing-appointment/cancel", json={})

    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["cancel_reason"] == "Vet visit"
    assert again.status_code == 400
    assert missing.status_code == 404

    rebooked = client.post(
        "/api/appointments",
        json=_booking_payload(f"{MONDAY}T10:00:00-08:00", pet_name="Cheshire"),
    )
    assert rebooked.status_code == 201


def test_reschedule_appointment_flow(client: TestClient) -> None:
    first = client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00")).json()
    client.post("/api/appointments", json=_booking_payload(f"{MONDAY}T14:00:00-08:00"))

    moved = client.post(
        f"/api/appointments/{first['appointment_id']}/reschedule",
        json={"scheduled_at": f"{MONDAY}T10:30:00-08:00"},
    )
    conflict = client.post(
        f"/api/appointments/{first['appointment_id']}/reschedule",
        json={"scheduled_at": f"{MONDAY}T13:30:00-08:00", "duration_minutes": 30},
    )

    assert moved.status_code == 200
    assert moved.json()["appointment"]["scheduled_at"].startswith("2031-03-03T18:30:00")
    assert conflict.status_code == 409
    assert conflict.json()["error_kind"] == "unavailable"


def test_versioned_routes_share_the_same_store(client: TestClient) -> None:
    created = client.post("/api/v1/appointments", json=_booking_payload(f"{MONDAY}T10:00:00-08:00"))

    response = client.get(f"/api/appointments/{created.json()['appointment_id']}")

    assert created.status_code == 201
    assert response.status_code == 200
