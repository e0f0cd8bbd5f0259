from datetime import UTC, datetime

import pytest

from app.services.appointment_models import AppointmentDraft, AppointmentRecord, AppointmentStatus
from app.services.appointment_store import InMemoryAppointmentStore, _lock_keys_for
from app.services.time_intervals import TimeInterval


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=UTC)


def _draft() -> AppointmentDraft:
    return AppointmentDraft(client_name=" Alice Liddell ", pet_name="Dinah", services=["Bath"])


def test_in_memory_store_finds_only_occupying_overlaps() -> None:
    store = InMemoryAppointmentStore()
    kept = store.insert(_draft(), TimeInterval(start=_at(19, 17), end=_at(19, 18)))
    cancelled = store.insert(_draft(), TimeInterval(start=_at(19, 18), end=_at(19, 19)))
    store.update(cancelled.id, {"status": AppointmentStatus.CANCELLED})
    store.insert(_draft(), TimeInterval(start=_at(19, 20), end=_at(19, 21)))

    found = store.find_occupying(TimeInterval(start=_at(19, 17, 30), end=_at(19, 20)))

    assert [record.id for record in found] == [kept.id]
    assert found[0].client_name == "Alice Liddell"
    assert found[0].duration == 60


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryAppointmentStore()
    record = store.insert(_draft(), TimeInterval(start=_at(19, 17), end=_at(19, 18)))

    record.services.append("Haircut")
    record.status = AppointmentStatus.COMPLETED

    stored = store.get_by_id(record.id)
    assert stored is not None
    assert stored.status == AppointmentStatus.PENDING
    assert stored.services == ["Bath"]


def test_in_memory_store_update_rejects_unknown_fields() -> None:
    store = InMemoryAppointmentStore()
    record = store.insert(_draft(), TimeInterval(start=_at(19, 17), end=_at(19, 18)))

    with pytest.raises(ValueError, match="client_name"):
        store.update(record.id, {"client_name": "Mad Hatter"})
    assert store.update("missing-appointment", {"notes": "x"}) is None


def test_record_from_document_normalizes_naive_utc_and_missing_end() -> None:
    record = AppointmentRecord.from_document(
        {
            "_id": "65f000000000000000000001",
            "scheduled_at": datetime(2026, 10, 19, 17, 0),
            "duration": 45,
            "status": "CONFIRMED",
            "pet_name": "Dinah",
        },
    )

    assert record.id == "65f000000000000000000001"
    assert record.scheduled_at == _at(19, 17)
    assert record.end_time == _at(19, 17, 45)
    assert record.status == AppointmentStatus.CONFIRMED
    assert record.is_occupying
    assert record.services == []


def test_lock_keys_cover_every_utc_date_touched() -> None:
    same_day = TimeInterval(start=_at(19, 16, 45), end=_at(19, 18, 15))
    overnight = TimeInterval(start=_at(19, 23, 45), end=_at(20, 1, 15))

    assert _lock_keys_for(same_day) == ["booking-day-2026-10-19"]
    assert _lock_keys_for(overnight) == ["booking-day-2026-10-19", "booking-day-2026-10-20"]
