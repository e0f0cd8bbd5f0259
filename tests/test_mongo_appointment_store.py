from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from app.core.config import Settings, get_settings
from app.main import app
from app.services.appointment_models import AppointmentDraft
from app.services.appointment_store import (
    AppointmentStoreError,
    MongoAppointmentStore,
    clear_appointment_store_cache,
    create_appointment_store,
)
from app.services.availability_service import AvailabilityEngine, SlotProposal
from app.services.booking_service import BookingCoordinator, BookingErrorKind, BookingState
from app.services.busy_sources import LocalAppointmentSource, RemoteCalendarSource
from app.services.business_hours import BusinessHoursPolicy, parse_weekly_schedule
from app.services.google_calendar_client import clear_google_calendar_client_cache
from app.services.time_intervals import TimeInterval

BUSINESS_TZ = ZoneInfo("America/Los_Angeles")
FIXED_NOW = datetime(2026, 10, 19, 0, 0, tzinfo=BUSINESS_TZ)
MONDAY_LOCK = "booking-day-2026-10-19"


class _FakeCursor:
    def __init__(self, documents: list[dict]) -> None:
        self._documents = documents

    def sort(self, key: str, direction: int) -> list[dict]:
        return sorted(self._documents, key=lambda document: document[key])


class _FakeAppointmentsCollection:
    def __init__(self) -> None:
        self.documents: list[dict] = []

    def create_index(self, *args, **kwargs) -> str:  # type: ignore[no-untyped-def]
        return "index"

    def find(self, query: dict) -> _FakeCursor:
        statuses = set(query["status"]["$in"])
        return _FakeCursor(
            [
                document
                for document in self.documents
                if document["status"] in statuses
                and document["scheduled_at"] < query["scheduled_at"]["$lt"]
                and document["end_time"] > query["end_time"]["$gt"]
            ],
        )

    def insert_one(self, document: dict) -> SimpleNamespace:
        stored = {**document, "_id": ObjectId()}
        self.documents.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])


class _FakeLocksCollection:
    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.insert_attempts = 0
        self.busy_attempts = 0

    def create_index(self, *args, **kwargs) -> str:  # type: ignore[no-untyped-def]
        return "expires_at_1"

    def insert_one(self, document: dict) -> None:
        self.insert_attempts += 1
        if self.busy_attempts > 0:
            self.busy_attempts -= 1
            raise DuplicateKeyError("E11000 duplicate key error")
        if document["_id"] in self.documents:
            raise DuplicateKeyError("E11000 duplicate key error")
        self.documents[document["_id"]] = dict(document)

    def delete_one(self, query: dict) -> None:
        document = self.documents.get(query["_id"])
        if document is None:
            return
        if "owner" in query and document["owner"] != query["owner"]:
            return
        if "expires_at" in query and not document["expires_at"] < query["expires_at"]["$lt"]:
            return
        del self.documents[query["_id"]]


class _FakeMongoClient:
    def __init__(self, collections: dict[str, object]) -> None:
        self._collections = collections

    def __getitem__(self, db_name: str) -> dict[str, object]:
        return self._collections


class _UnreachableCollection:
    def create_index(self, *args, **kwargs) -> str:  # type: ignore[no-untyped-def]
        raise ServerSelectionTimeoutError("127.0.0.1:1: [Errno 111] Connection refused")


@pytest.fixture
def appointments() -> _FakeAppointmentsCollection:
    return _FakeAppointmentsCollection()


@pytest.fixture
def locks() -> _FakeLocksCollection:
    return _FakeLocksCollection()


@pytest.fixture
def fake_mongo(
    monkeypatch: pytest.MonkeyPatch,
    appointments: _FakeAppointmentsCollection,
    locks: _FakeLocksCollection,
) -> None:
    collections = {"appointments": appointments, "booking_locks": locks}
    monkeypatch.setattr("pymongo.MongoClient", lambda uri, **kwargs: _FakeMongoClient(collections))


def _store(lock_timeout_seconds: float = 5.0) -> MongoAppointmentStore:
    return MongoAppointmentStore(
        uri="mongodb://localhost:27017",
        db_name="looking_glass",
        collection_name="appointments",
        locks_collection_name="booking_locks",
        lock_timeout_seconds=lock_timeout_seconds,
    )


def _monday(hour: int) -> TimeInterval:
    start = datetime(2026, 10, 19, hour, 0, tzinfo=UTC)
    return TimeInterval(start=start, end=start + timedelta(hours=1))


def _coordinator(store: MongoAppointmentStore) -> BookingCoordinator:
    engine = AvailabilityEngine(
        policy=BusinessHoursPolicy(
            parse_weekly_schedule("mon-fri=10:00-17:00;sat=10:00-15:00;sun=closed"),
            "America/Los_Angeles",
        ),
        local_source=LocalAppointmentSource(store, buffer_minutes=15),
        remote_source=RemoteCalendarSource(None),
        buffer_minutes=15,
        clock=lambda: FIXED_NOW,
    )
    return BookingCoordinator(engine=engine, store=store, clock=lambda: FIXED_NOW)


def test_serialized_write_holds_and_releases_the_day_lock(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    store = _store()

    with store.serialized_write(_monday(17)):
        assert list(locks.documents) == [MONDAY_LOCK]
        assert locks.documents[MONDAY_LOCK]["expires_at"] > datetime.now(UTC)

    assert locks.documents == {}


def test_serialized_write_retries_while_another_writer_holds_the_lock(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    locks.busy_attempts = 2
    store = _store()

    with store.serialized_write(_monday(17)):
        assert MONDAY_LOCK in locks.documents

    assert locks.insert_attempts == 3


def test_serialized_write_clears_an_expired_lease(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    locks.documents[MONDAY_LOCK] = {
        "_id": MONDAY_LOCK,
        "owner": "crashed-writer",
        "expires_at": datetime.now(UTC) - timedelta(minutes=1),
    }
    store = _store()

    with store.serialized_write(_monday(17)):
        assert locks.documents[MONDAY_LOCK]["owner"] != "crashed-writer"

    assert locks.documents == {}


def test_serialized_write_times_out_on_a_live_lock(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    locks.documents[MONDAY_LOCK] = {
        "_id": MONDAY_LOCK,
        "owner": "other-writer",
        "expires_at": datetime.now(UTC) + timedelta(minutes=1),
    }
    store = _store(lock_timeout_seconds=0.0)

    with pytest.raises(AppointmentStoreError, match=MONDAY_LOCK):
        with store.serialized_write(_monday(17)):
            pytest.fail("the lock must not be acquired")

    assert locks.documents[MONDAY_LOCK]["owner"] == "other-writer"


def test_serialized_write_only_releases_its_own_lock(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    store = _store()

    with store.serialized_write(_monday(17)):
        # Our lease lapsed and another writer took the day over.
        locks.documents[MONDAY_LOCK]["owner"] = "other-writer"

    assert locks.documents[MONDAY_LOCK]["owner"] == "other-writer"


def test_serialized_write_releases_every_day_of_an_overnight_interval(
    fake_mongo: None,
    locks: _FakeLocksCollection,
) -> None:
    store = _store()
    overnight = TimeInterval(
        start=datetime(2026, 10, 19, 23, 0, tzinfo=UTC),
        end=datetime(2026, 10, 20, 1, 0, tzinfo=UTC),
    )

    with store.serialized_write(overnight):
        assert sorted(locks.documents) == [MONDAY_LOCK, "booking-day-2026-10-20"]

    assert locks.documents == {}


def test_booking_commits_through_the_lock(
    fake_mongo: None,
    appointments: _FakeAppointmentsCollection,
    locks: _FakeLocksCollection,
) -> None:
    coordinator = _coordinator(_store())

    result = coordinator.propose_and_commit(
        SlotProposal(start=datetime(2026, 10, 19, 10, 0, tzinfo=BUSINESS_TZ), duration_minutes=60),
        AppointmentDraft(client_name="Alice Liddell", pet_name="Dinah"),
    )

    assert result.state == BookingState.committed
    assert result.appointment_id == str(appointments.documents[0]["_id"])
    assert locks.documents == {}

    second = coordinator.propose_and_commit(
        SlotProposal(start=datetime(2026, 10, 19, 10, 30, tzinfo=BUSINESS_TZ), duration_minutes=60),
        AppointmentDraft(client_name="Bill Lizard", pet_name="Pat"),
    )
    assert second.state == BookingState.rejected
    assert len(appointments.documents) == 1


def test_lock_timeout_fails_the_booking_without_inserting(
    fake_mongo: None,
    appointments: _FakeAppointmentsCollection,
    locks: _FakeLocksCollection,
) -> None:
    locks.documents[MONDAY_LOCK] = {
        "_id": MONDAY_LOCK,
        "owner": "other-writer",
        "expires_at": datetime.now(UTC) + timedelta(minutes=1),
    }
    coordinator = _coordinator(_store(lock_timeout_seconds=0.0))

    result = coordinator.propose_and_commit(
        SlotProposal(start=datetime(2026, 10, 19, 10, 0, tzinfo=BUSINESS_TZ), duration_minutes=60),
        AppointmentDraft(client_name="Alice Liddell", pet_name="Dinah"),
    )

    assert result.state == BookingState.failed
    assert result.error is not None
    assert result.error.kind == BookingErrorKind.transient_failure
    assert appointments.documents == []


@pytest.fixture
def unreachable_mongo(monkeypatch: pytest.MonkeyPatch) -> None:
    collections = {"appointments": _UnreachableCollection(), "booking_locks": _UnreachableCollection()}
    monkeypatch.setattr("pymongo.MongoClient", lambda uri, **kwargs: _FakeMongoClient(collections))
    clear_appointment_store_cache()
    yield
    clear_appointment_store_cache()


def test_unreachable_database_is_a_store_error(unreachable_mongo: None) -> None:
    settings = Settings(appointments_store="mongodb", mongodb_uri="mongodb://127.0.0.1:1")

    with pytest.raises(AppointmentStoreError, match="Connection refused"):
        create_appointment_store(settings)


def test_unreachable_database_returns_503(
    unreachable_mongo: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APPOINTMENTS_STORE", "mongodb")
    monkeypatch.setenv("MONGODB_URI", "mongodb://127.0.0.1:1")
    monkeypatch.setenv("GOOGLE_CALENDAR_REFRESH_TOKEN", "")
    get_settings.cache_clear()
    clear_google_calendar_client_cache()

    response = TestClient(app).get(
        "/api/scheduling/availability",
        params={"start": "2031-03-03T10:00:00-08:00", "duration_minutes": 60},
    )

    get_settings.cache_clear()
    assert response.status_code == 503
    assert response.json()["detail"] == "Scheduling is temporarily unavailable. Please try again in a moment."
