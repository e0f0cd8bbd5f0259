from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any
from uuid import uuid4

from app.core.config import Settings
from app.services.appointment_models import (
    OCCUPYING_STATUSES,
    AppointmentDraft,
    AppointmentRecord,
    build_appointment_record,
)
from app.services.time_intervals import TimeInterval

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {
        "scheduled_at",
        "end_time",
        "duration",
        "status",
        "notes",
        "cancelled_at",
        "cancel_reason",
    },
)


class AppointmentStoreError(Exception):
    pass


class AppointmentStore(ABC):
    @abstractmethod
    def find_occupying(self, interval: TimeInterval) -> list[AppointmentRecord]:
        """Return occupying appointments whose own interval overlaps ``interval``."""
        raise NotImplementedError

    @abstractmethod
    def insert(self, draft: AppointmentDraft, interval: TimeInterval) -> AppointmentRecord:
        raise NotImplementedError

    @abstractmethod
    def get_by_id(self, appointment_id: str) -> AppointmentRecord | None:
        raise NotImplementedError

    @abstractmethod
    def update(self, appointment_id: str, changes: Mapping[str, Any]) -> AppointmentRecord | None:
        raise NotImplementedError

    @abstractmethod
    def serialized_write(self, interval: TimeInterval) -> Any:
        """Context manager that excludes every other writer touching ``interval``.

        Callers re-check availability and write inside it; two writers whose
        intervals overlap never hold it at the same time.
        """
        raise NotImplementedError


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self) -> None:
        self._next_id = 1
        self._records: dict[str, AppointmentRecord] = {}
        self._records_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def find_occupying(self, interval: TimeInterval) -> list[AppointmentRecord]:
        with self._records_lock:
            matches = [
                _copy_record(record)
                for record in self._records.values()
                if record.status in OCCUPYING_STATUSES
                and record.scheduled_at < interval.end
                and record.end_time > interval.start
            ]
        return sorted(matches, key=lambda record: record.scheduled_at)

    def insert(self, draft: AppointmentDraft, interval: TimeInterval) -> AppointmentRecord:
        with self._records_lock:
            record_id = f"memory-appointment-{self._next_id}"
            self._next_id += 1
            record = build_appointment_record(record_id=record_id, draft=draft, interval=interval)
            self._records[record_id] = record
            return _copy_record(record)

    def get_by_id(self, appointment_id: str) -> AppointmentRecord | None:
        with self._records_lock:
            record = self._records.get(appointment_id)
            if not record:
                return None
            return _copy_record(record)

    def update(self, appointment_id: str, changes: Mapping[str, Any]) -> AppointmentRecord | None:
        updates = _validate_changes(changes)
        with self._records_lock:
            record = self._records.get(appointment_id)
            if not record:
                return None
            updated = replace(record, **updates)
            self._records[appointment_id] = updated
            return _copy_record(updated)

    @contextmanager
    def serialized_write(self, interval: TimeInterval) -> Iterator[None]:
        with self._write_lock:
            yield


class MongoAppointmentStore(AppointmentStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        locks_collection_name: str,
        connect_timeout_ms: int = 2000,
        lock_timeout_seconds: float = 5.0,
        lock_lease_seconds: float = 30.0,
    ) -> None:
        from pymongo import ASCENDING, MongoClient
        from pymongo.errors import PyMongoError

        self._lock_timeout_seconds = lock_timeout_seconds
        self._lock_lease_seconds = lock_lease_seconds
        try:
            self._client = MongoClient(
                uri,
                serverSelectionTimeoutMS=connect_timeout_ms,
                connectTimeoutMS=connect_timeout_ms,
                tz_aware=True,
            )
            database = self._client[db_name]
            self._collection = database[collection_name]
            self._locks = database[locks_collection_name]

            self._collection.create_index([("scheduled_at", ASCENDING)])
            self._collection.create_index([("status", ASCENDING), ("scheduled_at", ASCENDING)])
            self._locks.create_index("expires_at", expireAfterSeconds=0)
        except PyMongoError as exc:
            raise AppointmentStoreError(f"Unable to connect to the appointments database: {exc}") from exc

    def find_occupying(self, interval: TimeInterval) -> list[AppointmentRecord]:
        from pymongo import ASCENDING
        from pymongo.errors import PyMongoError

        query = {
            "status": {"$in": sorted(status.value for status in OCCUPYING_STATUSES)},
            "scheduled_at": {"$lt": interval.end},
            "end_time": {"$gt": interval.start},
        }
        try:
            cursor = self._collection.find(query).sort("scheduled_at", ASCENDING)
            return [AppointmentRecord.from_document(document) for document in cursor]
        except PyMongoError as exc:
            raise AppointmentStoreError(f"Unable to read appointments: {exc}") from exc

    def insert(self, draft: AppointmentDraft, interval: TimeInterval) -> AppointmentRecord:
        from pymongo.errors import PyMongoError

        record = build_appointment_record(record_id="", draft=draft, interval=interval)
        try:
            insert_result = self._collection.insert_one(record.to_document())
        except PyMongoError as exc:
            raise AppointmentStoreError(f"Unable to insert appointment: {exc}") from exc
        return replace(record, id=str(insert_result.inserted_id))

    def get_by_id(self, appointment_id: str) -> AppointmentRecord | None:
        from bson import ObjectId
        from bson.errors import InvalidId
        from pymongo.errors import PyMongoError

        try:
            object_id = ObjectId(appointment_id)
        except InvalidId:
            return None
        try:
            document = self._collection.find_one({"_id": object_id})
        except PyMongoError as exc:
            raise AppointmentStoreError(f"Unable to read appointment: {exc}") from exc
        if not document:
            return None
        return AppointmentRecord.from_document(document)

    def update(self, appointment_id: str, changes: Mapping[str, Any]) -> AppointmentRecord | None:
        from bson import ObjectId
        from bson.errors import InvalidId
        from pymongo import ReturnDocument
        from pymongo.errors import PyMongoError

        updates = _validate_changes(changes)
        if "status" in updates:
            updates["status"] = updates["status"].value
        try:
            object_id = ObjectId(appointment_id)
        except InvalidId:
            return None
        try:
            document = self._collection.find_one_and_update(
                {"_id": object_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise AppointmentStoreError(f"Unable to update appointment: {exc}") from exc
        if not document:
            return None
        return AppointmentRecord.from_document(document)

    @contextmanager
    def serialized_write(self, interval: TimeInterval) -> Iterator[None]:
        # Overlapping intervals always share at least one UTC calendar date,
        # so one lock document per touched date serializes every conflicting pair.
        owner = uuid4().hex
        acquired: list[str] = []
        try:
            for lock_key in _lock_keys_for(interval):
                self._acquire_lock(lock_key, owner)
                acquired.append(lock_key)
            yield
        finally:
            for lock_key in reversed(acquired):
                self._release_lock(lock_key, owner)

    def _acquire_lock(self, lock_key: str, owner: str) -> None:
        from pymongo.errors import DuplicateKeyError, PyMongoError

        deadline = time.monotonic() + self._lock_timeout_seconds
        while True:
            now = datetime.now(UTC)
            try:
                self._locks.insert_one(
                    {
                        "_id": lock_key,
                        "owner": owner,
                        "acquired_at": now,
                        "expires_at": now + timedelta(seconds=self._lock_lease_seconds),
                    },
                )
                return
            except DuplicateKeyError:
                # A crashed writer leaves its lock behind until the lease expires.
                try:
                    self._locks.delete_one({"_id": lock_key, "expires_at": {"$lt": now}})
                except PyMongoError as exc:
                    raise AppointmentStoreError(f"Unable to clear stale booking lock: {exc}") from exc
            except PyMongoError as exc:
                raise AppointmentStoreError(f"Unable to acquire booking lock: {exc}") from exc

            if time.monotonic() >= deadline:
                raise AppointmentStoreError(f"Timed out waiting for booking lock {lock_key}.")
            time.sleep(0.05)

    def _release_lock(self, lock_key: str, owner: str) -> None:
        from pymongo.errors import PyMongoError

        try:
            self._locks.delete_one({"_id": lock_key, "owner": owner})
        except PyMongoError:
            logger.exception("Booking lock release failed lock_key=%s", lock_key)


def _copy_record(record: AppointmentRecord) -> AppointmentRecord:
    return replace(record, services=list(record.services))


def _lock_keys_for(interval: TimeInterval) -> list[str]:
    first_day = interval.start.astimezone(UTC).date()
    last_day = interval.end.astimezone(UTC).date()
    keys: list[str] = []
    current = first_day
    while current <= last_day:
        keys.append(f"booking-day-{current.isoformat()}")
        current += timedelta(days=1)
    return keys


def _validate_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown_fields = set(changes) - _UPDATABLE_FIELDS
    if unknown_fields:
        raise ValueError(f"Unsupported appointment fields: {', '.join(sorted(unknown_fields))}")
    return dict(changes)


def create_appointment_store(settings: Settings) -> AppointmentStore:
    return _create_appointment_store_cached(
        store_name=settings.appointments_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_appointments_collection,
        mongodb_locks_collection_name=settings.mongodb_booking_locks_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
        lock_timeout_seconds=settings.booking_lock_timeout_seconds,
    )


@lru_cache
def _create_appointment_store_cached(
    *,
    store_name: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_locks_collection_name: str,
    mongodb_connect_timeout_ms: int,
    lock_timeout_seconds: float,
) -> AppointmentStore:
    if store_name == "memory":
        return InMemoryAppointmentStore()

    if store_name == "mongodb":
        return MongoAppointmentStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            locks_collection_name=mongodb_locks_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
            lock_timeout_seconds=lock_timeout_seconds,
        )

    logger.warning("Unknown appointments store %r, falling back to memory", store_name)
    return InMemoryAppointmentStore()


def clear_appointment_store_cache() -> None:
    _create_appointment_store_cached.cache_clear()
