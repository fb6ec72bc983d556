"""Repositories over the SQLAlchemy session.

Each repository exposes ``list(**filters)`` and ``subscribe(listener, **filters)``.
Subscriptions are process-local: a listener receives the current result of its
``list(**filters)`` when it subscribes and again after every write committed
through a repository of the same kind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date
from threading import Lock
from typing import Any

from sqlalchemy.orm import Session

from clinic_backend.models.appointment import Appointment
from clinic_backend.models.availability import StaffAvailability
from clinic_backend.models.patient import Patient

logger = logging.getLogger(__name__)

Listener = Callable[[list], None]


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: dict[int, tuple[Listener, dict[str, Any]]] = {}
        self._next_token = 0

    def subscribe(self, listener: Listener, filters: dict[str, Any]) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = (listener, filters)

        def unsubscribe() -> None:
            with self._lock:
                self._subscriptions.pop(token, None)

        return unsubscribe

    def publish(self, repository: '_Repository') -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        for listener, filters in subscriptions:
            try:
                listener(repository.list(**filters))
            except Exception:
                logger.exception('Subscription listener failed for %s.', type(repository).__name__)

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()


class _Repository:
    feed: ChangeFeed

    def __init__(self, db: Session) -> None:
        self.db = db

    def list(self, **filters: Any) -> list:
        raise NotImplementedError

    def subscribe(self, listener: Listener, **filters: Any) -> Callable[[], None]:
        unsubscribe = self.feed.subscribe(listener, filters)
        listener(self.list(**filters))
        return unsubscribe

    def commit(self) -> None:
        self.db.commit()
        self.feed.publish(self)


class AppointmentRepository(_Repository):
    feed = ChangeFeed()

    def list(
        self,
        staff_id: int | None = None,
        patient_id: str | None = None,
        on_date: date | None = None,
        status: str | None = None,
        exclude_status: str | None = None,
    ) -> list[Appointment]:
        query = self.db.query(Appointment)
        if staff_id is not None:
            query = query.filter(Appointment.staff_id == staff_id)
        if patient_id is not None:
            query = query.filter(Appointment.patient_id == patient_id)
        if on_date is not None:
            query = query.filter(Appointment.date == on_date)
        if status is not None:
            query = query.filter(Appointment.status == status)
        if exclude_status is not None:
            query = query.filter(Appointment.status != exclude_status)
        return query.order_by(Appointment.date.asc(), Appointment.time.asc(), Appointment.id.asc()).all()

    def get(self, appointment_pk: int) -> Appointment | None:
        return self.db.query(Appointment).filter(Appointment.id == appointment_pk).first()

    def get_many(self, appointment_pks: list[int]) -> list[Appointment]:
        if not appointment_pks:
            return []
        rows = self.db.query(Appointment).filter(Appointment.id.in_(appointment_pks)).all()
        by_pk = {row.id: row for row in rows}
        return [by_pk[pk] for pk in appointment_pks if pk in by_pk]

    def add(self, appointment: Appointment) -> Appointment:
        self.db.add(appointment)
        self.commit()
        self.db.refresh(appointment)
        return appointment


class StaffAvailabilityRepository(_Repository):
    feed = ChangeFeed()

    def list(
        self,
        staff_id: int | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[StaffAvailability]:
        query = self.db.query(StaffAvailability)
        if staff_id is not None:
            query = query.filter(StaffAvailability.staff_id == staff_id)
        if start is not None:
            query = query.filter(StaffAvailability.date >= start)
        if end is not None:
            query = query.filter(StaffAvailability.date <= end)
        return query.order_by(StaffAvailability.date.asc()).all()

    def calendar(self, staff_id: int, start: date | None = None, end: date | None = None) -> dict[str, dict]:
        return {
            row.date.isoformat(): {
                'enabled': bool(row.enabled),
                'slots': [dict(slot) for slot in row.slots or []],
            }
            for row in self.list(staff_id=staff_id, start=start, end=end)
        }

    def get_day(self, staff_id: int, day: date) -> StaffAvailability | None:
        return self.db.query(StaffAvailability).filter(
            StaffAvailability.staff_id == staff_id,
            StaffAvailability.date == day,
        ).first()

    def put_day(self, staff_id: int, day: date, enabled: bool, slots: list[dict]) -> StaffAvailability:
        row = self.get_day(staff_id, day)
        if row is None:
            row = StaffAvailability(staff_id=staff_id, date=day)
            self.db.add(row)
        row.enabled = enabled
        row.slots = [dict(slot) for slot in slots]
        return row

    def remove_day(self, row: StaffAvailability) -> None:
        self.db.delete(row)

    def replace_calendar(self, staff_id: int, calendar: dict[str, dict]) -> None:
        current = self.calendar(staff_id)
        for key, schedule in calendar.items():
            if current.get(key) != schedule:
                self.put_day(staff_id, date.fromisoformat(key), schedule['enabled'], schedule['slots'])


class PatientRepository(_Repository):
    feed = ChangeFeed()

    def list(self, staff_id: int | None = None, status: str | None = None) -> list[Patient]:
        query = self.db.query(Patient)
        if status is not None:
            query = query.filter(Patient.status == status)
        patients = query.order_by(Patient.name.asc(), Patient.id.asc()).all()
        if staff_id is None:
            return patients
        return [
            patient
            for patient in patients
            if patient.assigned_staff_id == staff_id or staff_id in (patient.report_access_staff_ids or [])
        ]

    def get_by_patient_id(self, patient_id: str) -> Patient | None:
        return self.db.query(Patient).filter(Patient.patient_id == patient_id).first()

    def add(self, patient: Patient) -> Patient:
        self.db.add(patient)
        self.commit()
        self.db.refresh(patient)
        return patient


def grant_report_access(patient: Patient, *staff_ids: int | None) -> bool:
    """Add staff ids to the patient's report access; True when anything changed."""
    access = list(patient.report_access_staff_ids or [])
    changed = False
    for staff_id in staff_ids:
        if staff_id is not None and staff_id not in access:
            access.append(staff_id)
            changed = True
    if changed:
        # Reassign so the JSON column is flagged dirty.
        patient.report_access_staff_ids = access
    return changed
