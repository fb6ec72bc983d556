"""Moving appointments, and the patient report access that follows them, to another therapist.

The write sequence touches three tables. Appointments are updated in a single
commit after a fresh conflict check; patient report access and the target
therapist's availability are then updated best-effort, and any failure there
is reported back in ``TransferResult`` rather than undoing the move.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import ACTIVE_STATUS, CLINICAL_TEAM_ROLE
from clinic_backend.core import config
from clinic_backend.models.appointment import Appointment
from clinic_backend.models.staff import Staff
from clinic_backend.repositories import (
    AppointmentRepository,
    PatientRepository,
    StaffAvailabilityRepository,
    grant_report_access,
)
from clinic_backend.scheduling.conflicts import (
    CANCELLED_STATUS,
    ConflictKind,
    TransferConflict,
    available_slot_times,
    check_transfer_conflicts,
    date_key,
    merge_transfer_slots,
)

logger = logging.getLogger(__name__)

NON_TRANSFERABLE_STATUSES = {CANCELLED_STATUS, 'completed'}


class TransferError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransferRequestError(TransferError):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransferConflictError(TransferError):
    status_code = 409

    def __init__(self, message: str, conflicts: list[TransferConflict]) -> None:
        super().__init__(message)
        self.conflicts = conflicts


class SlotModification(BaseModel):
    date: date
    time: time


class SlotSuggestion(BaseModel):
    appointment_id: str
    date: str
    available_times: list[str]


class TransferPlan(BaseModel):
    target_staff_id: int
    target_staff_name: str
    has_conflicts: bool
    needs_slot_modification: bool
    conflicts: list[TransferConflict]
    suggestions: list[SlotSuggestion]


class TransferResult(BaseModel):
    target_staff_id: int
    target_staff_name: str
    transferred_appointment_ids: list[str]
    modified_appointment_ids: list[str]
    warnings: list[TransferConflict]
    patient_access_updated: list[str]
    patient_access_failed: list[str]
    availability_updated: bool


@dataclass
class _Candidate:
    id: int
    appointment_id: str
    staff_id: int
    date: Any
    time: Any
    duration_minutes: int
    status: str


def _candidate(appointment: Appointment, modification: SlotModification | None = None) -> _Candidate:
    return _Candidate(
        id=appointment.id,
        appointment_id=appointment.appointment_id or str(appointment.id),
        staff_id=appointment.staff_id,
        date=modification.date if modification else appointment.date,
        time=modification.time if modification else appointment.time,
        duration_minutes=appointment.duration_minutes or config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
        status=appointment.status,
    )


def _load_target(db: Session, target_staff_id: int) -> Staff:
    target = db.query(Staff).filter(Staff.id == target_staff_id).first()
    if target is None:
        raise TransferRequestError('Target therapist not found.', status_code=404)
    if target.status != ACTIVE_STATUS or target.role != CLINICAL_TEAM_ROLE:
        raise TransferRequestError('Target therapist is not an active clinical team member.')
    return target


def _load_selection(db: Session, appointment_ids: list[int], target: Staff) -> list[Appointment]:
    unique_ids = list(dict.fromkeys(appointment_ids))
    if not unique_ids:
        raise TransferRequestError('Select at least one appointment to transfer.')

    selection = AppointmentRepository(db).get_many(unique_ids)
    found = {appointment.id for appointment in selection}
    missing = [str(appointment_id) for appointment_id in unique_ids if appointment_id not in found]
    if missing:
        raise TransferRequestError(f'Appointments not found: {", ".join(missing)}.', status_code=404)

    for appointment in selection:
        if appointment.status in NON_TRANSFERABLE_STATUSES:
            raise TransferRequestError(
                f'Appointment {appointment.appointment_id} is {appointment.status} and cannot be transferred.'
            )
        if appointment.staff_id == target.id:
            raise TransferRequestError(
                f'Appointment {appointment.appointment_id} is already assigned to {target.display_name}.'
            )

    return selection


def _target_snapshot(db: Session, target: Staff) -> tuple[dict[str, dict], list[Appointment]]:
    availability = StaffAvailabilityRepository(db).calendar(target.id)
    existing = AppointmentRepository(db).list(staff_id=target.id, exclude_status=CANCELLED_STATUS)
    return availability, existing


def plan_transfer(db: Session, appointment_ids: list[int], target_staff_id: int) -> TransferPlan:
    target = _load_target(db, target_staff_id)
    selection = _load_selection(db, appointment_ids, target)
    availability, existing = _target_snapshot(db, target)

    candidates = [_candidate(appointment) for appointment in selection]
    report = check_transfer_conflicts(candidates, target.id, availability, existing)

    conflicted = {conflict.appointment_id for conflict in report.conflicts}
    by_appointment_id = {candidate.appointment_id: candidate for candidate in candidates}
    suggestions = []
    for conflict in report.conflicts:
        if not conflict.needs_new_slot:
            continue
        booked = [
            (appointment.time, appointment.duration_minutes)
            for appointment in existing
            if date_key(appointment.date) == conflict.date
        ] + [
            (candidate.time, candidate.duration_minutes)
            for candidate in candidates
            if candidate.appointment_id not in conflicted and date_key(candidate.date) == conflict.date
        ]
        suggestions.append(
            SlotSuggestion(
                appointment_id=conflict.appointment_id,
                date=conflict.date,
                available_times=available_slot_times(
                    availability.get(conflict.date),
                    booked,
                    config.SLOT_INTERVAL_MINUTES,
                    by_appointment_id[conflict.appointment_id].duration_minutes,
                ),
            )
        )

    return TransferPlan(
        target_staff_id=target.id,
        target_staff_name=target.display_name or target.email,
        has_conflicts=report.has_conflicts,
        needs_slot_modification=any(conflict.needs_new_slot for conflict in report.conflicts),
        conflicts=report.conflicts,
        suggestions=suggestions,
    )


def execute_transfer(
    db: Session,
    appointment_ids: list[int],
    target_staff_id: int,
    slot_modifications: dict[int, SlotModification] | None = None,
    accept_warnings: bool = False,
) -> TransferResult:
    slot_modifications = slot_modifications or {}
    target = _load_target(db, target_staff_id)
    selection = _load_selection(db, appointment_ids, target)

    selected_ids = {appointment.id for appointment in selection}
    unknown = [str(appointment_id) for appointment_id in slot_modifications if appointment_id not in selected_ids]
    if unknown:
        raise TransferRequestError(f'Slot changes refer to unselected appointments: {", ".join(unknown)}.')

    availability, existing = _target_snapshot(db, target)
    candidates = [_candidate(appointment, slot_modifications.get(appointment.id)) for appointment in selection]
    report = check_transfer_conflicts(candidates, target.id, availability, existing)

    blocking = [conflict for conflict in report.conflicts if conflict.needs_new_slot]
    if blocking:
        raise TransferConflictError('Select a new time slot for the conflicting appointments.', blocking)

    warnings = [conflict for conflict in report.conflicts if conflict.kind == ConflictKind.NO_AVAILABILITY]
    if warnings and not accept_warnings:
        raise TransferConflictError(
            'Therapist has no availability on some of these dates. Confirm to transfer anyway.',
            warnings,
        )

    now = datetime.now()
    previous_staff = {appointment.id: appointment.staff_id for appointment in selection}
    appointment_repository = AppointmentRepository(db)
    modified_ids = []

    for appointment, candidate in zip(selection, candidates):
        appointment.transferred_from_staff_id = appointment.staff_id
        appointment.transferred_from = appointment.doctor
        appointment.transferred_at = now
        appointment.staff_id = target.id
        appointment.doctor = target.display_name or target.email
        if appointment.id in slot_modifications:
            appointment.date = candidate.date
            appointment.time = candidate.time
            modified_ids.append(candidate.appointment_id)
    appointment_repository.commit()

    patient_repository = PatientRepository(db)
    by_patient: dict[str, list[Appointment]] = {}
    for appointment in selection:
        by_patient.setdefault(appointment.patient_id, []).append(appointment)

    access_updated = []
    access_failed = []
    for patient_id, transferred in by_patient.items():
        try:
            patient = patient_repository.get_by_patient_id(patient_id)
            if patient is None:
                logger.warning('Patient %s not found while granting report access.', patient_id)
                access_failed.append(patient_id)
                continue
            original_staff_id = patient.assigned_staff_id or previous_staff[transferred[0].id]
            grant_report_access(patient, original_staff_id, target.id)
            patient.transferred_at = now
            patient_repository.commit()
            access_updated.append(patient_id)
        except SQLAlchemyError:
            db.rollback()
            logger.warning('Failed to update report access for patient %s.', patient_id, exc_info=True)
            access_failed.append(patient_id)

    availability_updated = True
    try:
        merged = merge_transfer_slots(
            availability,
            [(candidate.date, candidate.time) for candidate in candidates],
            config.SLOT_INTERVAL_MINUTES,
        )
        availability_repository = StaffAvailabilityRepository(db)
        availability_repository.replace_calendar(target.id, merged)
        target.availability_updated_at = now
        availability_repository.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning('Failed to update availability for staff %s.', target.id, exc_info=True)
        availability_updated = False

    logger.info(
        'Transferred %d appointment(s) to staff %s (%d rescheduled).',
        len(selection),
        target.id,
        len(modified_ids),
    )

    return TransferResult(
        target_staff_id=target.id,
        target_staff_name=target.display_name or target.email,
        transferred_appointment_ids=[candidate.appointment_id for candidate in candidates],
        modified_appointment_ids=modified_ids,
        warnings=warnings,
        patient_access_updated=access_updated,
        patient_access_failed=access_failed,
        availability_updated=availability_updated,
    )
