import logging
from datetime import date, datetime, time
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import (
    ACTIVE_STATUS,
    ADMIN_ROLE,
    CLINICAL_TEAM_ROLE,
    FRONT_DESK_ROLE,
    require_roles,
)
from clinic_backend.core import config
from clinic_backend.models.appointment import Appointment
from clinic_backend.models.patient import Patient
from clinic_backend.models.staff import Staff
from clinic_backend.repositories import (
    AppointmentRepository,
    PatientRepository,
    StaffAvailabilityRepository,
    grant_report_access,
)
from clinic_backend.routes.common import database_unavailable, ensure_database_ready, get_db
from clinic_backend.scheduling.conflicts import (
    CANCELLED_STATUS,
    RECURRING_FREQUENCIES,
    find_conflicting_appointments,
    fits_within_availability,
    generate_recurring_dates,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=['appointments'])

SCHEDULING_ROLES = require_roles(ADMIN_ROLE, FRONT_DESK_ROLE, CLINICAL_TEAM_ROLE)

APPOINTMENT_STATUSES = {'pending', 'ongoing', 'completed', CANCELLED_STATUS}
STATUS_TRANSITIONS = {
    'pending': {'ongoing', 'completed', CANCELLED_STATUS},
    'ongoing': {'completed', CANCELLED_STATUS},
    'completed': set(),
    CANCELLED_STATUS: set(),
}
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 240
MAX_APPOINTMENT_NOTES_LENGTH = 600


class CreateAppointmentRequest(BaseModel):
    patient_id: str
    staff_id: int
    date: date
    time: time
    duration_minutes: int = config.DEFAULT_APPOINTMENT_DURATION_MINUTES
    notes: str | None = None

    @field_validator('patient_id')
    @classmethod
    def validate_patient_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient is required.')
        return normalized

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value < MIN_DURATION_MINUTES or value > MAX_DURATION_MINUTES:
            raise ValueError(
                f'Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes.'
            )
        return value

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

        return normalized


class CreateRecurringAppointmentRequest(CreateAppointmentRequest):
    frequency: str
    count: int

    @field_validator('frequency')
    @classmethod
    def validate_frequency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RECURRING_FREQUENCIES:
            raise ValueError('Frequency must be daily, weekly, biweekly or monthly.')
        return normalized

    @field_validator('count')
    @classmethod
    def validate_count(cls, value: int) -> int:
        if value < 1 or value > config.RECURRING_MAX_OCCURRENCES:
            raise ValueError(f'Count must be between 1 and {config.RECURRING_MAX_OCCURRENCES}.')
        return value


class CheckConflictRequest(BaseModel):
    staff_id: int
    date: date
    time: time
    duration_minutes: int = config.DEFAULT_APPOINTMENT_DURATION_MINUTES
    appointment_id: int | None = None


class RescheduleAppointmentRequest(BaseModel):
    date: date
    time: time


class UpdateAppointmentStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError('Invalid appointment status.')
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    appointment_id: str
    patient_id: str
    patient: str
    staff_id: int
    doctor: str
    date: date
    time: time
    duration_minutes: int
    status: str
    notes: str | None = None
    transferred_from: str | None = None
    transferred_at: datetime | None = None

    class Config:
        from_attributes = True


class ConflictingAppointmentResponse(BaseModel):
    id: int
    appointment_id: str
    patient: str
    staff_id: int
    doctor: str
    date: date
    time: time

    class Config:
        from_attributes = True


class CheckConflictResponse(BaseModel):
    has_conflict: bool
    conflicting_appointments: list[ConflictingAppointmentResponse]


class SkippedOccurrenceResponse(BaseModel):
    date: date
    reason: str


class RecurringAppointmentResponse(BaseModel):
    created: list[AppointmentResponse]
    skipped: list[SkippedOccurrenceResponse]


def generate_appointment_id() -> str:
    return f'APT-{uuid4().hex[:8].upper()}'


def get_bookable_staff(db: Session, staff_id: int) -> Staff:
    staff = db.query(Staff).filter(Staff.id == staff_id).first()
    if staff is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Clinician not found.',
        )
    if staff.role != CLINICAL_TEAM_ROLE or staff.status != ACTIVE_STATUS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Appointments can only be booked with active clinical team members.',
        )
    return staff


def get_patient(db: Session, patient_id: str) -> Patient:
    patient = PatientRepository(db).get_by_patient_id(patient_id)
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Patient not found.',
        )
    return patient


def get_appointment_or_404(db: Session, appointment_pk: int) -> Appointment:
    appointment = AppointmentRepository(db).get(appointment_pk)
    if appointment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Appointment not found.',
        )
    return appointment


def validate_booking_slot(
    db: Session,
    staff: Staff,
    slot_date: date,
    slot_time: time,
    duration_minutes: int,
    exclude_id: int | None = None,
) -> None:
    """Raise unless the slot lies inside the clinician's availability and is free."""
    calendar = StaffAvailabilityRepository(db).calendar(staff.id, start=slot_date, end=slot_date)
    if not fits_within_availability(calendar.get(slot_date.isoformat()), slot_time, duration_minutes):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Selected time is outside the clinician\'s availability.',
        )

    existing = AppointmentRepository(db).list(staff_id=staff.id, on_date=slot_date, exclude_status=CANCELLED_STATUS)
    if find_conflicting_appointments(existing, staff.id, slot_date, slot_time, duration_minutes, exclude_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail='This time is already booked.',
        )


def book_appointment(
    db: Session,
    patient: Patient,
    staff: Staff,
    slot_date: date,
    slot_time: time,
    duration_minutes: int,
    notes: str | None,
) -> Appointment:
    validate_booking_slot(db, staff, slot_date, slot_time, duration_minutes)

    appointment = Appointment(
        appointment_id=generate_appointment_id(),
        patient_id=patient.patient_id,
        patient=patient.name,
        staff_id=staff.id,
        doctor=staff.display_name,
        date=slot_date,
        time=slot_time,
        duration_minutes=duration_minutes,
        status='pending',
        notes=notes,
        created_at=datetime.now(),
    )
    db.add(appointment)

    if patient.assigned_staff_id is None:
        patient.assigned_staff_id = staff.id
        patient.assigned_doctor = staff.display_name
    grant_report_access(patient, staff.id)

    return appointment


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    ensure_database_ready()

    try:
        patient = get_patient(db, data.patient_id)
        staff = get_bookable_staff(db, data.staff_id)
        appointment = book_appointment(
            db, patient, staff, data.date, data.time, data.duration_minutes, data.notes
        )

        repository = AppointmentRepository(db)
        repository.commit()
        db.refresh(appointment)
        logger.info('Appointment %s booked by staff %s.', appointment.appointment_id, current_staff.id)

        return appointment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/recurring', response_model=RecurringAppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_recurring_appointments(
    data: CreateRecurringAppointmentRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    ensure_database_ready()

    try:
        patient = get_patient(db, data.patient_id)
        staff = get_bookable_staff(db, data.staff_id)

        created: list[Appointment] = []
        skipped: list[SkippedOccurrenceResponse] = []
        for occurrence in generate_recurring_dates(data.date, data.frequency, data.count):
            try:
                appointment = book_appointment(
                    db, patient, staff, occurrence, data.time, data.duration_minutes, data.notes
                )
            except HTTPException as exc:
                skipped.append(SkippedOccurrenceResponse(date=occurrence, reason=exc.detail))
                continue
            # Later occurrences must see this one when checking for overlaps.
            db.flush()
            created.append(appointment)

        if not created:
            db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='None of the requested dates could be booked.',
            )

        AppointmentRepository(db).commit()
        for appointment in created:
            db.refresh(appointment)
        logger.info(
            '%s recurring appointments booked by staff %s, %s skipped.',
            len(created),
            current_staff.id,
            len(skipped),
        )

        return RecurringAppointmentResponse(
            created=[AppointmentResponse.model_validate(appointment) for appointment in created],
            skipped=skipped,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    staff_id: int | None = Query(default=None),
    patient_id: str | None = Query(default=None),
    on_date: date | None = Query(default=None, alias='date'),
    appointment_status: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    del current_staff
    ensure_database_ready()

    normalized_status = None
    if appointment_status:
        normalized_status = appointment_status.strip().lower()
        if normalized_status not in APPOINTMENT_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Invalid appointment status.',
            )

    try:
        return AppointmentRepository(db).list(
            staff_id=staff_id,
            patient_id=patient_id.strip() if patient_id else None,
            on_date=on_date,
            status=normalized_status,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/check-conflict', response_model=CheckConflictResponse)
def check_conflict(
    data: CheckConflictRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    del current_staff
    ensure_database_ready()

    try:
        existing = AppointmentRepository(db).list(
            staff_id=data.staff_id,
            on_date=data.date,
            exclude_status=CANCELLED_STATUS,
        )
        conflicting = find_conflicting_appointments(
            existing,
            data.staff_id,
            data.date,
            data.time,
            data.duration_minutes,
            exclude_id=data.appointment_id,
        )

        return CheckConflictResponse(
            has_conflict=bool(conflicting),
            conflicting_appointments=[
                ConflictingAppointmentResponse.model_validate(appointment) for appointment in conflicting
            ],
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{appointment_pk}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_pk: int,
    data: RescheduleAppointmentRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    ensure_database_ready()

    try:
        appointment = get_appointment_or_404(db, appointment_pk)
        if appointment.status in {'completed', CANCELLED_STATUS}:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'A {appointment.status} appointment cannot be rescheduled.',
            )

        staff = get_bookable_staff(db, appointment.staff_id)
        new_time = data.time.replace(second=0, microsecond=0)
        validate_booking_slot(
            db,
            staff,
            data.date,
            new_time,
            appointment.duration_minutes or config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
            exclude_id=appointment.id,
        )

        appointment.date = data.date
        appointment.time = new_time
        repository = AppointmentRepository(db)
        repository.commit()
        db.refresh(appointment)
        logger.info('Appointment %s rescheduled by staff %s.', appointment.appointment_id, current_staff.id)

        return appointment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.patch('/{appointment_pk}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_pk: int,
    data: UpdateAppointmentStatusRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(SCHEDULING_ROLES),
):
    ensure_database_ready()

    try:
        appointment = get_appointment_or_404(db, appointment_pk)
        current_status = appointment.status or 'pending'

        if data.status != current_status and data.status not in STATUS_TRANSITIONS.get(current_status, set()):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f'Cannot change appointment status from {current_status} to {data.status}.',
            )

        appointment.status = data.status
        repository = AppointmentRepository(db)
        repository.commit()
        db.refresh(appointment)
        logger.info(
            'Appointment %s set to %s by staff %s.', appointment.appointment_id, data.status, current_staff.id
        )

        return appointment
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
