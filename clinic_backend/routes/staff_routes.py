import logging
from calendar import monthrange
from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import (
    ACTIVE_STATUS,
    ADMIN_ROLE,
    CLINICAL_TEAM_ROLE,
    STAFF_ROLES,
    get_current_staff,
    require_roles,
)
from clinic_backend.auth.passwords import hash_password
from clinic_backend.core import config
from clinic_backend.models.staff import Staff
from clinic_backend.repositories import AppointmentRepository, StaffAvailabilityRepository
from clinic_backend.routes.common import database_unavailable, ensure_database_ready, get_db
from clinic_backend.scheduling.conflicts import (
    CANCELLED_STATUS,
    available_slot_times,
    fits_within_availability,
    minutes_to_time,
    time_to_minutes,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=['staff'])

STAFF_STATUSES = {'active', 'inactive'}
MIN_PASSWORD_LENGTH = 8
APPOINTMENTS_ASSIGNED_DETAIL = (
    'Cannot modify availability for time slots that have appointments assigned. '
    'Please transfer or cancel appointments first.'
)


class CreateStaffRequest(BaseModel):
    email: str
    display_name: str
    password: str
    role: str

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if '@' not in normalized:
            raise ValueError('A valid email is required.')
        return normalized

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Display name is required.')
        return normalized

    @field_validator('password')
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
        return value

    @field_validator('role')
    @classmethod
    def validate_role(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in STAFF_ROLES:
            raise ValueError('Invalid staff role.')
        return normalized


class StaffResponse(BaseModel):
    id: int
    email: str
    display_name: str
    role: str
    status: str

    class Config:
        from_attributes = True


class TimeRange(BaseModel):
    start: str
    end: str

    @field_validator('start', 'end')
    @classmethod
    def normalize_time(cls, value: str) -> str:
        minutes = time_to_minutes(value)
        if minutes is None:
            raise ValueError('Times must use the HH:MM format.')
        return minutes_to_time(minutes)

    @model_validator(mode='after')
    def validate_order(self) -> 'TimeRange':
        if time_to_minutes(self.start) >= time_to_minutes(self.end):
            raise ValueError('A time range must end after it starts.')
        return self


class DaySchedule(BaseModel):
    enabled: bool = True
    slots: list[TimeRange] = []

    @model_validator(mode='after')
    def validate_slots(self) -> 'DaySchedule':
        if self.enabled and not self.slots:
            raise ValueError('An enabled day needs at least one time range.')
        self.slots = sorted(self.slots, key=lambda slot: time_to_minutes(slot.start))
        return self

    def as_calendar_entry(self) -> dict:
        return {'enabled': self.enabled, 'slots': [slot.model_dump() for slot in self.slots]}


class CalendarDayResponse(BaseModel):
    enabled: bool
    slots: list[dict[str, str]]


class DayScheduleResponse(BaseModel):
    date: date
    enabled: bool
    slots: list[TimeRange]


class CopyScheduleResponse(BaseModel):
    source_date: date
    copied_dates: list[date]
    skipped_dates: list[date]


class AvailableSlotsResponse(BaseModel):
    staff_id: int
    date: date
    times: list[str]


def _get_staff_or_404(db: Session, staff_id: int) -> Staff:
    staff = db.query(Staff).filter(Staff.id == staff_id).first()
    if staff is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Staff member not found.',
        )
    return staff


def _ensure_calendar_editor(current_staff: Staff, staff_id: int) -> None:
    if current_staff.id != staff_id and current_staff.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only the staff member or an admin can edit this availability.',
        )


def _parse_month(month: str) -> tuple[date, date]:
    try:
        first_day = datetime.strptime(month, '%Y-%m').date()
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Month must use the YYYY-MM format.',
        ) from exc
    last_day = first_day.replace(day=monthrange(first_day.year, first_day.month)[1])
    return first_day, last_day


def schedule_covers_appointments(schedule: dict, appointments: list) -> bool:
    return all(
        fits_within_availability(
            schedule,
            appointment.time,
            appointment.duration_minutes or config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
        )
        for appointment in appointments
    )


@router.post('', response_model=StaffResponse, status_code=status.HTTP_201_CREATED)
def create_staff(
    data: CreateStaffRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(require_roles(ADMIN_ROLE)),
):
    ensure_database_ready()

    try:
        if db.query(Staff).filter(Staff.email == data.email).first():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail='A staff member with this email already exists.',
            )

        staff = Staff(
            email=data.email,
            display_name=data.display_name,
            hashed_password=hash_password(data.password),
            role=data.role,
            status=ACTIVE_STATUS,
        )
        db.add(staff)
        db.commit()
        db.refresh(staff)
        logger.info('Staff member %s created by %s.', staff.id, current_staff.id)

        return staff
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[StaffResponse])
def list_staff(
    role: str | None = Query(default=None),
    staff_status: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        query = db.query(Staff)
        if role:
            query = query.filter(Staff.role == role.strip().lower())
        if staff_status:
            normalized_status = staff_status.strip().lower()
            if normalized_status not in STAFF_STATUSES:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='Invalid staff status.',
                )
            query = query.filter(Staff.status == normalized_status)

        return query.order_by(Staff.display_name.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{staff_id}/availability', response_model=dict[str, CalendarDayResponse])
def get_availability(
    staff_id: int,
    month: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    start, end = _parse_month(month) if month else (None, None)

    try:
        _get_staff_or_404(db, staff_id)
        return StaffAvailabilityRepository(db).calendar(staff_id, start=start, end=end)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.put('/{staff_id}/availability/{day}', response_model=DayScheduleResponse)
def save_day_schedule(
    staff_id: int,
    day: date,
    data: DaySchedule,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    _ensure_calendar_editor(current_staff, staff_id)
    ensure_database_ready()

    try:
        staff = _get_staff_or_404(db, staff_id)
        booked = AppointmentRepository(db).list(staff_id=staff_id, on_date=day, exclude_status=CANCELLED_STATUS)
        entry = data.as_calendar_entry()

        if not schedule_covers_appointments(entry, booked):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=APPOINTMENTS_ASSIGNED_DETAIL,
            )

        repository = StaffAvailabilityRepository(db)
        repository.put_day(staff_id, day, entry['enabled'], entry['slots'])
        staff.availability_updated_at = datetime.now()
        repository.commit()

        return DayScheduleResponse(date=day, enabled=data.enabled, slots=data.slots)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{staff_id}/availability/{day}', status_code=status.HTTP_204_NO_CONTENT)
def remove_day_schedule(
    staff_id: int,
    day: date,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    _ensure_calendar_editor(current_staff, staff_id)
    ensure_database_ready()

    try:
        staff = _get_staff_or_404(db, staff_id)
        repository = StaffAvailabilityRepository(db)
        row = repository.get_day(staff_id, day)
        if row is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='No schedule saved for this date.',
            )

        if AppointmentRepository(db).list(staff_id=staff_id, on_date=day, exclude_status=CANCELLED_STATUS):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    'Cannot remove schedule for this date because it has appointments assigned. '
                    'Please transfer or cancel appointments first.'
                ),
            )

        repository.remove_day(row)
        staff.availability_updated_at = datetime.now()
        repository.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{staff_id}/availability/{day}/copy-to-month', response_model=CopyScheduleResponse)
def copy_day_to_month(
    staff_id: int,
    day: date,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    _ensure_calendar_editor(current_staff, staff_id)
    ensure_database_ready()

    try:
        staff = _get_staff_or_404(db, staff_id)
        repository = StaffAvailabilityRepository(db)
        source = repository.get_day(staff_id, day)
        if source is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='No schedule saved for this date.',
            )

        entry = {'enabled': bool(source.enabled), 'slots': [dict(slot) for slot in source.slots or []]}
        appointment_repository = AppointmentRepository(db)
        copied: list[date] = []
        skipped: list[date] = []

        current_day = day.replace(day=1)
        while current_day.month == day.month:
            if current_day != day:
                booked = appointment_repository.list(
                    staff_id=staff_id,
                    on_date=current_day,
                    exclude_status=CANCELLED_STATUS,
                )
                if schedule_covers_appointments(entry, booked):
                    repository.put_day(staff_id, current_day, entry['enabled'], entry['slots'])
                    copied.append(current_day)
                else:
                    skipped.append(current_day)
            current_day += timedelta(days=1)

        staff.availability_updated_at = datetime.now()
        repository.commit()

        return CopyScheduleResponse(source_date=day, copied_dates=copied, skipped_dates=skipped)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/{staff_id}/available-slots', response_model=AvailableSlotsResponse)
def list_available_slots(
    staff_id: int,
    day: date = Query(..., alias='date'),
    duration_minutes: int = Query(default=config.DEFAULT_APPOINTMENT_DURATION_MINUTES, ge=15, le=240),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        staff = _get_staff_or_404(db, staff_id)
        if staff.role != CLINICAL_TEAM_ROLE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Only clinical team members have bookable availability.',
            )

        schedule = StaffAvailabilityRepository(db).calendar(staff_id, start=day, end=day).get(day.isoformat())
        booked = AppointmentRepository(db).list(staff_id=staff_id, on_date=day, exclude_status=CANCELLED_STATUS)
        times = available_slot_times(
            schedule,
            [(appointment.time, appointment.duration_minutes) for appointment in booked],
            config.SLOT_INTERVAL_MINUTES,
            duration_minutes,
        )

        return AvailableSlotsResponse(
            staff_id=staff_id,
            date=day,
            # Booking requires the whole appointment to fit inside a range.
            times=[slot_time for slot_time in times if fits_within_availability(schedule, slot_time, duration_minutes)],
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
