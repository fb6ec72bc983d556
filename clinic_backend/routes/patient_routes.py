import logging
from datetime import datetime
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
    get_current_staff,
    require_roles,
)
from clinic_backend.models.patient import Patient
from clinic_backend.models.staff import Staff
from clinic_backend.repositories import PatientRepository, grant_report_access
from clinic_backend.routes.common import database_unavailable, ensure_database_ready, get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=['patients'])

PATIENT_STATUSES = {'pending', 'ongoing', 'completed'}
MAX_ADDRESS_LENGTH = 300


class CreatePatientRequest(BaseModel):
    name: str
    dob: str | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    assigned_staff_id: int | None = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        normalized = ' '.join(value.split())
        if not normalized:
            raise ValueError('Patient name is required.')
        return normalized

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip().lower()
        if '@' not in normalized:
            raise ValueError('Invalid patient email.')
        return normalized

    @field_validator('address')
    @classmethod
    def validate_address(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip()
        if len(normalized) > MAX_ADDRESS_LENGTH:
            raise ValueError(f'Address must be {MAX_ADDRESS_LENGTH} characters or fewer.')
        return normalized


class PatientResponse(BaseModel):
    id: int
    patient_id: str
    name: str
    dob: str | None = None
    gender: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    status: str
    assigned_staff_id: int | None = None
    assigned_doctor: str | None = None
    report_access_staff_ids: list[int] = []
    registered_at: datetime | None = None
    transferred_at: datetime | None = None

    class Config:
        from_attributes = True

    @field_validator('report_access_staff_ids', mode='before')
    @classmethod
    def default_report_access(cls, value: list[int] | None) -> list[int]:
        return value or []


class ReportAccessResponse(BaseModel):
    patient_id: str
    staff_id: int
    has_access: bool


def generate_patient_id() -> str:
    return f'PAT-{uuid4().hex[:8].upper()}'


def can_access_reports(patient: Patient, staff: Staff) -> bool:
    if staff.role == ADMIN_ROLE:
        return True
    return staff.id == patient.assigned_staff_id or staff.id in (patient.report_access_staff_ids or [])


def get_patient_or_404(db: Session, patient_id: str) -> Patient:
    patient = PatientRepository(db).get_by_patient_id(patient_id.strip())
    if patient is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Patient not found.',
        )
    return patient


@router.post('', response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
def register_patient(
    data: CreatePatientRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(require_roles(ADMIN_ROLE, FRONT_DESK_ROLE)),
):
    ensure_database_ready()

    try:
        assigned_staff = None
        if data.assigned_staff_id is not None:
            assigned_staff = db.query(Staff).filter(Staff.id == data.assigned_staff_id).first()
            if (
                assigned_staff is None
                or assigned_staff.role != CLINICAL_TEAM_ROLE
                or assigned_staff.status != ACTIVE_STATUS
            ):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail='Patients can only be assigned to active clinical team members.',
                )

        patient = Patient(
            patient_id=generate_patient_id(),
            name=data.name,
            dob=data.dob,
            gender=data.gender,
            phone=data.phone,
            email=data.email,
            address=data.address,
            status='pending',
            assigned_staff_id=assigned_staff.id if assigned_staff else None,
            assigned_doctor=assigned_staff.display_name if assigned_staff else None,
            report_access_staff_ids=[],
            registered_at=datetime.now(),
        )
        if assigned_staff:
            grant_report_access(patient, assigned_staff.id)

        patient = PatientRepository(db).add(patient)
        logger.info('Patient %s registered by staff %s.', patient.patient_id, current_staff.id)

        return patient
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('', response_model=list[PatientResponse])
def list_patients(
    staff_id: int | None = Query(default=None),
    patient_status: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    del current_staff
    ensure_database_ready()

    normalized_status = None
    if patient_status:
        normalized_status = patient_status.strip().lower()
        if normalized_status not in PATIENT_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Invalid patient status.',
            )

    try:
        patients = PatientRepository(db).list(staff_id=staff_id, status=normalized_status)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if staff_id is not None and not patients:
        logger.warning('No patients are assigned to or shared with staff %s.', staff_id)

    return patients


@router.get('/{patient_id}', response_model=PatientResponse)
def get_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    del current_staff
    ensure_database_ready()

    try:
        return get_patient_or_404(db, patient_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{patient_id}/report-access', response_model=ReportAccessResponse)
def get_report_access(
    patient_id: str,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(get_current_staff),
):
    ensure_database_ready()

    try:
        patient = get_patient_or_404(db, patient_id)
        return ReportAccessResponse(
            patient_id=patient.patient_id,
            staff_id=current_staff.id,
            has_access=can_access_reports(patient, current_staff),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
