import os
from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from clinic_backend.auth.passwords import hash_password  # noqa: E402
from clinic_backend.database import Base  # noqa: E402
from clinic_backend.models.appointment import Appointment  # noqa: E402
from clinic_backend.models.availability import StaffAvailability  # noqa: E402
from clinic_backend.models.patient import Patient  # noqa: E402
from clinic_backend.models.staff import Staff  # noqa: E402
from clinic_backend.repositories import (  # noqa: E402
    AppointmentRepository,
    PatientRepository,
    StaffAvailabilityRepository,
)

TABLES = [Staff.__table__, Patient.__table__, StaffAvailability.__table__, Appointment.__table__]
ROUTE_MODULES = [
    'clinic_backend.routes.appointment_routes',
    'clinic_backend.routes.patient_routes',
    'clinic_backend.routes.staff_routes',
    'clinic_backend.routes.transfer_routes',
]


@pytest.fixture
def clinic_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))


@pytest.fixture(autouse=True)
def clear_subscriptions():
    yield
    for repository in (AppointmentRepository, PatientRepository, StaffAvailabilityRepository):
        repository.feed.clear()


@pytest.fixture
def database_ready(monkeypatch: pytest.MonkeyPatch) -> None:
    for module in ROUTE_MODULES:
        monkeypatch.setattr(f'{module}.ensure_database_ready', lambda: None)


@pytest.fixture
def make_staff(clinic_db):
    def factory(email: str, display_name: str, role: str = 'clinical_team', status: str = 'active', password: str | None = None) -> Staff:
        staff = Staff(
            email=email,
            display_name=display_name,
            role=role,
            status=status,
            hashed_password=hash_password(password) if password else None,
        )
        clinic_db.add(staff)
        clinic_db.commit()
        clinic_db.refresh(staff)
        return staff

    return factory


@pytest.fixture
def make_patient(clinic_db):
    def factory(patient_id: str, name: str, assigned_staff_id: int | None = None, report_access: list[int] | None = None) -> Patient:
        patient = Patient(
            patient_id=patient_id,
            name=name,
            status='pending',
            assigned_staff_id=assigned_staff_id,
            report_access_staff_ids=list(report_access or []),
            registered_at=datetime(2024, 1, 2, 9, 0),
        )
        clinic_db.add(patient)
        clinic_db.commit()
        clinic_db.refresh(patient)
        return patient

    return factory


@pytest.fixture
def make_availability(clinic_db):
    def factory(staff_id: int, day: date, slots: list[tuple[str, str]], enabled: bool = True) -> StaffAvailability:
        row = StaffAvailability(
            staff_id=staff_id,
            date=day,
            enabled=enabled,
            slots=[{'start': start, 'end': end} for start, end in slots],
        )
        clinic_db.add(row)
        clinic_db.commit()
        clinic_db.refresh(row)
        return row

    return factory


@pytest.fixture
def make_appointment(clinic_db):
    def factory(
        appointment_id: str,
        patient: Patient,
        staff: Staff,
        day: date,
        at: time,
        status: str = 'pending',
        duration_minutes: int = 30,
    ) -> Appointment:
        appointment = Appointment(
            appointment_id=appointment_id,
            patient_id=patient.patient_id,
            patient=patient.name,
            staff_id=staff.id,
            doctor=staff.display_name,
            date=day,
            time=at,
            duration_minutes=duration_minutes,
            status=status,
            created_at=datetime(2024, 3, 1, 8, 0),
        )
        clinic_db.add(appointment)
        clinic_db.commit()
        clinic_db.refresh(appointment)
        return appointment

    return factory
