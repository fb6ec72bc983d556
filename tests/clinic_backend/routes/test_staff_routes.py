from datetime import date, time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from clinic_backend.auth.passwords import verify_password
from clinic_backend.repositories import StaffAvailabilityRepository
from clinic_backend.routes.staff_routes import (
    APPOINTMENTS_ASSIGNED_DETAIL,
    CreateStaffRequest,
    DaySchedule,
    TimeRange,
    copy_day_to_month,
    create_staff,
    get_availability,
    list_available_slots,
    list_staff,
    remove_day_schedule,
    save_day_schedule,
)

MONDAY = date(2024, 3, 4)


@pytest.fixture
def therapist(make_staff):
    return make_staff('sam@clinic.test', 'Sam Reid')


@pytest.fixture
def admin(make_staff):
    return make_staff('admin@clinic.test', 'Clinic Admin', role='admin')


def _schedule(*ranges: tuple[str, str], enabled: bool = True) -> DaySchedule:
    return DaySchedule(enabled=enabled, slots=[TimeRange(start=start, end=end) for start, end in ranges])


def test_time_range_normalizes_and_validates_order() -> None:
    assert TimeRange(start='9:00', end='12:00').start == '09:00'

    with pytest.raises(ValidationError):
        TimeRange(start='12:00', end='09:00')

    with pytest.raises(ValidationError):
        TimeRange(start='noon', end='13:00')


def test_day_schedule_sorts_ranges_and_requires_one_when_enabled() -> None:
    schedule = _schedule(('14:00', '16:00'), ('09:00', '12:00'))

    assert [slot.start for slot in schedule.slots] == ['09:00', '14:00']
    assert DaySchedule(enabled=False).slots == []

    with pytest.raises(ValidationError):
        DaySchedule(enabled=True, slots=[])


def test_create_staff_hashes_password_and_rejects_duplicate_email(clinic_db, database_ready, admin) -> None:
    data = CreateStaffRequest(email=' New@Clinic.test ', display_name='Robin Vale', password='s3cure-pass', role='clinical_team')

    staff = create_staff(data, db=clinic_db, current_staff=admin)

    assert staff.email == 'new@clinic.test'
    assert staff.status == 'active'
    assert verify_password('s3cure-pass', staff.hashed_password)

    with pytest.raises(HTTPException) as exception_info:
        create_staff(data, db=clinic_db, current_staff=admin)

    assert exception_info.value.status_code == 409


def test_list_staff_filters_by_role_and_status(clinic_db, database_ready, make_staff, therapist, admin) -> None:
    make_staff('old@clinic.test', 'Former Therapist', status='inactive')

    active_clinicians = list_staff(role='clinical_team', staff_status='active', db=clinic_db)

    assert [staff.id for staff in active_clinicians] == [therapist.id]


def test_save_day_schedule_stores_sorted_ranges(clinic_db, database_ready, therapist) -> None:
    response = save_day_schedule(
        therapist.id,
        MONDAY,
        _schedule(('14:00', '16:00'), ('09:00', '12:00')),
        db=clinic_db,
        current_staff=therapist,
    )

    calendar = get_availability(therapist.id, month='2024-03', db=clinic_db)

    assert [slot.start for slot in response.slots] == ['09:00', '14:00']
    assert calendar == {
        '2024-03-04': {
            'enabled': True,
            'slots': [{'start': '09:00', 'end': '12:00'}, {'start': '14:00', 'end': '16:00'}],
        },
    }
    clinic_db.refresh(therapist)
    assert therapist.availability_updated_at is not None


def test_save_day_schedule_requires_owner_or_admin(clinic_db, database_ready, make_staff, therapist, admin) -> None:
    colleague = make_staff('alex@clinic.test', 'Alex Moore')

    with pytest.raises(HTTPException) as exception_info:
        save_day_schedule(therapist.id, MONDAY, _schedule(('09:00', '12:00')), db=clinic_db, current_staff=colleague)

    assert exception_info.value.status_code == 403

    response = save_day_schedule(therapist.id, MONDAY, _schedule(('09:00', '12:00')), db=clinic_db, current_staff=admin)
    assert response.enabled


def test_save_day_schedule_refuses_to_drop_booked_appointments(
    clinic_db, database_ready, make_patient, make_availability, make_appointment, therapist
) -> None:
    make_availability(therapist.id, MONDAY, [('09:00', '12:00')])
    patient = make_patient('PAT-1', 'Jordan Lee')
    make_appointment('APT-1', patient, therapist, MONDAY, time(11, 0))

    with pytest.raises(HTTPException) as exception_info:
        save_day_schedule(therapist.id, MONDAY, _schedule(('09:00', '11:00')), db=clinic_db, current_staff=therapist)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == APPOINTMENTS_ASSIGNED_DETAIL

    with pytest.raises(HTTPException):
        save_day_schedule(therapist.id, MONDAY, _schedule(enabled=False), db=clinic_db, current_staff=therapist)

    widened = save_day_schedule(therapist.id, MONDAY, _schedule(('08:00', '13:00')), db=clinic_db, current_staff=therapist)
    assert widened.slots[0].start == '08:00'


def test_get_availability_rejects_malformed_month(clinic_db, database_ready, therapist) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_availability(therapist.id, month='March', db=clinic_db)

    assert exception_info.value.status_code == 400


def test_remove_day_schedule(clinic_db, database_ready, make_patient, make_availability, make_appointment, therapist) -> None:
    make_availability(therapist.id, MONDAY, [('09:00', '12:00')])
    booked_day = date(2024, 3, 5)
    make_availability(therapist.id, booked_day, [('09:00', '12:00')])
    make_appointment('APT-1', make_patient('PAT-1', 'Jordan Lee'), therapist, booked_day, time(10, 0))

    remove_day_schedule(therapist.id, MONDAY, db=clinic_db, current_staff=therapist)

    with pytest.raises(HTTPException) as exception_info:
        remove_day_schedule(therapist.id, MONDAY, db=clinic_db, current_staff=therapist)
    assert exception_info.value.status_code == 404

    with pytest.raises(HTTPException) as exception_info:
        remove_day_schedule(therapist.id, booked_day, db=clinic_db, current_staff=therapist)
    assert exception_info.value.status_code == 409

    assert list(StaffAvailabilityRepository(clinic_db).calendar(therapist.id)) == ['2024-03-05']


def test_copy_day_to_month_skips_days_with_uncovered_appointments(
    clinic_db, database_ready, make_patient, make_availability, make_appointment, therapist
) -> None:
    make_availability(therapist.id, MONDAY, [('09:00', '12:00')])
    busy_day = date(2024, 3, 11)
    make_appointment('APT-1', make_patient('PAT-1', 'Jordan Lee'), therapist, busy_day, time(15, 0))

    response = copy_day_to_month(therapist.id, MONDAY, db=clinic_db, current_staff=therapist)

    calendar = StaffAvailabilityRepository(clinic_db).calendar(therapist.id)
    assert response.skipped_dates == [busy_day]
    assert len(response.copied_dates) == 29
    assert MONDAY not in response.copied_dates
    assert calendar['2024-03-31'] == {'enabled': True, 'slots': [{'start': '09:00', 'end': '12:00'}]}
    assert '2024-03-11' not in calendar


def test_list_available_slots_excludes_booked_times(
    clinic_db, database_ready, make_patient, make_availability, make_appointment, therapist
) -> None:
    make_availability(therapist.id, MONDAY, [('09:00', '11:00')])
    patient = make_patient('PAT-1', 'Jordan Lee')
    make_appointment('APT-1', patient, therapist, MONDAY, time(9, 30))
    make_appointment('APT-2', patient, therapist, MONDAY, time(10, 0), status='cancelled')

    response = list_available_slots(therapist.id, day=MONDAY, duration_minutes=30, db=clinic_db)

    assert response.times == ['09:00', '10:00', '10:30']


def test_list_available_slots_rejects_non_clinical_staff(clinic_db, database_ready, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_available_slots(admin.id, day=MONDAY, duration_minutes=30, db=clinic_db)

    assert exception_info.value.status_code == 400


def test_list_available_slots_respects_appointment_durations(
    clinic_db, database_ready, make_patient, make_availability, make_appointment, therapist
) -> None:
    make_availability(therapist.id, MONDAY, [('09:00', '12:00')])
    make_appointment('APT-1', make_patient('PAT-1', 'Jordan Lee'), therapist, MONDAY, time(9, 0), duration_minutes=60)

    half_hour = list_available_slots(therapist.id, day=MONDAY, duration_minutes=30, db=clinic_db)
    full_hour = list_available_slots(therapist.id, day=MONDAY, duration_minutes=60, db=clinic_db)

    assert half_hour.times == ['10:00', '10:30', '11:00', '11:30']
    assert full_hour.times == ['10:00', '10:30', '11:00']
