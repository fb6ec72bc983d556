import logging

import pytest
from fastapi import HTTPException

from clinic_backend.routes.patient_routes import (
    CreatePatientRequest,
    PatientResponse,
    get_patient,
    get_report_access,
    list_patients,
    register_patient,
)


@pytest.fixture
def front_desk(make_staff):
    return make_staff('desk@clinic.test', 'Front Desk', role='front_desk')


def test_register_patient_assigns_clinician_and_grants_report_access(clinic_db, database_ready, make_staff, front_desk) -> None:
    therapist = make_staff('sam@clinic.test', 'Sam Reid')

    patient = register_patient(
        CreatePatientRequest(name='  Jordan   Lee ', email=' Jordan@Mail.test ', assigned_staff_id=therapist.id),
        db=clinic_db,
        current_staff=front_desk,
    )

    assert patient.patient_id.startswith('PAT-')
    assert patient.name == 'Jordan Lee'
    assert patient.email == 'jordan@mail.test'
    assert patient.status == 'pending'
    assert patient.assigned_doctor == 'Sam Reid'
    assert patient.report_access_staff_ids == [therapist.id]


def test_register_patient_rejects_non_clinical_assignee(clinic_db, database_ready, front_desk) -> None:
    with pytest.raises(HTTPException) as exception_info:
        register_patient(
            CreatePatientRequest(name='Jordan Lee', assigned_staff_id=front_desk.id),
            db=clinic_db,
            current_staff=front_desk,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Patients can only be assigned to active clinical team members.'


def test_list_patients_includes_assigned_and_shared_patients(clinic_db, database_ready, make_staff, make_patient) -> None:
    therapist = make_staff('sam@clinic.test', 'Sam Reid')
    colleague = make_staff('alex@clinic.test', 'Alex Moore')
    make_patient('PAT-1', 'Avery Stone', assigned_staff_id=therapist.id)
    make_patient('PAT-2', 'Blake Hart', assigned_staff_id=colleague.id, report_access=[colleague.id, therapist.id])
    make_patient('PAT-3', 'Casey Park', assigned_staff_id=colleague.id, report_access=[colleague.id])

    patients = list_patients(staff_id=therapist.id, patient_status=None, db=clinic_db, current_staff=therapist)

    assert [patient.patient_id for patient in patients] == ['PAT-1', 'PAT-2']


def test_list_patients_returns_empty_list_for_staff_without_patients(
    clinic_db, database_ready, make_staff, make_patient, caplog: pytest.LogCaptureFixture
) -> None:
    therapist = make_staff('sam@clinic.test', 'Sam Reid')
    make_patient('PAT-1', 'Avery Stone')

    with caplog.at_level(logging.WARNING, logger='clinic_backend.routes.patient_routes'):
        patients = list_patients(staff_id=therapist.id, patient_status=None, db=clinic_db, current_staff=therapist)

    assert patients == []
    assert f'No patients are assigned to or shared with staff {therapist.id}.' in caplog.text


def test_list_patients_rejects_unknown_status(clinic_db, database_ready, front_desk) -> None:
    with pytest.raises(HTTPException) as exception_info:
        list_patients(staff_id=None, patient_status='archived', db=clinic_db, current_staff=front_desk)

    assert exception_info.value.status_code == 400


def test_get_patient_returns_404_for_unknown_id(clinic_db, database_ready, front_desk) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_patient('PAT-404', db=clinic_db, current_staff=front_desk)

    assert exception_info.value.status_code == 404


def test_report_access_for_assignee_shared_staff_and_admin(clinic_db, database_ready, make_staff, make_patient) -> None:
    therapist = make_staff('sam@clinic.test', 'Sam Reid')
    colleague = make_staff('alex@clinic.test', 'Alex Moore')
    outsider = make_staff('robin@clinic.test', 'Robin Vale')
    admin = make_staff('admin@clinic.test', 'Clinic Admin', role='admin')
    make_patient('PAT-1', 'Avery Stone', assigned_staff_id=therapist.id, report_access=[therapist.id, colleague.id])

    access = {
        staff.email: get_report_access('PAT-1', db=clinic_db, current_staff=staff).has_access
        for staff in (therapist, colleague, outsider, admin)
    }

    assert access == {
        'sam@clinic.test': True,
        'alex@clinic.test': True,
        'robin@clinic.test': False,
        'admin@clinic.test': True,
    }


def test_patient_response_defaults_missing_report_access() -> None:
    response = PatientResponse(id=1, patient_id='PAT-1', name='Avery Stone', status='pending', report_access_staff_ids=None)

    assert response.report_access_staff_ids == []
