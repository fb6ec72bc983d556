from datetime import date, time

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from clinic_backend.routes.transfer_routes import (
    TransferCheckRequest,
    TransferRequest,
    check_transfer,
    transfer_appointments,
)

MONDAY = date(2024, 3, 4)


@pytest.fixture
def transfer_setup(clinic_db, database_ready, make_staff, make_patient, make_availability, make_appointment):
    source = make_staff('alex@clinic.test', 'Alex Moore')
    target = make_staff('sam@clinic.test', 'Sam Reid')
    patient = make_patient('PAT-1', 'Jordan Lee', assigned_staff_id=source.id, report_access=[source.id])
    make_availability(target.id, MONDAY, [('09:00', '12:00')])
    make_appointment('APT-B', make_patient('PAT-2', 'Casey Park'), target, MONDAY, time(9, 30))
    clash = make_appointment('APT-1', patient, source, MONDAY, time(9, 30))
    free = make_appointment('APT-2', patient, source, MONDAY, time(10, 0))
    return {'db': clinic_db, 'target': target, 'clash': clash, 'free': free}


def test_transfer_check_request_deduplicates_and_requires_ids() -> None:
    assert TransferCheckRequest(appointment_ids=[3, 1, 3], target_staff_id=2).appointment_ids == [3, 1]

    with pytest.raises(ValidationError):
        TransferCheckRequest(appointment_ids=[], target_staff_id=2)


def test_check_transfer_returns_plan(transfer_setup) -> None:
    plan = check_transfer(
        TransferCheckRequest(
            appointment_ids=[transfer_setup['clash'].id, transfer_setup['free'].id],
            target_staff_id=transfer_setup['target'].id,
        ),
        db=transfer_setup['db'],
    )

    assert plan.target_staff_name == 'Sam Reid'
    assert [conflict.appointment_id for conflict in plan.conflicts] == ['APT-1']


def test_transfer_conflicts_map_to_409_with_conflict_list(transfer_setup) -> None:
    with pytest.raises(HTTPException) as exception_info:
        transfer_appointments(
            TransferRequest(
                appointment_ids=[transfer_setup['clash'].id],
                target_staff_id=transfer_setup['target'].id,
            ),
            db=transfer_setup['db'],
        )

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == {
        'message': 'Select a new time slot for the conflicting appointments.',
        'conflicts': [
            {
                'appointment_id': 'APT-1',
                'date': '2024-03-04',
                'time': '09:30',
                'kind': 'double_booked',
                'reason': 'Therapist already has an appointment at this time',
            },
        ],
    }


def test_transfer_request_errors_keep_their_status(transfer_setup) -> None:
    with pytest.raises(HTTPException) as exception_info:
        check_transfer(
            TransferCheckRequest(appointment_ids=[transfer_setup['free'].id], target_staff_id=999),
            db=transfer_setup['db'],
        )

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Target therapist not found.'


def test_transfer_appointments_with_slot_modification(transfer_setup) -> None:
    clash = transfer_setup['clash']

    result = transfer_appointments(
        TransferRequest(
            appointment_ids=[clash.id, transfer_setup['free'].id],
            target_staff_id=transfer_setup['target'].id,
            slot_modifications={clash.id: {'date': '2024-03-04', 'time': '11:00'}},
        ),
        db=transfer_setup['db'],
    )

    assert result.transferred_appointment_ids == ['APT-1', 'APT-2']
    assert result.modified_appointment_ids == ['APT-1']
    assert result.patient_access_updated == ['PAT-1']
