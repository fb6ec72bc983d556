from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import ADMIN_ROLE, CLINICAL_TEAM_ROLE, FRONT_DESK_ROLE, require_roles
from clinic_backend.models.staff import Staff
from clinic_backend.routes.common import database_unavailable, ensure_database_ready, get_db
from clinic_backend.services.transfer import (
    SlotModification,
    TransferConflictError,
    TransferError,
    TransferPlan,
    TransferResult,
    execute_transfer,
    plan_transfer,
)

router = APIRouter(tags=['transfers'])

TRANSFER_ROLES = require_roles(ADMIN_ROLE, CLINICAL_TEAM_ROLE, FRONT_DESK_ROLE)


class TransferCheckRequest(BaseModel):
    appointment_ids: list[int]
    target_staff_id: int

    @field_validator('appointment_ids')
    @classmethod
    def validate_appointment_ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError('Select at least one appointment to transfer.')
        return list(dict.fromkeys(value))


class TransferRequest(TransferCheckRequest):
    slot_modifications: dict[int, SlotModification] = {}
    accept_warnings: bool = False


def transfer_error_to_http(exc: TransferError) -> HTTPException:
    if isinstance(exc, TransferConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                'message': exc.message,
                'conflicts': [conflict.model_dump(mode='json') for conflict in exc.conflicts],
            },
        )
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post('/check', response_model=TransferPlan)
def check_transfer(
    data: TransferCheckRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(TRANSFER_ROLES),
):
    del current_staff
    ensure_database_ready()

    try:
        return plan_transfer(db, data.appointment_ids, data.target_staff_id)
    except TransferError as exc:
        raise transfer_error_to_http(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=TransferResult)
def transfer_appointments(
    data: TransferRequest,
    db: Session = Depends(get_db),
    current_staff: Staff = Depends(TRANSFER_ROLES),
):
    del current_staff
    ensure_database_ready()

    try:
        return execute_transfer(
            db,
            data.appointment_ids,
            data.target_staff_id,
            slot_modifications=data.slot_modifications,
            accept_warnings=data.accept_warnings,
        )
    except TransferError as exc:
        raise transfer_error_to_http(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
