from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth import jwt_handler
from clinic_backend.auth.dependencies import ACTIVE_STATUS, get_current_staff
from clinic_backend.auth.passwords import verify_password
from clinic_backend.models.staff import Staff
from clinic_backend.routes.common import database_unavailable, get_db

router = APIRouter(tags=['auth'])


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator('email')
    @classmethod
    def normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError('Email is required.')
        return normalized


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'


class CurrentStaffResponse(BaseModel):
    id: int
    email: str
    display_name: str
    role: str


@router.post('/token', response_model=TokenResponse)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    try:
        staff = db.query(Staff).filter(Staff.email == data.email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if staff is None or not verify_password(data.password, staff.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Invalid email or password.',
        )

    if staff.status != ACTIVE_STATUS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Account is inactive.',
        )

    token = jwt_handler.create_access_token(subject=staff.email)
    return TokenResponse(access_token=token)


@router.get('/me', response_model=CurrentStaffResponse)
def me(current_staff: Staff = Depends(get_current_staff)):
    return CurrentStaffResponse(
        id=current_staff.id,
        email=current_staff.email,
        display_name=current_staff.display_name or current_staff.email,
        role=current_staff.role,
    )
