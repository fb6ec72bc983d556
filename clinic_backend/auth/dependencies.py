from collections.abc import Callable

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_backend.auth import jwt_handler
from clinic_backend.database import SessionLocal
from clinic_backend.models.staff import Staff

security = HTTPBearer()

ADMIN_ROLE = "admin"
FRONT_DESK_ROLE = "front_desk"
CLINICAL_TEAM_ROLE = "clinical_team"
STAFF_ROLES = {ADMIN_ROLE, FRONT_DESK_ROLE, CLINICAL_TEAM_ROLE}
ACTIVE_STATUS = "active"


def get_current_staff(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Staff:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    db = SessionLocal()
    try:
        staff = db.query(Staff).filter(Staff.email == email).first()
    finally:
        db.close()
    if staff is None:
        raise HTTPException(status_code=401, detail="User not found")
    if staff.status != ACTIVE_STATUS:
        raise HTTPException(status_code=403, detail="Account is inactive")
    return staff


def ensure_role(staff: Staff, roles: set[str], detail: str) -> None:
    if staff.role not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_roles(*roles: str) -> Callable[..., Staff]:
    allowed = set(roles)

    def dependency(current_staff: Staff = Depends(get_current_staff)) -> Staff:
        ensure_role(current_staff, allowed, "You do not have permission to perform this action.")
        return current_staff

    return dependency
