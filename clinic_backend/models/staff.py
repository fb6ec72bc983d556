"""Staff model definitions."""

from sqlalchemy import Column, DateTime, Integer, String
from clinic_backend.database import Base


class Staff(Base):
    """Represents a clinic staff member."""
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    display_name = Column(String)
    hashed_password = Column(String)
    role = Column(String)  # admin/front_desk/clinical_team
    status = Column(String, default="active")  # active/inactive
    availability_updated_at = Column(DateTime)
