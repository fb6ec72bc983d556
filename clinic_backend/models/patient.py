"""Patient model definitions."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from clinic_backend.database import Base


class Patient(Base):
    """Represents a registered patient."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    patient_id = Column(String, unique=True, index=True)
    name = Column(String)
    dob = Column(String)
    gender = Column(String)
    phone = Column(String)
    email = Column(String)
    address = Column(String)
    status = Column(String, default="pending")  # pending/ongoing/completed
    assigned_staff_id = Column(Integer, ForeignKey("staff.id"))
    assigned_doctor = Column(String)
    report_access_staff_ids = Column(JSON, default=list)
    registered_at = Column(DateTime)
    transferred_at = Column(DateTime)
