"""Appointment model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Time
from clinic_backend.database import Base


class Appointment(Base):
    """Represents a scheduled appointment."""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(String, unique=True, index=True)
    patient_id = Column(String, index=True)
    patient = Column(String)
    staff_id = Column(Integer, ForeignKey("staff.id"), index=True)
    doctor = Column(String)
    date = Column(Date)
    time = Column(Time)
    duration_minutes = Column(Integer, default=30)
    status = Column(String, default="pending")  # pending/ongoing/completed/cancelled
    notes = Column(String)
    created_at = Column(DateTime)
    transferred_from_staff_id = Column(Integer)
    transferred_from = Column(String)
    transferred_at = Column(DateTime)
