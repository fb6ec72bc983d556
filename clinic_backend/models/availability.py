"""Availability model definitions."""

from sqlalchemy import JSON, Boolean, Column, Date, ForeignKey, Integer, UniqueConstraint
from clinic_backend.database import Base


class StaffAvailability(Base):
    """One staff member's declared schedule for a single calendar date."""
    __tablename__ = "staff_availability"
    __table_args__ = (UniqueConstraint("staff_id", "date", name="uq_staff_availability_staff_date"),)

    id = Column(Integer, primary_key=True)
    staff_id = Column(Integer, ForeignKey("staff.id"), index=True, nullable=False)
    date = Column(Date, nullable=False)
    enabled = Column(Boolean, default=True)
    # Ordered list of {"start": "HH:MM", "end": "HH:MM"}.
    slots = Column(JSON, default=list)
