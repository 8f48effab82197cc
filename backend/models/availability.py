"""Availability model definitions."""

from sqlalchemy import Column, Integer, DateTime, Boolean, String

from backend.core.time_utils import utc_now
from backend.database import Base


class Availability(Base):
    """A bookable time range offered by a provider.

    Reservation state is spread over ``is_booked`` and ``status`` for schema
    compatibility; read and write it only through
    ``backend.services.availability_store``.
    """
    __tablename__ = "availability"

    id = Column(Integer, primary_key=True)
    provider_code = Column(String, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_booked = Column(Boolean, nullable=True, default=False)
    status = Column(String, nullable=True, default="open")
    created_at = Column(DateTime, default=utc_now)
