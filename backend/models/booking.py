"""Booking model definitions."""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Index, String, text

from backend.core.time_utils import utc_now
from backend.database import Base

BOOKING_CONFIRMED = "confirmed"
BOOKING_CANCELED = "canceled"


class Booking(Base):
    """Represents a client's reservation with a provider."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    provider_code = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BOOKING_CONFIRMED)
    availability_id = Column(Integer, ForeignKey("availability.id", ondelete="SET NULL"), nullable=True)
    cancel_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    canceled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # One confirmed booking per provider and start instant.
        Index(
            "uq_bookings_confirmed_provider_start",
            "provider_code",
            "start_time",
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
    )
