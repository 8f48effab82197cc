from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from backend.core.errors import SlotUnavailableError
from backend.core.time_utils import format_display, get_zone, to_utc_iso, to_utc_naive
from backend.dependencies import get_db, get_llm_client, get_reservation_service
from backend.models.availability import Availability
from backend.models.booking import Booking
from backend.services import assistant, booking_service
from backend.services.llm_client import LLMClient
from backend.services.reservation import ReservationRequest, SlotReservationService

router = APIRouter(tags=['bookings'])

MAX_REASON_LENGTH = 500


class CreateBookingRequest(BaseModel):
    provider_code: str = Field(alias='providerCode')
    client_id: str = Field(alias='clientId')
    availability_id: int | None = Field(default=None, alias='availabilityId')
    start_utc: datetime | None = Field(default=None, alias='startUTC')
    duration_mins: int | None = Field(default=None, alias='durationMins')
    tz: str = 'UTC'

    class Config:
        populate_by_name = True

    @field_validator('provider_code', 'client_id')
    @classmethod
    def strip_identifier(cls, value: str) -> str:
        return value.strip()


class ListBookingsRequest(BaseModel):
    provider_code: str | None = Field(default=None, alias='providerCode')
    client_id: str | None = Field(default=None, alias='clientId')
    window_start: datetime | None = Field(default=None, alias='windowStart')
    window_end: datetime | None = Field(default=None, alias='windowEnd')
    status: str | None = None
    tz: str = 'UTC'

    class Config:
        populate_by_name = True


class CancelBookingRequest(BaseModel):
    booking_id: int = Field(alias='bookingId')
    reason: str | None = None

    class Config:
        populate_by_name = True

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')

        return normalized


class RescheduleBookingRequest(BaseModel):
    booking_id: int = Field(alias='bookingId')
    new_availability_id: int = Field(alias='newAvailabilityId')
    tz: str = 'UTC'

    class Config:
        populate_by_name = True


class BookingResponse(BaseModel):
    id: int
    provider_code: str = Field(alias='providerCode')
    client_id: str = Field(alias='clientId')
    availability_id: int | None = Field(default=None, alias='availabilityId')
    start_utc: str = Field(alias='startUTC')
    end_utc: str = Field(alias='endUTC')
    duration_mins: int = Field(alias='durationMins')
    status: str
    display: str
    time_zone: str = Field(alias='timeZone')

    class Config:
        populate_by_name = True


class BookingEnvelope(BaseModel):
    booking: BookingResponse


class BookingListResponse(BaseModel):
    data: list[BookingResponse]


class CancelBookingResponse(BaseModel):
    booking_id: int
    status: str


class BookingSummaryResponse(BaseModel):
    summary: dict


def booking_payload(booking: Booking, tz: str | None) -> BookingResponse:
    time_zone = get_zone(tz).key
    start_time = booking.start_time
    end_time = start_time + timedelta(minutes=booking.duration_minutes)
    return BookingResponse(
        id=booking.id,
        provider_code=booking.provider_code,
        client_id=booking.client_id,
        availability_id=booking.availability_id,
        start_utc=to_utc_iso(start_time),
        end_utc=to_utc_iso(end_time),
        duration_mins=booking.duration_minutes,
        status=booking.status,
        display=format_display(start_time, time_zone),
        time_zone=time_zone,
    )


def _normalize_window(value: datetime | None) -> datetime | None:
    return to_utc_naive(value) if value is not None else None


@router.post('', response_model=BookingEnvelope)
def create_booking(
    data: CreateBookingRequest,
    db: Session = Depends(get_db),
    reservations: SlotReservationService = Depends(get_reservation_service),
):
    get_zone(data.tz)
    try:
        booking = booking_service.create_booking(
            db,
            reservations,
            ReservationRequest(
                provider_code=data.provider_code,
                client_id=data.client_id,
                availability_id=data.availability_id,
                start_time=data.start_utc,
                duration_minutes=data.duration_mins,
            ),
        )
    except SlotUnavailableError as exc:
        next_slot: Availability | None = booking_service.next_open_slot(db, data.provider_code)
        if next_slot is not None:
            exc.next_available = assistant.slot_option(next_slot, data.tz)
        raise
    return BookingEnvelope(booking=booking_payload(booking, data.tz))


def _list_bookings(data: ListBookingsRequest, db: Session) -> BookingListResponse:
    get_zone(data.tz)
    bookings = booking_service.list_bookings(
        db,
        provider_code=data.provider_code,
        client_id=data.client_id,
        window_start=_normalize_window(data.window_start),
        window_end=_normalize_window(data.window_end),
        status=data.status,
    )
    return BookingListResponse(data=[booking_payload(booking, data.tz) for booking in bookings])


@router.get('', response_model=BookingListResponse)
def list_bookings(
    provider_code: str | None = Query(default=None, alias='providerCode'),
    client_id: str | None = Query(default=None, alias='clientId'),
    window_start: datetime | None = Query(default=None, alias='windowStart'),
    window_end: datetime | None = Query(default=None, alias='windowEnd'),
    status: str | None = Query(default=None),
    tz: str = Query(default='UTC'),
    db: Session = Depends(get_db),
):
    return _list_bookings(
        ListBookingsRequest(
            provider_code=provider_code,
            client_id=client_id,
            window_start=window_start,
            window_end=window_end,
            status=status,
            tz=tz,
        ),
        db,
    )


@router.post('/list', response_model=BookingListResponse)
def list_bookings_from_body(data: ListBookingsRequest, db: Session = Depends(get_db)):
    return _list_bookings(data, db)


@router.post('/cancel', response_model=CancelBookingResponse)
def cancel_booking(data: CancelBookingRequest, db: Session = Depends(get_db)):
    booking = booking_service.cancel_booking(db, data.booking_id, data.reason)
    return CancelBookingResponse(booking_id=booking.id, status=booking.status)


@router.post('/reschedule', response_model=BookingEnvelope)
def reschedule_booking(data: RescheduleBookingRequest, db: Session = Depends(get_db)):
    get_zone(data.tz)
    booking = booking_service.reschedule_booking(db, data.booking_id, data.new_availability_id)
    return BookingEnvelope(booking=booking_payload(booking, data.tz))


@router.get('/{booking_id}', response_model=BookingEnvelope)
def get_booking(booking_id: int, tz: str = Query(default='UTC'), db: Session = Depends(get_db)):
    get_zone(tz)
    return BookingEnvelope(booking=booking_payload(booking_service.get_booking(db, booking_id), tz))


@router.get('/{booking_id}/summary', response_model=BookingSummaryResponse)
def get_booking_summary(
    booking_id: int,
    tz: str = Query(default='UTC'),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
):
    get_zone(tz)
    return BookingSummaryResponse(summary=assistant.session_summary(db, llm, booking_id, tz))
