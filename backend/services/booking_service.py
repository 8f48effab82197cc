import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.errors import (
    BookingValidationError,
    InternalServiceError,
    NotFoundError,
    ProviderMismatchError,
    SlotUnavailableError,
)
from backend.core.time_utils import minutes_between, utc_now
from backend.models.availability import Availability
from backend.models.booking import BOOKING_CANCELED, BOOKING_CONFIRMED, Booking
from backend.services import availability_store
from backend.services.reservation import ReservationRequest, SlotReservationService

logger = logging.getLogger(__name__)

BOOKING_STATUSES = {BOOKING_CONFIRMED, BOOKING_CANCELED}


def create_booking(db: Session, reservations: SlotReservationService, request: ReservationRequest) -> Booking:
    return reservations.create(db, request)


def get_booking(db: Session, booking_id: int) -> Booking:
    try:
        booking = db.query(Booking).filter(Booking.id == booking_id).first()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Booking lookup failed for %s', booking_id)
        raise InternalServiceError() from exc

    if booking is None:
        raise NotFoundError('Booking not found.')
    return booking


def list_bookings(
    db: Session,
    provider_code: str | None = None,
    client_id: str | None = None,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    status: str | None = None,
) -> list[Booking]:
    provider_code = (provider_code or '').strip() or None
    client_id = (client_id or '').strip() or None
    if provider_code is None and client_id is None:
        raise BookingValidationError('providerCode or clientId is required.')
    if status is not None and status not in BOOKING_STATUSES:
        raise BookingValidationError('Invalid booking status.')
    if window_start is not None and window_end is not None and window_start > window_end:
        raise BookingValidationError('windowStart must not be after windowEnd.')

    try:
        query = db.query(Booking)
        if provider_code is not None:
            query = query.filter(Booking.provider_code == provider_code)
        if client_id is not None:
            query = query.filter(Booking.client_id == client_id)
        if window_start is not None:
            query = query.filter(Booking.start_time >= window_start)
        if window_end is not None:
            query = query.filter(Booking.start_time <= window_end)
        if status is not None:
            query = query.filter(Booking.status == status)

        return query.order_by(Booking.start_time.asc(), Booking.id.asc()).all()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Booking list failed')
        raise InternalServiceError() from exc


def cancel_booking(db: Session, booking_id: int, reason: str | None = None) -> Booking:
    """Cancel a confirmed booking and reopen its slot.

    The confirmed -> canceled update is the gate: only the caller that changes
    the row reopens the slot, so a repeated or stale cancel never frees a slot
    that has since been booked again.
    """
    booking = get_booking(db, booking_id)

    if booking.status == BOOKING_CANCELED:
        logger.info('Booking %s already canceled', booking_id)
        return booking

    try:
        canceled = db.query(Booking).filter(
            Booking.id == booking_id,
            Booking.status == BOOKING_CONFIRMED,
        ).update(
            {
                'status': BOOKING_CANCELED,
                'cancel_reason': (reason or '').strip() or None,
                'canceled_at': utc_now(),
            },
            synchronize_session=False,
        )
        slot_id = None
        if canceled == 1:
            # Read inside this transaction; a reschedule may have moved the booking.
            slot_id = db.query(Booking.availability_id).filter(Booking.id == booking_id).scalar()
            if slot_id is not None:
                availability_store.reopen_slot(db, slot_id)
        db.commit()
        db.refresh(booking)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Cancel failed for booking %s', booking_id)
        raise InternalServiceError() from exc

    if canceled != 1:
        logger.info('Booking %s was canceled concurrently', booking_id)
        return booking

    logger.info('Canceled booking %s and reopened slot %s', booking_id, slot_id)
    return booking


def reschedule_booking(db: Session, booking_id: int, new_availability_id: int) -> Booking:
    """Move a booking onto another open slot of the same provider.

    The booking's previous slot is left booked.
    """
    booking = get_booking(db, booking_id)
    if booking.status != BOOKING_CONFIRMED:
        raise BookingValidationError('Only confirmed bookings can be rescheduled.')

    try:
        slot = availability_store.get_slot(db, new_availability_id)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Slot lookup failed for %s', new_availability_id)
        raise InternalServiceError() from exc

    if slot is None:
        raise SlotUnavailableError()
    if slot.provider_code != booking.provider_code:
        raise ProviderMismatchError()

    previous_slot_id = booking.availability_id
    new_start = slot.start_time
    new_duration = minutes_between(slot.start_time, slot.end_time)

    try:
        updated = availability_store.try_mark_booked(db, slot.id, booking.provider_code)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Conditional update failed for slot %s', new_availability_id)
        raise InternalServiceError() from exc

    if updated != 1:
        logger.info('Reschedule target %s unavailable for booking %s', new_availability_id, booking_id)
        raise SlotUnavailableError()

    try:
        moved = db.query(Booking).filter(
            Booking.id == booking_id,
            Booking.status == BOOKING_CONFIRMED,
        ).update(
            {
                'start_time': new_start,
                'duration_minutes': new_duration,
                'availability_id': new_availability_id,
            },
            synchronize_session=False,
        )
        if moved == 1:
            db.commit()
            db.refresh(booking)
        else:
            db.rollback()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Reschedule update failed for booking %s', booking_id)
        _release_after_failed_reschedule(db, new_availability_id)
        raise InternalServiceError() from exc

    if moved != 1:
        logger.info('Booking %s was canceled before reschedule to slot %s', booking_id, new_availability_id)
        _release_after_failed_reschedule(db, new_availability_id)
        raise BookingValidationError('Only confirmed bookings can be rescheduled.')

    logger.info(
        'Rescheduled booking %s from slot %s to slot %s',
        booking_id,
        previous_slot_id,
        new_availability_id,
    )
    return booking


def _release_after_failed_reschedule(db: Session, slot_id: int) -> None:
    try:
        availability_store.reopen_slot(db, slot_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.critical(
            'Could not reopen slot %s after failed reschedule; needs manual reconciliation',
            slot_id,
            exc_info=True,
        )


def next_open_slot(db: Session, provider_code: str) -> Availability | None:
    """Earliest upcoming open slot, offered to a client who just lost a race."""
    try:
        slots = availability_store.list_open_slots(db, provider_code, utc_now(), None, limit=1)
    except SQLAlchemyError:
        db.rollback()
        logger.warning('Next open slot lookup failed for provider %s', provider_code, exc_info=True)
        return None
    return slots[0] if slots else None


def recent_booking_for_client(db: Session, client_id: str, since: datetime) -> Booking | None:
    try:
        return db.query(Booking).filter(
            Booking.client_id == client_id,
            Booking.status == BOOKING_CONFIRMED,
            Booking.created_at >= since,
        ).order_by(Booking.created_at.desc()).first()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Recent booking lookup failed for client %s', client_id)
        raise InternalServiceError() from exc

