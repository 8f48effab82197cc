"""Slot reservation: turn one open availability slot into one confirmed booking.

All coordination happens in the database. The conditional update in
``availability_store.try_mark_booked`` is the only admission gate; of any
number of concurrent callers targeting one slot, exactly one sees a row
changed and the rest fail with ``SlotUnavailableError``.

Two strategies implement the same contract:

* ``StoredRoutineStrategy`` runs the ``book_from_slot`` database routine, which
  marks the slot, re-checks for a duplicate and inserts the booking as one
  statement. Preferred wherever the routine is installed.
* ``ConditionalUpdateStrategy`` performs the same steps as separate
  round-trips and reopens the slot if the booking insert fails.

``detect_reservation_strategy`` picks one at startup.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core.errors import BookingValidationError, InternalServiceError, SlotUnavailableError
from backend.core.time_utils import minutes_between, to_utc_naive
from backend.database import BOOKING_ROUTINE_NAME, booking_routine_available
from backend.models.booking import BOOKING_CONFIRMED, Booking
from backend.services import availability_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationRequest:
    provider_code: str
    client_id: str
    availability_id: int | None = None
    start_time: datetime | None = None
    duration_minutes: int | None = None

    def validated(self) -> 'ReservationRequest':
        provider_code = (self.provider_code or '').strip()
        client_id = (self.client_id or '').strip()
        if not provider_code:
            raise BookingValidationError('providerCode is required.')
        if not client_id:
            raise BookingValidationError('clientId is required.')

        start_time = to_utc_naive(self.start_time) if self.start_time is not None else None
        if self.availability_id is None:
            if start_time is None or self.duration_minutes is None:
                raise BookingValidationError('startUTC and durationMins are required when availabilityId is absent.')
        if self.duration_minutes is not None and self.duration_minutes < 1:
            raise BookingValidationError('durationMins must be at least 1.')

        return ReservationRequest(
            provider_code=provider_code,
            client_id=client_id,
            availability_id=self.availability_id,
            start_time=start_time,
            duration_minutes=self.duration_minutes,
        )


def find_confirmed_booking(
    db: Session,
    client_id: str,
    provider_code: str,
    start_time: datetime,
) -> Booking | None:
    return db.query(Booking).filter(
        Booking.client_id == client_id,
        Booking.provider_code == provider_code,
        Booking.start_time == start_time,
        Booking.status == BOOKING_CONFIRMED,
    ).order_by(Booking.id.asc()).first()


class ReservationStrategy:
    name = 'base'

    def reserve(
        self,
        db: Session,
        slot_id: int,
        provider_code: str,
        client_id: str,
        duration_minutes: int | None = None,
    ) -> Booking:
        raise NotImplementedError


class ConditionalUpdateStrategy(ReservationStrategy):
    name = 'conditional'

    def reserve(
        self,
        db: Session,
        slot_id: int,
        provider_code: str,
        client_id: str,
        duration_minutes: int | None = None,
    ) -> Booking:
        try:
            updated = availability_store.try_mark_booked(db, slot_id, provider_code)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Conditional update failed for slot %s', slot_id)
            raise InternalServiceError() from exc

        if updated != 1:
            # Zero rows: booked, missing or another provider's. Anything else is ambiguous.
            if updated:
                logger.error('Conditional update on slot %s changed %s rows', slot_id, updated)
            logger.info('Slot %s unavailable for client %s', slot_id, client_id)
            raise SlotUnavailableError()

        try:
            slot = availability_store.get_slot(db, slot_id)
            existing = find_confirmed_booking(db, client_id, provider_code, slot.start_time)
            if existing is not None:
                logger.info('Returning existing booking %s for slot %s', existing.id, slot_id)
                return existing

            booking = Booking(
                provider_code=provider_code,
                client_id=client_id,
                start_time=slot.start_time,
                duration_minutes=duration_minutes or minutes_between(slot.start_time, slot.end_time),
                status=BOOKING_CONFIRMED,
                availability_id=slot.id,
            )
            db.add(booking)
            db.commit()
            db.refresh(booking)
        except IntegrityError as exc:
            db.rollback()
            existing = self._find_duplicate(db, slot_id, provider_code, client_id)
            if existing is not None:
                return existing
            self._release(db, slot_id)
            logger.warning('Booking insert for slot %s conflicted', slot_id)
            raise InternalServiceError() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Booking insert failed for slot %s', slot_id)
            self._release(db, slot_id)
            raise InternalServiceError() from exc

        logger.info('Reserved slot %s as booking %s for client %s', slot_id, booking.id, client_id)
        return booking

    @staticmethod
    def _find_duplicate(db: Session, slot_id: int, provider_code: str, client_id: str) -> Booking | None:
        try:
            slot = availability_store.get_slot(db, slot_id)
            if slot is None:
                return None
            return find_confirmed_booking(db, client_id, provider_code, slot.start_time)
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Duplicate lookup failed for slot %s', slot_id)
            return None

    @staticmethod
    def _release(db: Session, slot_id: int) -> None:
        try:
            availability_store.reopen_slot(db, slot_id)
            db.commit()
            logger.info('Reopened slot %s after failed booking insert', slot_id)
        except SQLAlchemyError:
            db.rollback()
            logger.critical(
                'Could not reopen slot %s after failed booking insert; '
                'slot is booked with no booking and needs manual reconciliation',
                slot_id,
                exc_info=True,
            )


class StoredRoutineStrategy(ReservationStrategy):
    name = 'routine'

    def reserve(
        self,
        db: Session,
        slot_id: int,
        provider_code: str,
        client_id: str,
        duration_minutes: int | None = None,
    ) -> Booking:
        try:
            row = db.execute(
                text(
                    f'SELECT id FROM {BOOKING_ROUTINE_NAME}'
                    '(:provider_code, :availability_id, :client_id, :duration_minutes)'
                ),
                {
                    'provider_code': provider_code,
                    'availability_id': slot_id,
                    'client_id': client_id,
                    'duration_minutes': duration_minutes,
                },
            ).first()
            db.commit()
        except DBAPIError as exc:
            db.rollback()
            if 'slot_unavailable' in str(exc.orig):
                logger.info('Slot %s unavailable for client %s', slot_id, client_id)
                raise SlotUnavailableError() from exc
            logger.exception('Reservation routine failed for slot %s', slot_id)
            raise InternalServiceError() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Reservation routine failed for slot %s', slot_id)
            raise InternalServiceError() from exc

        if row is None or row.id is None:
            raise SlotUnavailableError()

        booking = db.get(Booking, row.id)
        if booking is None:
            raise SlotUnavailableError()

        logger.info('Reserved slot %s as booking %s for client %s', slot_id, booking.id, client_id)
        return booking


def detect_reservation_strategy(engine: Engine, preference: str = 'auto') -> ReservationStrategy:
    if preference == 'conditional':
        strategy = ConditionalUpdateStrategy()
    elif preference == 'routine':
        if not booking_routine_available(engine):
            raise RuntimeError(f'RESERVATION_STRATEGY=routine but {BOOKING_ROUTINE_NAME} is not installed.')
        strategy = StoredRoutineStrategy()
    else:
        try:
            routine_available = booking_routine_available(engine)
        except SQLAlchemyError:
            logger.warning('Could not look up %s; using conditional updates', BOOKING_ROUTINE_NAME, exc_info=True)
            routine_available = False
        strategy = StoredRoutineStrategy() if routine_available else ConditionalUpdateStrategy()

    logger.info('Using %s reservation strategy', strategy.name)
    return strategy


class SlotReservationService:
    def __init__(self, strategy: ReservationStrategy) -> None:
        self.strategy = strategy

    def create(self, db: Session, request: ReservationRequest) -> Booking:
        request = request.validated()

        try:
            if request.availability_id is not None:
                slot = availability_store.get_slot(db, request.availability_id)
                if slot is None or slot.provider_code != request.provider_code:
                    raise SlotUnavailableError()
                existing = find_confirmed_booking(db, request.client_id, request.provider_code, slot.start_time)
                if existing is not None:
                    logger.info('Returning existing booking %s for retried request', existing.id)
                    return existing
                slot_id = slot.id
                duration_minutes = None
            else:
                existing = find_confirmed_booking(db, request.client_id, request.provider_code, request.start_time)
                if existing is not None:
                    logger.info('Returning existing booking %s for retried request', existing.id)
                    return existing
                slot = availability_store.find_open_slot_at(db, request.provider_code, request.start_time)
                if slot is None:
                    raise SlotUnavailableError()
                slot_id = slot.id
                duration_minutes = request.duration_minutes
            # End the read transaction before the conditional update.
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Slot lookup failed for provider %s', request.provider_code)
            raise InternalServiceError() from exc

        return self.strategy.reserve(
            db,
            slot_id=slot_id,
            provider_code=request.provider_code,
            client_id=request.client_id,
            duration_minutes=duration_minutes,
        )
