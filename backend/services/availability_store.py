"""Queries and conditional mutations over the ``availability`` table.

This is the only module that reads or writes the reservation columns. A slot
is reserved when ``status == 'booked'`` or ``is_booked`` is true; NULL in
either column counts as open.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from backend.core.errors import BookingValidationError, NotFoundError, SlotOverlapError, SlotUnavailableError
from backend.models.availability import Availability

logger = logging.getLogger(__name__)

STATUS_OPEN = 'open'
STATUS_BOOKED = 'booked'

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200

BOOKED_VALUES = {'is_booked': True, 'status': STATUS_BOOKED}
OPEN_VALUES = {'is_booked': False, 'status': STATUS_OPEN}


@dataclass(frozen=True)
class TimeRange:
    start_time: datetime
    end_time: datetime


def reserved_predicate():
    return or_(
        Availability.status == STATUS_BOOKED,
        Availability.is_booked.is_(True),
    )


def open_predicate():
    return and_(
        or_(Availability.is_booked.is_(None), Availability.is_booked.is_(False)),
        or_(Availability.status.is_(None), Availability.status != STATUS_BOOKED),
    )


def is_reserved(slot: Availability) -> bool:
    return slot.status == STATUS_BOOKED or slot.is_booked is True


def get_slot(db: Session, slot_id: int) -> Availability | None:
    return db.query(Availability).filter(Availability.id == slot_id).first()


def find_open_slot_at(db: Session, provider_code: str, start_time: datetime) -> Availability | None:
    return db.query(Availability).filter(
        Availability.provider_code == provider_code,
        Availability.start_time == start_time,
        open_predicate(),
    ).order_by(Availability.id.asc()).first()


def try_mark_booked(db: Session, slot_id: int, provider_code: str) -> int:
    """Conditional open -> booked update. Returns the number of rows changed."""
    return db.query(Availability).filter(
        Availability.id == slot_id,
        Availability.provider_code == provider_code,
        open_predicate(),
    ).update(BOOKED_VALUES, synchronize_session=False)


def reopen_slot(db: Session, slot_id: int) -> int:
    return db.query(Availability).filter(
        Availability.id == slot_id,
        reserved_predicate(),
    ).update(OPEN_VALUES, synchronize_session=False)


def list_open_slots(
    db: Session,
    provider_code: str,
    window_start: datetime | None,
    window_end: datetime | None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[Availability]:
    query = db.query(Availability).filter(
        Availability.provider_code == provider_code,
        open_predicate(),
    )
    if window_start is not None:
        query = query.filter(Availability.start_time >= window_start)
    if window_end is not None:
        query = query.filter(Availability.start_time <= window_end)

    capped_limit = max(1, min(limit, MAX_LIST_LIMIT))
    return query.order_by(Availability.start_time.asc(), Availability.id.asc()).limit(capped_limit).all()


def find_overlapping_slot(
    db: Session,
    provider_code: str,
    start_time: datetime,
    end_time: datetime,
    exclude_id: int | None = None,
) -> Availability | None:
    query = db.query(Availability).filter(
        Availability.provider_code == provider_code,
        Availability.start_time < end_time,
        Availability.end_time > start_time,
    )
    if exclude_id is not None:
        query = query.filter(Availability.id != exclude_id)
    return query.first()


def _ranges_overlap(first: TimeRange, second: TimeRange) -> bool:
    return first.start_time < second.end_time and first.end_time > second.start_time


def add_slots(db: Session, provider_code: str, ranges: list[TimeRange]) -> list[Availability]:
    """Insert open slots for a provider. Any overlap rejects the whole batch.

    The caller owns the transaction and commits on success.
    """
    if not ranges:
        raise BookingValidationError('At least one valid time range is required.')

    for index, time_range in enumerate(ranges):
        if time_range.start_time >= time_range.end_time:
            raise BookingValidationError('Each range must start before it ends.')
        for other in ranges[:index]:
            if _ranges_overlap(time_range, other):
                raise SlotOverlapError('Requested ranges overlap each other.')
        if find_overlapping_slot(db, provider_code, time_range.start_time, time_range.end_time):
            raise SlotOverlapError()

    slots = [
        Availability(
            provider_code=provider_code,
            start_time=time_range.start_time,
            end_time=time_range.end_time,
            **OPEN_VALUES,
        )
        for time_range in ranges
    ]
    db.add_all(slots)
    db.flush()
    return slots


def edit_slot(
    db: Session,
    slot_id: int,
    provider_code: str,
    start_time: datetime | None,
    end_time: datetime | None,
) -> Availability:
    slot = get_slot(db, slot_id)
    if slot is None or slot.provider_code != provider_code:
        raise NotFoundError('Availability slot not found.')

    new_start = start_time or slot.start_time
    new_end = end_time or slot.end_time
    if new_start >= new_end:
        raise BookingValidationError('Each range must start before it ends.')
    if find_overlapping_slot(db, provider_code, new_start, new_end, exclude_id=slot.id):
        raise SlotOverlapError()

    updated = db.query(Availability).filter(
        Availability.id == slot.id,
        open_predicate(),
    ).update({'start_time': new_start, 'end_time': new_end}, synchronize_session=False)
    if updated != 1:
        raise SlotUnavailableError('Booked slots cannot be edited.')

    db.refresh(slot)
    return slot


def remove_slot(db: Session, slot_id: int, provider_code: str) -> Availability:
    slot = get_slot(db, slot_id)
    if slot is None or slot.provider_code != provider_code:
        raise NotFoundError('Availability slot not found.')

    deleted = db.query(Availability).filter(
        Availability.id == slot.id,
        open_predicate(),
    ).delete(synchronize_session=False)
    if deleted != 1:
        raise SlotUnavailableError('Booked slots cannot be removed. Cancel the booking first.')

    db.expunge(slot)
    return slot
