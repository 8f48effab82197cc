import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_provider_code, require_provider
from backend.core.errors import BookingError, BookingValidationError, InternalServiceError
from backend.core.time_utils import format_display, get_zone, local_to_utc, to_utc_iso, to_utc_naive, utc_now
from backend.dependencies import get_db
from backend.models.availability import Availability
from backend.services import availability_store
from backend.services.availability_store import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    STATUS_BOOKED,
    STATUS_OPEN,
    TimeRange,
)

router = APIRouter(tags=['availability'])

logger = logging.getLogger(__name__)

MAX_RANGES_PER_REQUEST = 100


class RangeInput(BaseModel):
    start_local: str | None = Field(default=None, alias='startLocal')
    end_local: str | None = Field(default=None, alias='endLocal')
    tz: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    class Config:
        populate_by_name = True


class AddAvailabilityRequest(BaseModel):
    provider_code: str = Field(alias='providerCode')
    ranges: list[RangeInput]
    tz: str = 'UTC'

    class Config:
        populate_by_name = True

    @field_validator('provider_code')
    @classmethod
    def validate_provider_code(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('providerCode is required.')
        return normalized

    @field_validator('ranges')
    @classmethod
    def validate_ranges(cls, value: list[RangeInput]) -> list[RangeInput]:
        if not value:
            raise ValueError('At least one range is required.')
        if len(value) > MAX_RANGES_PER_REQUEST:
            raise ValueError(f'At most {MAX_RANGES_PER_REQUEST} ranges can be added at once.')
        return value


class ListAvailabilityRequest(BaseModel):
    provider_code: str = Field(alias='providerCode')
    window_start: datetime | None = Field(default=None, alias='windowStart')
    window_end: datetime | None = Field(default=None, alias='windowEnd')
    limit: int = Field(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT)
    tz: str = 'UTC'

    class Config:
        populate_by_name = True


class EditAvailabilityRequest(BaseModel):
    availability_id: int = Field(alias='availabilityId')
    start_local: str | None = Field(default=None, alias='startLocal')
    end_local: str | None = Field(default=None, alias='endLocal')
    tz: str = 'UTC'

    class Config:
        populate_by_name = True


class RemoveAvailabilityRequest(BaseModel):
    availability_id: int = Field(alias='availabilityId')

    class Config:
        populate_by_name = True


class AvailabilitySlotResponse(BaseModel):
    availability_id: int = Field(alias='availabilityId')
    provider_code: str = Field(alias='providerCode')
    start_utc: str = Field(alias='startUTC')
    end_utc: str = Field(alias='endUTC')
    status: str
    display: str
    time_zone: str = Field(alias='timeZone')

    class Config:
        populate_by_name = True


class InvalidRange(BaseModel):
    index: int
    reason: str


class AddAvailabilityResponse(BaseModel):
    data: list[AvailabilitySlotResponse]
    invalids: list[InvalidRange] | None = None


class ListAvailabilityResponse(BaseModel):
    data: list[AvailabilitySlotResponse]
    meta: dict


class SlotEnvelope(BaseModel):
    data: AvailabilitySlotResponse


def slot_payload(slot: Availability, tz: str | None) -> AvailabilitySlotResponse:
    time_zone = get_zone(tz).key
    return AvailabilitySlotResponse(
        availability_id=slot.id,
        provider_code=slot.provider_code,
        start_utc=to_utc_iso(slot.start_time),
        end_utc=to_utc_iso(slot.end_time),
        status=STATUS_BOOKED if availability_store.is_reserved(slot) else STATUS_OPEN,
        display=format_display(slot.start_time, time_zone),
        time_zone=time_zone,
    )


def resolve_range(time_range: RangeInput, default_tz: str) -> TimeRange:
    if time_range.start_local or time_range.end_local:
        if not (time_range.start_local and time_range.end_local):
            raise BookingValidationError('invalid_range')
        range_tz = time_range.tz or default_tz
        start_time = local_to_utc(time_range.start_local, range_tz)
        end_time = local_to_utc(time_range.end_local, range_tz)
    elif time_range.start is not None and time_range.end is not None:
        start_time = to_utc_naive(time_range.start)
        end_time = to_utc_naive(time_range.end)
    else:
        raise BookingValidationError('invalid_range')

    if start_time >= end_time:
        raise BookingValidationError('start>=end')

    return TimeRange(start_time=start_time, end_time=end_time)


def _commit_or_unavailable(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Availability %s failed', action)
        raise InternalServiceError() from exc


@router.post('', response_model=AddAvailabilityResponse, response_model_exclude_none=True)
def add_availability(
    data: AddAvailabilityRequest,
    db: Session = Depends(get_db),
    current_provider_code: str = Depends(get_current_provider_code),
):
    provider_code = require_provider(data.provider_code, current_provider_code)
    get_zone(data.tz)

    valid_ranges: list[TimeRange] = []
    invalids: list[InvalidRange] = []
    for index, time_range in enumerate(data.ranges):
        try:
            valid_ranges.append(resolve_range(time_range, data.tz))
        except BookingValidationError as exc:
            invalids.append(InvalidRange(index=index, reason=exc.message))

    if not valid_ranges:
        raise BookingValidationError('No valid ranges.')

    try:
        slots = availability_store.add_slots(db, provider_code, valid_ranges)
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Availability insert failed for provider %s', provider_code)
        raise InternalServiceError() from exc

    _commit_or_unavailable(db, 'insert')
    logger.info('Provider %s added %s availability slots', provider_code, len(slots))

    return AddAvailabilityResponse(
        data=[slot_payload(slot, data.tz) for slot in slots],
        invalids=invalids or None,
    )


def _list_open_availability(data: ListAvailabilityRequest, db: Session) -> ListAvailabilityResponse:
    provider_code = data.provider_code.strip()
    if not provider_code:
        raise BookingValidationError('providerCode is required.')
    time_zone = get_zone(data.tz).key

    window_start = to_utc_naive(data.window_start) if data.window_start is not None else utc_now()
    window_end = to_utc_naive(data.window_end) if data.window_end is not None else None
    if window_end is not None and window_start > window_end:
        raise BookingValidationError('windowStart must not be after windowEnd.')

    try:
        slots = availability_store.list_open_slots(db, provider_code, window_start, window_end, data.limit)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Availability list failed for provider %s', provider_code)
        raise InternalServiceError() from exc

    return ListAvailabilityResponse(
        data=[slot_payload(slot, time_zone) for slot in slots],
        meta={'providerCode': provider_code, 'timeZone': time_zone, 'count': len(slots)},
    )


@router.get('', response_model=ListAvailabilityResponse)
def list_open_availability(
    provider_code: str = Query(..., alias='providerCode'),
    window_start: datetime | None = Query(default=None, alias='windowStart'),
    window_end: datetime | None = Query(default=None, alias='windowEnd'),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    tz: str = Query(default='UTC'),
    db: Session = Depends(get_db),
):
    return _list_open_availability(
        ListAvailabilityRequest(
            provider_code=provider_code,
            window_start=window_start,
            window_end=window_end,
            limit=limit,
            tz=tz,
        ),
        db,
    )


@router.post('/list', response_model=ListAvailabilityResponse)
def list_open_availability_from_body(data: ListAvailabilityRequest, db: Session = Depends(get_db)):
    return _list_open_availability(data, db)


@router.post('/edit', response_model=SlotEnvelope)
def edit_availability(
    data: EditAvailabilityRequest,
    db: Session = Depends(get_db),
    current_provider_code: str = Depends(get_current_provider_code),
):
    start_time = local_to_utc(data.start_local, data.tz) if data.start_local else None
    end_time = local_to_utc(data.end_local, data.tz) if data.end_local else None
    if start_time is None and end_time is None:
        raise BookingValidationError('startLocal or endLocal is required.')

    try:
        slot = availability_store.edit_slot(db, data.availability_id, current_provider_code, start_time, end_time)
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Availability edit failed for slot %s', data.availability_id)
        raise InternalServiceError() from exc

    _commit_or_unavailable(db, 'edit')
    logger.info('Provider %s edited availability slot %s', current_provider_code, data.availability_id)
    return SlotEnvelope(data=slot_payload(slot, data.tz))


@router.post('/remove', response_model=SlotEnvelope)
def remove_availability(
    data: RemoveAvailabilityRequest,
    db: Session = Depends(get_db),
    current_provider_code: str = Depends(get_current_provider_code),
):
    try:
        slot = availability_store.remove_slot(db, data.availability_id, current_provider_code)
        removed = slot_payload(slot, 'UTC')
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Availability removal failed for slot %s', data.availability_id)
        raise InternalServiceError() from exc

    _commit_or_unavailable(db, 'removal')
    logger.info('Provider %s removed availability slot %s', current_provider_code, data.availability_id)
    return SlotEnvelope(data=removed)
