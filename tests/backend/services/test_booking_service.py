from datetime import datetime, timedelta

import pytest

from backend.core.errors import (
    BookingValidationError,
    NotFoundError,
    ProviderMismatchError,
    SlotUnavailableError,
)
from backend.core.time_utils import utc_now
from backend.models.availability import Availability
from backend.models.booking import BOOKING_CANCELED, BOOKING_CONFIRMED, Booking
from backend.services import availability_store, booking_service
from backend.services.reservation import ConditionalUpdateStrategy, ReservationRequest, SlotReservationService


@pytest.fixture
def reservations() -> SlotReservationService:
    return SlotReservationService(ConditionalUpdateStrategy())


def book(db, reservations: SlotReservationService, slot: Availability, client_id: str = 'client-a') -> Booking:
    return booking_service.create_booking(
        db,
        reservations,
        ReservationRequest(provider_code=slot.provider_code, client_id=client_id, availability_id=slot.id),
    )


def slot_is_booked(db, slot_id: int) -> bool:
    db.expire_all()
    return availability_store.is_reserved(db.get(Availability, slot_id))


def test_cancel_reopens_slot_for_another_client(booking_db, make_slot, reservations) -> None:
    slot = make_slot()
    booking = book(booking_db, reservations, slot, 'client-a')

    canceled = booking_service.cancel_booking(booking_db, booking.id, '  schedule conflict  ')

    assert canceled.status == BOOKING_CANCELED
    assert canceled.cancel_reason == 'schedule conflict'
    assert canceled.canceled_at is not None
    assert slot_is_booked(booking_db, slot.id) is False

    rebooked = book(booking_db, reservations, slot, 'client-b')
    assert rebooked.client_id == 'client-b'
    assert rebooked.status == BOOKING_CONFIRMED
    assert slot_is_booked(booking_db, slot.id) is True


def test_cancel_twice_leaves_reopened_slot_untouched(booking_db, make_slot, reservations) -> None:
    slot = make_slot()
    booking = book(booking_db, reservations, slot, 'client-a')
    booking_service.cancel_booking(booking_db, booking.id)
    book(booking_db, reservations, slot, 'client-b')

    again = booking_service.cancel_booking(booking_db, booking.id, 'duplicate click')

    assert again.status == BOOKING_CANCELED
    assert again.cancel_reason is None
    assert slot_is_booked(booking_db, slot.id) is True


def test_cancel_missing_booking_is_not_found(booking_db) -> None:
    with pytest.raises(NotFoundError):
        booking_service.cancel_booking(booking_db, 404)


def test_cancel_booking_without_slot(booking_db) -> None:
    booking = Booking(
        provider_code='P1',
        client_id='client-a',
        start_time=datetime(2025, 1, 1, 9, 0),
        duration_minutes=50,
        status=BOOKING_CONFIRMED,
    )
    booking_db.add(booking)
    booking_db.commit()

    canceled = booking_service.cancel_booking(booking_db, booking.id)

    assert canceled.status == BOOKING_CANCELED


def test_cancel_stores_reason_as_given(booking_db, make_slot, reservations) -> None:
    booking = book(booking_db, reservations, make_slot())

    canceled = booking_service.cancel_booking(booking_db, booking.id, '  ' + 'x' * 500 + '  ')

    assert canceled.cancel_reason == 'x' * 500


def add_open_slot(db, start_time: datetime, provider_code: str = 'P1') -> Availability:
    slot = Availability(
        provider_code=provider_code,
        start_time=start_time,
        end_time=start_time + timedelta(hours=1),
        is_booked=False,
        status='open',
    )
    db.add(slot)
    db.commit()
    db.refresh(slot)
    return slot


def test_stale_cancel_does_not_reopen_slot_booked_by_another_client(open_session, reservations) -> None:
    setup_db = open_session()
    slot_id = add_open_slot(setup_db, datetime(2025, 1, 1, 9, 0)).id
    booking_id = book(setup_db, reservations, setup_db.get(Availability, slot_id), 'client-a').id

    # This instance read the booking while it was still confirmed.
    stale_db = open_session()
    assert booking_service.get_booking(stale_db, booking_id).status == BOOKING_CONFIRMED

    other_db = open_session()
    booking_service.cancel_booking(other_db, booking_id, 'first cancel')
    rebooked_id = book(other_db, reservations, other_db.get(Availability, slot_id), 'client-b').id

    result = booking_service.cancel_booking(stale_db, booking_id, 'second cancel')

    assert result.status == BOOKING_CANCELED
    assert result.cancel_reason == 'first cancel'
    check_db = open_session()
    assert slot_is_booked(check_db, slot_id) is True
    assert check_db.get(Booking, rebooked_id).status == BOOKING_CONFIRMED
    with pytest.raises(SlotUnavailableError):
        book(check_db, reservations, check_db.get(Availability, slot_id), 'client-c')


def test_reschedule_of_booking_canceled_elsewhere_releases_target_slot(open_session, reservations) -> None:
    setup_db = open_session()
    old_slot_id = add_open_slot(setup_db, datetime(2025, 1, 1, 9, 0)).id
    new_slot_id = add_open_slot(setup_db, datetime(2025, 1, 1, 11, 0)).id
    booking_id = book(setup_db, reservations, setup_db.get(Availability, old_slot_id)).id

    stale_db = open_session()
    assert booking_service.get_booking(stale_db, booking_id).status == BOOKING_CONFIRMED

    booking_service.cancel_booking(open_session(), booking_id)

    with pytest.raises(BookingValidationError):
        booking_service.reschedule_booking(stale_db, booking_id, new_slot_id)

    check_db = open_session()
    assert slot_is_booked(check_db, new_slot_id) is False
    stored = check_db.get(Booking, booking_id)
    assert stored.status == BOOKING_CANCELED
    assert stored.availability_id == old_slot_id
    assert stored.start_time == datetime(2025, 1, 1, 9, 0)


def test_cancel_after_reschedule_reopens_the_current_slot(booking_db, make_slot, reservations) -> None:
    old_slot = make_slot(start_time=datetime(2025, 1, 1, 9, 0))
    new_slot = make_slot(start_time=datetime(2025, 1, 1, 11, 0))
    booking = book(booking_db, reservations, old_slot)
    booking_service.reschedule_booking(booking_db, booking.id, new_slot.id)

    booking_service.cancel_booking(booking_db, booking.id)

    assert slot_is_booked(booking_db, new_slot.id) is False
    assert slot_is_booked(booking_db, old_slot.id) is True


def test_next_open_slot_skips_past_and_booked_slots(booking_db, make_slot) -> None:
    now = utc_now().replace(second=0, microsecond=0)
    make_slot(start_time=now - timedelta(hours=2))
    make_slot(start_time=now + timedelta(hours=1), is_booked=True, status='booked')
    upcoming = make_slot(start_time=now + timedelta(hours=3))
    make_slot(start_time=now + timedelta(hours=5))

    assert booking_service.next_open_slot(booking_db, 'P1').id == upcoming.id
    assert booking_service.next_open_slot(booking_db, 'P2') is None


def test_reschedule_moves_booking_and_keeps_old_slot_booked(booking_db, make_slot, reservations) -> None:
    old_slot = make_slot(start_time=datetime(2025, 1, 1, 9, 0))
    new_slot = make_slot(start_time=datetime(2025, 1, 2, 14, 0), minutes=45)
    booking = book(booking_db, reservations, old_slot)

    moved = booking_service.reschedule_booking(booking_db, booking.id, new_slot.id)

    assert moved.id == booking.id
    assert moved.start_time == datetime(2025, 1, 2, 14, 0)
    assert moved.duration_minutes == 45
    assert moved.availability_id == new_slot.id
    assert slot_is_booked(booking_db, new_slot.id) is True
    assert slot_is_booked(booking_db, old_slot.id) is True


def test_reschedule_to_other_provider_is_rejected(booking_db, make_slot, reservations) -> None:
    booking = book(booking_db, reservations, make_slot(provider_code='P1'))
    other_slot = make_slot(provider_code='P2', start_time=datetime(2025, 1, 2, 9, 0))

    with pytest.raises(ProviderMismatchError):
        booking_service.reschedule_booking(booking_db, booking.id, other_slot.id)

    assert slot_is_booked(booking_db, other_slot.id) is False


def test_reschedule_to_booked_slot_is_unavailable(booking_db, make_slot, reservations) -> None:
    booking = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 1, 9, 0)))
    taken_slot = make_slot(start_time=datetime(2025, 1, 1, 11, 0))
    book(booking_db, reservations, taken_slot, 'client-b')

    with pytest.raises(SlotUnavailableError):
        booking_service.reschedule_booking(booking_db, booking.id, taken_slot.id)

    booking_db.expire_all()
    assert booking_db.get(Booking, booking.id).start_time == datetime(2025, 1, 1, 9, 0)


def test_reschedule_to_missing_slot_is_unavailable(booking_db, make_slot, reservations) -> None:
    booking = book(booking_db, reservations, make_slot())

    with pytest.raises(SlotUnavailableError):
        booking_service.reschedule_booking(booking_db, booking.id, 999)


def test_reschedule_missing_booking_is_not_found(booking_db, make_slot) -> None:
    slot = make_slot()

    with pytest.raises(NotFoundError):
        booking_service.reschedule_booking(booking_db, 404, slot.id)


def test_reschedule_canceled_booking_is_rejected(booking_db, make_slot, reservations) -> None:
    booking = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 1, 9, 0)))
    booking_service.cancel_booking(booking_db, booking.id)
    new_slot = make_slot(start_time=datetime(2025, 1, 1, 11, 0))

    with pytest.raises(BookingValidationError):
        booking_service.reschedule_booking(booking_db, booking.id, new_slot.id)


def test_list_bookings_orders_and_filters(booking_db, make_slot, reservations) -> None:
    late = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 3, 9, 0)), 'client-a')
    early = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 1, 9, 0)), 'client-b')
    middle = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 2, 9, 0)), 'client-a')
    book(booking_db, reservations, make_slot(provider_code='P2', start_time=datetime(2025, 1, 2, 9, 0)), 'client-a')
    booking_service.cancel_booking(booking_db, middle.id)

    by_provider = booking_service.list_bookings(booking_db, provider_code='P1')
    assert [booking.id for booking in by_provider] == [early.id, middle.id, late.id]

    windowed = booking_service.list_bookings(
        booking_db,
        provider_code='P1',
        window_start=datetime(2025, 1, 2, 9, 0),
        window_end=datetime(2025, 1, 3, 9, 0),
    )
    assert [booking.id for booking in windowed] == [middle.id, late.id]

    confirmed_for_client = booking_service.list_bookings(
        booking_db,
        provider_code='P1',
        client_id='client-a',
        status=BOOKING_CONFIRMED,
    )
    assert [booking.id for booking in confirmed_for_client] == [late.id]


@pytest.mark.parametrize(
    'filters',
    [
        {},
        {'provider_code': '  '},
        {'provider_code': 'P1', 'status': 'pending'},
        {'provider_code': 'P1', 'window_start': datetime(2025, 1, 2), 'window_end': datetime(2025, 1, 1)},
    ],
)
def test_list_bookings_rejects_invalid_filters(booking_db, filters: dict) -> None:
    with pytest.raises(BookingValidationError):
        booking_service.list_bookings(booking_db, **filters)


def test_get_booking_missing_is_not_found(booking_db) -> None:
    with pytest.raises(NotFoundError):
        booking_service.get_booking(booking_db, 1)


def test_recent_booking_for_client_ignores_old_and_canceled(booking_db, make_slot, reservations) -> None:
    recent = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 1, 9, 0)))
    old = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 2, 9, 0)))
    canceled = book(booking_db, reservations, make_slot(start_time=datetime(2025, 1, 3, 9, 0)))
    old.created_at = utc_now() - timedelta(days=1)
    booking_db.commit()
    booking_service.cancel_booking(booking_db, canceled.id)

    found = booking_service.recent_booking_for_client(booking_db, 'client-a', utc_now() - timedelta(hours=2))

    assert found.id == recent.id
    assert booking_service.recent_booking_for_client(booking_db, 'client-b', utc_now() - timedelta(hours=2)) is None
