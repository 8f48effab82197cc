from datetime import datetime, timedelta

import pytest

from backend.core.errors import BookingValidationError, NotFoundError, SlotOverlapError, SlotUnavailableError
from backend.models.availability import Availability
from backend.services import availability_store
from backend.services.availability_store import TimeRange


def hour_range(day: int, hour: int, minutes: int = 60) -> TimeRange:
    start_time = datetime(2025, 1, day, hour, 0)
    return TimeRange(start_time=start_time, end_time=start_time + timedelta(minutes=minutes))


def test_add_slots_inserts_open_slots(booking_db) -> None:
    slots = availability_store.add_slots(booking_db, 'P1', [hour_range(1, 9), hour_range(1, 10)])
    booking_db.commit()

    assert [slot.start_time for slot in slots] == [datetime(2025, 1, 1, 9, 0), datetime(2025, 1, 1, 10, 0)]
    assert all(slot.status == 'open' and slot.is_booked is False for slot in slots)


def test_add_slots_rejects_overlap_with_existing_slot(booking_db) -> None:
    availability_store.add_slots(booking_db, 'P1', [hour_range(1, 9)])
    booking_db.commit()

    overlapping = TimeRange(start_time=datetime(2025, 1, 1, 9, 30), end_time=datetime(2025, 1, 1, 10, 30))
    with pytest.raises(SlotOverlapError):
        availability_store.add_slots(booking_db, 'P1', [overlapping])
    booking_db.rollback()

    open_slots = availability_store.list_open_slots(booking_db, 'P1', None, None)
    assert [(slot.start_time, slot.end_time) for slot in open_slots] == [
        (datetime(2025, 1, 1, 9, 0), datetime(2025, 1, 1, 10, 0)),
    ]


def test_add_slots_rejects_whole_batch_when_ranges_overlap_each_other(booking_db) -> None:
    with pytest.raises(SlotOverlapError):
        availability_store.add_slots(
            booking_db,
            'P1',
            [hour_range(1, 8), hour_range(1, 9), hour_range(1, 9, minutes=30)],
        )
    booking_db.rollback()

    assert booking_db.query(Availability).count() == 0


def test_add_slots_allows_adjacent_ranges_and_other_providers(booking_db) -> None:
    availability_store.add_slots(booking_db, 'P1', [hour_range(1, 9)])
    availability_store.add_slots(booking_db, 'P1', [hour_range(1, 10)])
    availability_store.add_slots(booking_db, 'P2', [hour_range(1, 9)])
    booking_db.commit()

    assert booking_db.query(Availability).count() == 3


def test_overlap_check_includes_booked_slots(booking_db, make_slot) -> None:
    make_slot(is_booked=True, status='booked')

    with pytest.raises(SlotOverlapError):
        availability_store.add_slots(booking_db, 'P1', [hour_range(1, 9, minutes=30)])


def test_add_slots_rejects_empty_and_inverted_ranges(booking_db) -> None:
    with pytest.raises(BookingValidationError):
        availability_store.add_slots(booking_db, 'P1', [])

    inverted = TimeRange(start_time=datetime(2025, 1, 1, 10, 0), end_time=datetime(2025, 1, 1, 9, 0))
    with pytest.raises(BookingValidationError):
        availability_store.add_slots(booking_db, 'P1', [inverted])


def test_list_open_slots_filters_orders_and_limits(booking_db, make_slot) -> None:
    third = make_slot(start_time=datetime(2025, 1, 1, 12, 0))
    first = make_slot(start_time=datetime(2025, 1, 1, 9, 0))
    make_slot(start_time=datetime(2025, 1, 1, 10, 0), is_booked=True, status='booked')
    legacy = make_slot(start_time=datetime(2025, 1, 1, 11, 0), is_booked=None, status=None)
    make_slot(start_time=datetime(2025, 1, 1, 13, 0))
    make_slot(provider_code='P2', start_time=datetime(2025, 1, 1, 9, 0))

    windowed = availability_store.list_open_slots(
        booking_db,
        'P1',
        window_start=datetime(2025, 1, 1, 9, 0),
        window_end=datetime(2025, 1, 1, 12, 0),
    )
    assert [slot.id for slot in windowed] == [first.id, legacy.id, third.id]

    limited = availability_store.list_open_slots(booking_db, 'P1', None, None, limit=2)
    assert [slot.id for slot in limited] == [first.id, legacy.id]


def test_try_mark_booked_changes_only_open_slots(booking_db, make_slot) -> None:
    slot = make_slot()

    assert availability_store.try_mark_booked(booking_db, slot.id, 'P2') == 0
    assert availability_store.try_mark_booked(booking_db, slot.id, 'P1') == 1
    assert availability_store.try_mark_booked(booking_db, slot.id, 'P1') == 0
    booking_db.commit()

    assert availability_store.reopen_slot(booking_db, slot.id) == 1
    assert availability_store.reopen_slot(booking_db, slot.id) == 0


def test_edit_slot_moves_open_slot(booking_db, make_slot) -> None:
    slot = make_slot()

    edited = availability_store.edit_slot(
        booking_db,
        slot.id,
        'P1',
        start_time=datetime(2025, 1, 1, 9, 30),
        end_time=None,
    )

    assert edited.start_time == datetime(2025, 1, 1, 9, 30)
    assert edited.end_time == datetime(2025, 1, 1, 10, 0)


def test_edit_slot_rejects_booked_overlapping_and_foreign_slots(booking_db, make_slot) -> None:
    booked = make_slot(is_booked=True, status='booked')
    open_slot = make_slot(start_time=datetime(2025, 1, 1, 11, 0))

    with pytest.raises(SlotUnavailableError):
        availability_store.edit_slot(booking_db, booked.id, 'P1', datetime(2025, 1, 1, 8, 0), None)
    with pytest.raises(SlotOverlapError):
        availability_store.edit_slot(booking_db, open_slot.id, 'P1', datetime(2025, 1, 1, 9, 30), None)
    with pytest.raises(NotFoundError):
        availability_store.edit_slot(booking_db, open_slot.id, 'P2', datetime(2025, 1, 1, 11, 30), None)
    with pytest.raises(BookingValidationError):
        availability_store.edit_slot(booking_db, open_slot.id, 'P1', datetime(2025, 1, 1, 12, 30), None)


def test_remove_slot_deletes_only_open_slots(booking_db, make_slot) -> None:
    booked = make_slot(is_booked=None, status='booked')
    open_slot = make_slot(start_time=datetime(2025, 1, 1, 11, 0))

    with pytest.raises(SlotUnavailableError):
        availability_store.remove_slot(booking_db, booked.id, 'P1')
    with pytest.raises(NotFoundError):
        availability_store.remove_slot(booking_db, open_slot.id, 'P2')

    removed = availability_store.remove_slot(booking_db, open_slot.id, 'P1')
    booking_db.commit()

    assert removed.start_time == datetime(2025, 1, 1, 11, 0)
    assert availability_store.get_slot(booking_db, open_slot.id) is None
    assert availability_store.get_slot(booking_db, booked.id) is not None
