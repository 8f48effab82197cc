from datetime import datetime, timedelta

import pytest

from backend.database import Base, build_session_factory, create_db_engine
from backend.models.availability import Availability
from backend.models.booking import Booking


@pytest.fixture
def booking_engine():
    engine = create_db_engine('sqlite:///:memory:')
    Base.metadata.create_all(bind=engine, tables=[Availability.__table__, Booking.__table__])
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine, tables=[Booking.__table__, Availability.__table__])
        engine.dispose()


@pytest.fixture
def booking_db(booking_engine):
    db = build_session_factory(booking_engine)()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_slot(booking_db):
    def _make_slot(
        provider_code: str = 'P1',
        start_time: datetime = datetime(2025, 1, 1, 9, 0),
        minutes: int = 60,
        **state,
    ) -> Availability:
        state.setdefault('is_booked', False)
        state.setdefault('status', 'open')
        slot = Availability(
            provider_code=provider_code,
            start_time=start_time,
            end_time=start_time + timedelta(minutes=minutes),
            **state,
        )
        booking_db.add(slot)
        booking_db.commit()
        booking_db.refresh(slot)
        return slot

    return _make_slot


@pytest.fixture
def open_session(tmp_path):
    """Sessions on one file database, each standing in for a separate app instance."""
    engine = create_db_engine(f'sqlite:///{tmp_path / "booking.db"}')
    Base.metadata.create_all(bind=engine, tables=[Availability.__table__, Booking.__table__])
    session_factory = build_session_factory(engine)
    sessions = []

    def _open_session():
        db = session_factory()
        sessions.append(db)
        return db

    try:
        yield _open_session
    finally:
        for db in sessions:
            db.close()
        engine.dispose()
