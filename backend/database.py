import logging

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

BOOKING_ROUTINE_NAME = 'book_from_slot'

BOOKING_ROUTINE_SQL = f"""
CREATE OR REPLACE FUNCTION {BOOKING_ROUTINE_NAME}(
    p_provider_code VARCHAR,
    p_availability_id INTEGER,
    p_client_id VARCHAR,
    p_duration_minutes INTEGER DEFAULT NULL
) RETURNS bookings
LANGUAGE plpgsql
AS $$
DECLARE
    v_slot availability%ROWTYPE;
    v_booking bookings%ROWTYPE;
BEGIN
    UPDATE availability
       SET is_booked = TRUE, status = 'booked'
     WHERE id = p_availability_id
       AND provider_code = p_provider_code
       AND COALESCE(is_booked, FALSE) = FALSE
       AND COALESCE(status, 'open') <> 'booked'
    RETURNING * INTO v_slot;

    IF NOT FOUND THEN
        RAISE EXCEPTION 'slot_unavailable';
    END IF;

    SELECT * INTO v_booking
      FROM bookings
     WHERE client_id = p_client_id
       AND provider_code = p_provider_code
       AND start_time = v_slot.start_time
       AND status = 'confirmed'
     LIMIT 1;

    IF FOUND THEN
        RETURN v_booking;
    END IF;

    INSERT INTO bookings (
        provider_code, client_id, start_time, duration_minutes, status, availability_id, created_at
    ) VALUES (
        p_provider_code,
        p_client_id,
        v_slot.start_time,
        COALESCE(
            p_duration_minutes,
            GREATEST(1, ROUND(EXTRACT(EPOCH FROM (v_slot.end_time - v_slot.start_time)) / 60)::INTEGER)
        ),
        'confirmed',
        v_slot.id,
        NOW() AT TIME ZONE 'utc'
    )
    RETURNING * INTO v_booking;

    RETURN v_booking;
END;
$$;
"""


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    if not database_url:
        raise RuntimeError('DATABASE_URL is not configured.')

    if database_url.startswith('sqlite'):
        engine_options = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in database_url:
            engine_options['poolclass'] = StaticPool
        return create_engine(database_url, echo=echo, **engine_options)

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


def ensure_availability_schema(engine: Engine) -> None:
    inspector = inspect(engine)

    if 'availability' not in inspector.get_table_names():
        return

    # Older deployments carry only one of the two reservation columns.
    existing_columns = {column['name'] for column in inspector.get_columns('availability')}
    migration_steps = [
        ('provider_code', 'ALTER TABLE availability ADD COLUMN provider_code VARCHAR'),
        ('is_booked', 'ALTER TABLE availability ADD COLUMN is_booked BOOLEAN'),
        ('status', 'ALTER TABLE availability ADD COLUMN status VARCHAR'),
        ('created_at', 'ALTER TABLE availability ADD COLUMN created_at TIMESTAMP'),
    ]

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                logger.info('Adding availability.%s column', column_name)
                connection.execute(text(statement))
        connection.execute(
            text('CREATE INDEX IF NOT EXISTS idx_availability_provider_start ON availability(provider_code, start_time)')
        )
        connection.execute(
            text('CREATE INDEX IF NOT EXISTS idx_availability_booked_start ON availability(is_booked, start_time)')
        )


def ensure_booking_schema(engine: Engine) -> None:
    inspector = inspect(engine)

    if 'bookings' not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
    migration_steps = [
        ('availability_id', 'ALTER TABLE bookings ADD COLUMN availability_id INTEGER'),
        ('cancel_reason', 'ALTER TABLE bookings ADD COLUMN cancel_reason VARCHAR'),
        ('created_at', 'ALTER TABLE bookings ADD COLUMN created_at TIMESTAMP'),
        ('canceled_at', 'ALTER TABLE bookings ADD COLUMN canceled_at TIMESTAMP'),
    ]

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                logger.info('Adding bookings.%s column', column_name)
                connection.execute(text(statement))
        connection.execute(
            text('CREATE INDEX IF NOT EXISTS idx_bookings_client_start ON bookings(client_id, start_time)')
        )
        connection.execute(
            text(
                'CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_confirmed_provider_start '
                "ON bookings(provider_code, start_time) WHERE status = 'confirmed'"
            )
        )


def install_booking_routine(engine: Engine) -> bool:
    """Create the atomic reservation routine where the database supports it."""
    if engine.dialect.name != 'postgresql':
        return False

    with engine.begin() as connection:
        connection.execute(text(BOOKING_ROUTINE_SQL))

    logger.info('Installed %s routine', BOOKING_ROUTINE_NAME)
    return True


def booking_routine_available(engine: Engine) -> bool:
    if engine.dialect.name != 'postgresql':
        return False

    with engine.connect() as connection:
        found = connection.execute(
            text('SELECT 1 FROM pg_proc WHERE proname = :name'),
            {'name': BOOKING_ROUTINE_NAME},
        ).first()

    return found is not None
