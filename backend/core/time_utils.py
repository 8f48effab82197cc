from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.core.errors import BookingValidationError

LOCAL_INPUT_FORMAT = '%Y-%m-%d %H:%M'
DISPLAY_FORMAT = '%b %d (%a) %H:%M'


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo((tz_name or 'UTC').strip() or 'UTC')
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise BookingValidationError(f'Unknown time zone: {tz_name}.') from exc


def to_utc_naive(value: datetime) -> datetime:
    """Stored instants are naive UTC; naive input is taken to already be UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def local_to_utc(local_value: str, tz_name: str | None) -> datetime:
    try:
        wall_clock = datetime.strptime(local_value.strip(), LOCAL_INPUT_FORMAT)
    except ValueError as exc:
        raise BookingValidationError(
            f'Invalid local time "{local_value}". Use YYYY-MM-DD HH:MM.'
        ) from exc

    return to_utc_naive(wall_clock.replace(tzinfo=get_zone(tz_name)))


def to_utc_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace('+00:00', 'Z')


def format_display(value: datetime | None, tz_name: str | None) -> str:
    if value is None:
        return ''
    localized = value.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))
    return f'{localized.strftime(DISPLAY_FORMAT)} {localized.tzname()}'


def minutes_between(start_time: datetime, end_time: datetime) -> int:
    return max(1, round((end_time - start_time) / timedelta(minutes=1)))
