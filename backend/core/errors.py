"""Error kinds returned by the booking and availability operations."""

from fastapi import status


class BookingError(Exception):
    """Base for structured errors rendered as ``{"error": code, "detail": message}``."""

    code = 'internal_error'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'Unexpected error.'

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def payload(self) -> dict:
        return {'error': self.code, 'detail': self.message}


class BookingValidationError(BookingError):
    code = 'validation'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid request.'


class SlotUnavailableError(BookingError):
    code = 'slot_unavailable'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This time slot is no longer available.'

    def __init__(self, message: str | None = None, next_available: dict | None = None) -> None:
        super().__init__(message)
        self.next_available = next_available

    def payload(self) -> dict:
        payload = super().payload()
        if self.next_available is not None:
            payload['nextAvailable'] = self.next_available
        return payload


class SlotOverlapError(BookingError):
    code = 'slot_overlap'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This time range overlaps an existing availability window.'


class ProviderMismatchError(BookingError):
    code = 'provider_mismatch'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'The new slot belongs to a different provider.'


class NotFoundError(BookingError):
    code = 'not_found'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Not found.'


class InternalServiceError(BookingError):
    """Persistence or network failure; the same request is safe to retry."""

    code = 'internal_error'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = 'Service temporarily unavailable. Please try again.'
