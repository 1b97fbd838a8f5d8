class BookingError(Exception):
    """Base class for errors surfaced at the HTTP boundary."""

    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"detail": self.message, "error": type(self).__name__}
        body.update(self.extra)
        return body


class ValidationFailed(BookingError):
    status_code = 400


class MalformedSlot(ValidationFailed):
    pass


class SlotUnavailable(BookingError):
    status_code = 409

    def __init__(self, message: str, is_temporary_hold: bool = False, **extra):
        super().__init__(message, isTemporaryHold=is_temporary_hold, **extra)
        self.is_temporary_hold = is_temporary_hold


class NotFound(BookingError):
    status_code = 404


class GroundNotFound(NotFound):
    pass


class Unauthorized(BookingError):
    status_code = 401


class Forbidden(BookingError):
    status_code = 403


class GatewayUnavailable(BookingError):
    status_code = 502

    def __init__(self, message: str, status_code: int = 502, **extra):
        super().__init__(message, **extra)
        self.status_code = status_code


class StoreUnavailable(BookingError):
    status_code = 503
