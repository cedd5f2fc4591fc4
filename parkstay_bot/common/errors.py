"""
Error taxonomy for the ParkStay automation core

Executors catch every error raised by the portal client and classify it
into one of these types. Only AuthenticationError and AnomalyError reach
the user as blocking notifications; everything else ends up in the job log.
"""
from typing import Optional


class ParkStayError(Exception):
    """Base class for all errors raised by the bot"""
    pass


class PortalError(ParkStayError):
    """Raised when a portal request fails in a way that is not retryable"""
    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientPortalError(PortalError):
    """Network failure, timeout or 5xx. Retried by the normal reschedule."""
    pass


class PortalTimeoutError(TransientPortalError):
    """A portal call exceeded its time budget"""
    pass


class BookingConflictError(PortalError):
    """The site was taken between the availability check and the booking"""
    pass


class AuthenticationError(PortalError):
    """Session or credentials rejected by the portal"""
    pass


class AnomalyError(ParkStayError):
    """
    A rebook created the new booking but could not cancel the old one.

    The account now holds two overlapping bookings.
    """
    def __init__(self, message: str, old_reference: str, new_reference: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.old_reference = old_reference
        self.new_reference = new_reference
        self.cause = cause


class QueueWaitTooLongError(ParkStayError):
    """The portal's waiting room is slower than the configured ceiling"""
    def __init__(self, message: str, estimated_wait_seconds: int = 0, position: int = 0):
        super().__init__(message)
        self.estimated_wait_seconds = estimated_wait_seconds
        self.position = position


class ValidationError(ParkStayError):
    """Malformed watch or STQ data, rejected before scheduling"""
    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class EntityNotFoundError(ParkStayError):
    """Requested watch, STQ entry, notification or provider does not exist"""
    pass


class JobAlreadyRunningError(ParkStayError):
    """An execution for this entity is already in flight"""
    pass


class ConfigurationError(ParkStayError):
    """Invalid configuration (including notification provider settings)"""
    pass
