"""Error taxonomy shared by the book ledger, the rental tracker and the rental service.

Every error carries the HTTP status the API layer answers with, so the
handler in ``api.py`` can translate them without knowing each kind.
"""


class RentalServiceError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(RentalServiceError):
    """Referenced book or rental id does not exist."""

    status_code = 404


class ValidationError(RentalServiceError):
    """Malformed or out-of-range input."""

    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class Conflict(RentalServiceError):
    """Duplicate active rental, duplicate ISBN or a lost copy-count race."""

    status_code = 409


class InvalidOperation(RentalServiceError):
    """Operation not allowed in the entity's current state."""

    status_code = 400


class AlreadyReturned(InvalidOperation):
    """Rental has already been returned."""


class InvalidTransition(RentalServiceError):
    """Attempt to move a rental out of the terminal returned state."""

    status_code = 400


class InvariantViolation(RentalServiceError):
    """Internal bookkeeping is inconsistent; reported as a server error."""

    status_code = 500
