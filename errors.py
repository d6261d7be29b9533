class InvoicingError(Exception):
    """Base class for errors surfaced to the caller as a JSON error reply."""
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(InvoicingError):
    """Invalid input."""
    status_code = 400


class NotFoundError(InvoicingError):
    """Referenced record not found."""
    status_code = 404


class BackendError(InvoicingError):
    """The database rejected the operation."""
    status_code = 500


class ConflictError(BackendError):
    """The operation conflicts with data written concurrently."""
    status_code = 409
