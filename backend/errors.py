class PatrolError(Exception):
    """Base class for scan pipeline rejections. None of these leave a scan record."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(PatrolError):
    code = "invalid_input"


class NotFoundError(PatrolError):
    code = "not_found"


class ForbiddenError(PatrolError):
    """Raised when the QR payload names a different guard than the scanner."""

    code = "not_designated"

    def __init__(self, message: str, *, designated_user: str | None = None):
        super().__init__(message)
        self.designated_user = designated_user
