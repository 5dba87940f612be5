class ConversionError(Exception):
    """Base error for a failed conversion; carries the HTTP status to answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ConversionError):
    status_code = 400


class MethodNotAllowedError(ValidationError):
    status_code = 405


class RenderError(ConversionError):
    status_code = 500


class StorageError(ConversionError):
    status_code = 500
