"""Error types raised by the store, processor and service layers.

Each error carries the HTTP status it maps to. Errors flagged ``internal``
are logged with their traceback and reach the client only as a generic
message.
"""
from typing import Optional


class ImgDropError(Exception):
    status_code = 500
    internal = False
    public_message = "Internal error"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        if status_code is not None:
            self.status_code = status_code

    @property
    def client_message(self) -> str:
        return self.public_message if self.internal else self.message


class AuthRequired(ImgDropError):
    status_code = 401
    public_message = "AUTH_REQUIRED"


class InvalidCredential(ImgDropError):
    status_code = 401
    public_message = "Invalid username or password"


class ValidationError(ImgDropError):
    status_code = 400
    public_message = "Invalid request"


class RateLimited(ImgDropError):
    status_code = 429
    public_message = "Daily upload limit reached"


class NotFound(ImgDropError):
    status_code = 404
    public_message = "Image not found"


class ServiceBusy(ImgDropError):
    status_code = 503
    public_message = "Server is busy, try again later"


class ProcessingFailure(ImgDropError):
    status_code = 500
    internal = True
    public_message = "Upload failed"


class PersistenceFailure(ImgDropError):
    status_code = 500
    internal = True
    public_message = "Storage failure"
