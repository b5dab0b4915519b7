# errors.py
from fastapi import HTTPException


class ServiceError(HTTPException):
    """Base for errors that map straight onto an HTTP response."""

    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class Unauthorized(ServiceError):
    status_code = 401
    default_detail = "Unauthorized"

    def __init__(self, detail: str = None):
        super().__init__(detail)
        self.headers = {"WWW-Authenticate": "Bearer"}


class Forbidden(ServiceError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(ServiceError):
    status_code = 404
    default_detail = "Not found"


class BadRequest(ServiceError):
    status_code = 400
    default_detail = "Bad request"


class Conflict(ServiceError):
    status_code = 409
    default_detail = "Conflict"


class UpstreamError(ServiceError):
    status_code = 502
    default_detail = "Payment gateway error"


class InternalError(ServiceError):
    status_code = 500
