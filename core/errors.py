"""Typed errors raised by the messaging services.

Each error is an ``HTTPException`` so services can raise them directly and
FastAPI renders them without extra handlers. The ``code`` is echoed in the
``X-Error-Code`` header for clients that branch on it.
"""

from typing import Optional

from fastapi import HTTPException, status


class ChatError(HTTPException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "ERROR"

    def __init__(self, detail: str, *, code: Optional[str] = None, headers: Optional[dict] = None):
        self.code = code or self.code
        merged_headers = {"X-Error-Code": self.code}
        if headers:
            merged_headers.update(headers)
        super().__init__(status_code=self.status_code, detail=detail, headers=merged_headers)


class Unauthorized(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ValidationFailed(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION"


class Conflict(ChatError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class RateLimited(ChatError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"


class Unavailable(ChatError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "UNAVAILABLE"
