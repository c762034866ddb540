from __future__ import annotations

from fastapi import HTTPException


class AppError(Exception):
    """Base for errors a caller can act on; carries an HTTP status and a stable code."""

    status_code = 400
    code = "APP_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class DiscountRejected(AppError):
    status_code = 400
    code = "DISCOUNT_REJECTED"

    def __init__(self, reason: str, message: str):
        super().__init__(message, code=reason)
        self.reason = reason


class AuthFailed(AppError):
    status_code = 400
    code = "AUTH_FAILED"


class DataIntegrityError(AppError):
    status_code = 400
    code = "INTEGRITY_ERROR"


class GatewayTransient(AppError):
    status_code = 503
    code = "GATEWAY_UNAVAILABLE"


class GatewayError(AppError):
    status_code = 502
    code = "GATEWAY_ERROR"


def to_http(e: AppError) -> HTTPException:
    return HTTPException(
        status_code=e.status_code,
        detail={"code": e.code, "message": str(e)},
    )
