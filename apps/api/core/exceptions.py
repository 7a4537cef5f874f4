"""
Typed service errors.

Services raise these directly; main.py renders every one of them as
{"detail": ..., "error_code": ...} with the matching status code.

    NotFoundError          404  NOT_FOUND
    ConflictError          409  CONFLICT            (state moved on: double apply, double undo, re-reject)
    SafetyRejectedError    422  SAFETY_REJECTED     (carries the verdict)
    ValidationError        422  VALIDATION_ERROR[_<FIELD>]
    UnauthorizedError      401  UNAUTHORIZED
    ForbiddenError         403  FORBIDDEN
    StoreUnavailableError  503  STORE_UNAVAILABLE   (retryable)
    AuditWriteError        500  AUDIT_WRITE_FAILED
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base for every error the API reports on purpose."""

    status_code_default: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code_default: str = "INTERNAL_ERROR"

    def __init__(
        self,
        detail: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code or self.status_code_default, detail=detail, headers=headers)
        self.error_code = error_code or self.error_code_default


class NotFoundError(APIException):
    status_code_default = status.HTTP_404_NOT_FOUND
    error_code_default = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")


class ValidationError(APIException):
    """Malformed input. `field` narrows the code, e.g. VALIDATION_ERROR_MAX_HOURS."""

    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail, error_code=f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR")


class UnauthorizedError(APIException):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    error_code_default = "UNAUTHORIZED"

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(APIException):
    status_code_default = status.HTTP_403_FORBIDDEN
    error_code_default = "FORBIDDEN"

    def __init__(self, detail: str = "Access denied"):
        super().__init__(detail)


class ConflictError(APIException):
    status_code_default = status.HTTP_409_CONFLICT
    error_code_default = "CONFLICT"

    def __init__(self, detail: str):
        super().__init__(detail)


class SafetyRejectedError(APIException):
    """Apply blocked by the current policy thresholds."""

    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code_default = "SAFETY_REJECTED"

    def __init__(self, detail: str, verdict: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.verdict = verdict or {}


class StoreUnavailableError(APIException):
    """Durable store I/O failure; safe for the client to retry."""

    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code_default = "STORE_UNAVAILABLE"

    def __init__(self, detail: str = "Store unavailable"):
        super().__init__(detail)


class AuditWriteError(StoreUnavailableError):
    """Audit record could not be written; the surrounding mutation must not commit."""

    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code_default = "AUDIT_WRITE_FAILED"

    def __init__(self, detail: str = "Audit write failed"):
        super().__init__(detail)
