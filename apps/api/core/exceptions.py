"""
HTTP error types and the domain-to-HTTP mapping.

Services raise plain domain exceptions and never import FastAPI. Routers
catch the ones they expect and pass them through ``to_api_exception``; the
app renders the result as ``{"detail", "error_code"}``.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class APIException(HTTPException):
    """HTTPException carrying a stable machine-readable ``error_code``."""

    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code_default = "INTERNAL_ERROR"

    def __init__(
        self,
        detail: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail=detail,
            headers=headers,
        )
        self.error_code = error_code or self.error_code_default


class NotFoundError(APIException):
    status_code_default = status.HTTP_404_NOT_FOUND
    error_code_default = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")


class ValidationError(APIException):
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, detail: str, field: Optional[str] = None):
        code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(detail, error_code=code)


class BadRequestError(APIException):
    status_code_default = status.HTTP_400_BAD_REQUEST
    error_code_default = "BAD_REQUEST"


class UnauthorizedError(APIException):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    error_code_default = "UNAUTHORIZED"

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class ConflictError(APIException):
    status_code_default = status.HTTP_409_CONFLICT
    error_code_default = "CONFLICT"


class BadGatewayError(APIException):
    """Provider call failed while serving the request."""

    status_code_default = status.HTTP_502_BAD_GATEWAY
    error_code_default = "UPSTREAM_ERROR"


def to_api_exception(exc: Exception) -> APIException:
    """
    Map a domain exception to its HTTP representation.

    Unknown exceptions are re-raised; this never hides programming errors
    behind a generic 500 body.
    """
    # Imported here to keep core free of service imports at module load.
    from services.credential_lifecycle import SyncInProgressError
    from services.goal_progress.engine import UnsupportedGoalTypeError
    from services.goal_progress.rules import GoalValidationError
    from services.goal_service import GoalConflictError, GoalNotFoundError
    from services.health_data import HealthDataValidationError
    from services.health_providers.errors import (
        AuthExchangeError,
        ProviderFetchError,
        TokenRefreshError,
        UnsupportedProviderError,
    )
    from services.oauth_state import InvalidOAuthStateError
    from services.repositories import DuplicateIntegrationError, IntegrationNotFoundError

    if isinstance(exc, APIException):
        return exc
    if isinstance(exc, IntegrationNotFoundError):
        return NotFoundError("Integration", str(exc.integration_id))
    if isinstance(exc, GoalNotFoundError):
        return NotFoundError("Goal", str(exc.goal_id))
    if isinstance(exc, DuplicateIntegrationError):
        return ConflictError(str(exc), error_code="DUPLICATE_INTEGRATION")
    if isinstance(exc, GoalConflictError):
        return ConflictError(str(exc), error_code="GOAL_CONFLICT")
    if isinstance(exc, SyncInProgressError):
        return ConflictError(str(exc), error_code="SYNC_IN_PROGRESS")
    if isinstance(exc, InvalidOAuthStateError):
        return BadRequestError(str(exc), error_code="INVALID_OAUTH_STATE")
    if isinstance(exc, AuthExchangeError):
        return BadRequestError(str(exc), error_code="AUTH_EXCHANGE_FAILED")
    if isinstance(exc, (TokenRefreshError, ProviderFetchError)):
        return BadGatewayError(str(exc))
    if isinstance(exc, UnsupportedProviderError):
        return ValidationError(str(exc), field="provider")
    if isinstance(exc, (UnsupportedGoalTypeError, GoalValidationError, HealthDataValidationError)):
        field = getattr(exc, "field", None)
        return ValidationError(str(exc), field=field)
    raise exc
