"""
FastAPI Dependencies - Authentication and service access.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, Path, Request, status
from structlog import get_logger

from entitlements.config import settings
from entitlements.exceptions import AuthenticationError
from entitlements.models.domain import AccountIdentity
from entitlements.services.entitlement_service import EntitlementService

logger = get_logger(__name__)


def verify_api_key_value(provided: str | None, expected: str) -> None:
    """
    Check a presented API key against the configured one.

    An empty configured key disables the check.

    Raises:
        AuthenticationError: If the key is missing or wrong
    """
    if not expected:
        return
    if not provided:
        raise AuthenticationError("X-API-Key header required")
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Raises:
        HTTPException 401 if invalid
    """
    try:
        verify_api_key_value(x_api_key, settings.api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


def get_entitlement_service(request: Request) -> EntitlementService:
    """Service built by the application lifespan."""
    service: EntitlementService | None = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement service not available",
        )
    return service


def get_account(
    account_id: str = Path(..., min_length=1, max_length=255),
    x_account_email: str | None = Header(None, description="Account email for purchase linking"),
) -> AccountIdentity:
    """Account identity from the path and optional email header."""
    try:
        return AccountIdentity(account_id=account_id, email=x_account_email or None)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
