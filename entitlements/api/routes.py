"""
API Routes - FastAPI endpoints for entitlement operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from structlog import get_logger

from entitlements.api.dependencies import get_account, get_entitlement_service, require_api_key
from entitlements.exceptions import PaymentProviderError, WebhookVerificationError
from entitlements.models.api import (
    BillingResultResponse,
    ConnectionStateResponse,
    EntitlementResponse,
    ProductListResponse,
    ProductResponse,
    PurchaseNotificationRequest,
    PurchaseRequest,
    WebhookResponse,
)
from entitlements.models.domain import AccountIdentity, EntitlementVerdict
from entitlements.services.entitlement_service import EntitlementService

logger = get_logger(__name__)
router = APIRouter()


def _entitlement_response(
    service: EntitlementService, account: AccountIdentity, verdict: EntitlementVerdict | None
) -> EntitlementResponse:
    return EntitlementResponse.from_verdict(
        account.account_id, verdict, service.is_loading(account)
    )


# ============================================================================
# Entitlements
# ============================================================================


@router.get(
    "/v1/entitlements/{account_id}",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_entitlement(
    account: AccountIdentity = Depends(get_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """
    Current entitlement for an account.

    Reconciles cache, ledger and live purchases unless a verification
    completed within the validity window.
    """
    verdict = await service.verify(account)
    return _entitlement_response(service, account, verdict)


@router.post(
    "/v1/entitlements/{account_id}/refresh",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def refresh_entitlement(
    account: AccountIdentity = Depends(get_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """Force a reconciliation, ignoring the validity window."""
    logger.info("entitlement_refresh_requested", account_id=account.account_id)
    verdict = await service.force_refresh(account)
    return _entitlement_response(service, account, verdict)


@router.post(
    "/v1/entitlements/{account_id}/cancellation-check",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def cancellation_check(
    account: AccountIdentity = Depends(get_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """Check the ledger for a cancellation, then reconcile."""
    verdict = await service.check_for_possible_cancellation(account)
    return _entitlement_response(service, account, verdict)


# ============================================================================
# Catalog and Purchases
# ============================================================================


@router.get(
    "/v1/products",
    response_model=ProductListResponse,
    dependencies=[Depends(require_api_key)],
)
async def list_products(
    service: EntitlementService = Depends(get_entitlement_service),
) -> ProductListResponse:
    """Published catalog, ordered Monthly, Annual, Lifetime."""
    products = await service.products()
    return ProductListResponse(products=[ProductResponse.from_product(p) for p in products])


@router.post(
    "/v1/entitlements/{account_id}/purchases",
    response_model=BillingResultResponse,
    dependencies=[Depends(require_api_key)],
)
async def start_purchase(
    request: PurchaseRequest,
    account: AccountIdentity = Depends(get_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> BillingResultResponse:
    """
    Start a purchase flow.

    A rejected flow is reported in the body (ok=false), not as an HTTP error.
    """
    result = await service.purchase(account, request.product_id)
    return BillingResultResponse.from_result(result)


@router.post(
    "/v1/entitlements/{account_id}/purchases/notify",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def notify_purchases(
    request: PurchaseNotificationRequest,
    account: AccountIdentity = Depends(get_account),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """Client-relayed purchase update from the Play Billing client."""
    logger.info(
        "purchase_update_received",
        account_id=account.account_id,
        response_code=request.response_code.name,
        purchase_count=len(request.purchases),
    )
    verdict = await service.notify_purchases(
        account, request.to_result(), [p.to_purchase() for p in request.purchases]
    )
    return _entitlement_response(service, account, verdict)


# ============================================================================
# Provider Connection and Webhooks
# ============================================================================


@router.post(
    "/v1/connection/retry",
    response_model=ConnectionStateResponse,
    dependencies=[Depends(require_api_key)],
)
async def retry_connection(
    service: EntitlementService = Depends(get_entitlement_service),
) -> ConnectionStateResponse:
    """Manually retry the provider connection (resets the attempt counter)."""
    await service.retry_connection()
    state = service.connection.state.value
    return ConnectionStateResponse(
        phase=state.phase.value, attempt=state.attempt, is_ready=service.connection.is_ready()
    )


@router.post("/v1/webhooks/google-play", response_model=WebhookResponse)
async def google_play_webhook(
    request: Request,
    service: EntitlementService = Depends(get_entitlement_service),
) -> WebhookResponse:
    """
    Handle Google Play Real-Time Developer Notifications.

    Pub/Sub push endpoint; the notification is decoded, the purchase is
    fetched from Google Play and routed to the linked account.
    """
    payload = await request.body()

    try:
        event = await service.handle_webhook(payload)
    except WebhookVerificationError as exc:
        logger.warning("google_play_webhook_rejected", error=exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except PaymentProviderError as exc:
        logger.error("google_play_webhook_provider_error", error=exc.message)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message) from exc

    logger.info(
        "google_play_webhook_processed",
        event_id=event.event_id,
        event_type=event.event_type,
    )
    return WebhookResponse(status="processed", event_type=event.event_type)
