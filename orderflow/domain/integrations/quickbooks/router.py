"""
QuickBooks router - OAuth, connection management, sync and webhook endpoints
"""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from ....auth import get_current_user
from ....config import (
    QUICKBOOKS_CLIENT_ID,
    QUICKBOOKS_CLIENT_SECRET,
    QUICKBOOKS_ENVIRONMENT,
    QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN,
)
from ....models import User
from ....plan_limits import require_feature
from ....webhook_security import verify_intuit_webhook
from .dependencies import get_quickbooks_service
from .errors import QuickBooksAPIError, QuickBooksError
from .oauth import build_authorization_url
from .repository import QuickBooksRepository
from .schemas import (
    ConnectionStatus,
    SyncOrderStatusRequest,
    SyncOrderStatusResponse,
    SyncRequest,
    SyncResponse,
    WebhookPayload,
    WebhookResult,
)
from .service import QuickBooksService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quickbooks", tags=["QuickBooks"])

requires_accounting_sync = require_feature("accounting_sync")


@router.post("/oauth/initiate")
async def initiate_oauth(current_user: User = Depends(get_current_user)):
    """
    Initiate QuickBooks OAuth 2.0 flow
    Returns authorization URL
    """
    if not QUICKBOOKS_CLIENT_ID:
        raise HTTPException(status_code=500, detail="QuickBooks not configured")

    # CSRF state token
    state = secrets.token_urlsafe(32)
    oauth_url = build_authorization_url(state)

    logger.info(f"QuickBooks OAuth initiated for user: {current_user.email}")
    logger.info(f"Environment: {QUICKBOOKS_ENVIRONMENT}")

    return {"oauth_url": oauth_url, "state": state}


@router.get("/callback-handler")
async def oauth_callback_handler(
    code: str,
    realmId: str,
    state: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """
    Complete QuickBooks OAuth 2.0 flow
    Called by frontend after QuickBooks redirects with authorization code
    """
    if not QUICKBOOKS_CLIENT_ID or not QUICKBOOKS_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="QuickBooks not configured")

    logger.info(f"QuickBooks OAuth callback for user: {current_user.email}, realm: {realmId}")
    try:
        integration = await service.connect(current_user, code, realmId)
    except QuickBooksAPIError as e:
        logger.error(f"QuickBooks token exchange failed: {e}")
        raise HTTPException(
            status_code=400, detail=f"Failed to exchange authorization code: {e.message}"
        ) from e
    except Exception as e:
        logger.error(f"QuickBooks OAuth callback error: {str(e)}")
        service.db.rollback()
        raise HTTPException(
            status_code=500, detail="Failed to complete QuickBooks connection"
        ) from e

    return {"success": True, "realm_id": integration.realm_id, "company_name": integration.company_name}


@router.get("/status", response_model=ConnectionStatus)
async def get_status(
    current_user: User = Depends(get_current_user),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """Check if user has QuickBooks connected"""
    return service.get_status(current_user)


@router.post("/disconnect")
async def disconnect(
    current_user: User = Depends(get_current_user),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """Disconnect QuickBooks integration"""
    try:
        await service.disconnect(current_user)
    except QuickBooksError:
        raise
    except Exception as e:
        logger.error(f"QuickBooks disconnect error: {str(e)}")
        service.db.rollback()
        raise HTTPException(status_code=500, detail="Failed to disconnect QuickBooks") from e
    return {"success": True}


@router.post("/refresh")
async def refresh_tokens(
    current_user: User = Depends(get_current_user),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """Force a token refresh"""
    integration = await service.refresh(current_user)
    return {"success": True, "expires_at": integration.token_expires_at}


@router.get("/company-info")
async def get_company_info(
    current_user: User = Depends(get_current_user),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    company_info = await service.get_company_info(current_user)
    return {"companyInfo": company_info}


@router.post("/sync", response_model=SyncResponse)
async def sync(
    data: SyncRequest,
    current_user: User = Depends(requires_accounting_sync),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """
    Run a sync pass. Per-entity failures are reported in results.errors with a
    200; only a failure of the whole pass is an error response.
    """
    try:
        batch = await service.sync(current_user, data.syncType)
    except QuickBooksError:
        raise
    except Exception as e:
        logger.error(f"❌ QuickBooks sync error for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to sync with QuickBooks") from e

    return {
        "success": True,
        "message": (
            f"Sync completed. {batch.customers.created} customers, "
            f"{batch.services.created} services, {batch.invoices.created} invoices created."
        ),
        "results": batch.to_dict(),
    }


@router.post("/sync-order-status", response_model=SyncOrderStatusResponse)
async def sync_order_status(
    data: SyncOrderStatusRequest,
    current_user: User = Depends(requires_accounting_sync),
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """Create the order's invoice when missing and push the order status to QuickBooks"""
    order = QuickBooksRepository.get_order(service.db, data.orderId, current_user.id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    result = await service.sync_order_status(current_user, order)
    return {
        "success": True,
        "orderId": order.id,
        "invoiceId": result["invoiceId"],
        "invoiceCreated": result["invoiceCreated"],
        "state": result["state"],
        "paymentId": result["paymentId"],
        "paymentStatus": result["paymentStatus"],
    }


@router.post("/webhooks", response_model=WebhookResult)
async def quickbooks_webhook(
    request: Request,
    service: QuickBooksService = Depends(get_quickbooks_service),
):
    """
    Intuit change notifications. Verified with the app's verifier token; only
    Invoice entities are acted on.
    """
    if not QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN:
        logger.error("❌ QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN not configured, refusing webhook")
        raise HTTPException(status_code=503, detail="QuickBooks webhooks not configured")

    raw_body = await verify_intuit_webhook(request, QUICKBOOKS_WEBHOOK_VERIFIER_TOKEN)

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning(f"⚠️ Malformed QuickBooks webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook payload") from e

    try:
        return await service.handle_webhook(payload)
    except Exception as e:
        logger.error(f"❌ QuickBooks webhook processing failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to process webhook") from e
