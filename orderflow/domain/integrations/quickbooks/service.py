"""QuickBooks service - Business logic tying credentials, the API client and sync together"""

import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ....config import QUICKBOOKS_ENVIRONMENT
from ....models import User, WorkOrder
from ....models_quickbooks import QuickBooksIntegration
from .client import QuickBooksClient
from .errors import IntegrationNotFoundError
from .invoice_mapper import InvoiceStateMapper
from .oauth import decrypt_token, exchange_authorization_code, revoke_token
from .reconciler import EntityReconciler, SyncBatch
from .repository import QuickBooksRepository
from .schemas import ConnectionStatus, WebhookPayload, WebhookResult
from .tokens import TokenManager
from .webhooks import WebhookIngestionHandler

logger = logging.getLogger(__name__)


class QuickBooksService:
    """Service layer for the QuickBooks integration"""

    def __init__(
        self,
        db: Session,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.token_manager = token_manager
        self.http_client = http_client
        self.repo = QuickBooksRepository()

    def get_integration(self, user: User) -> QuickBooksIntegration:
        integration = self.repo.get_integration(self.db, user.id)
        if integration is None:
            raise IntegrationNotFoundError()
        return integration

    async def open_client(self, integration: QuickBooksIntegration) -> QuickBooksClient:
        """API client for the integration's company, with a valid access token"""
        access_token = await self.token_manager.get_access_token(integration, self.db)
        return QuickBooksClient(
            integration.realm_id,
            access_token,
            integration.environment or QUICKBOOKS_ENVIRONMENT,
            http_client=self.http_client,
        )

    # Connection lifecycle
    async def connect(self, user: User, code: str, realm_id: str) -> QuickBooksIntegration:
        """Finish the OAuth handshake and store (or overwrite) the credential"""
        tokens = await exchange_authorization_code(code, http_client=self.http_client)

        company_name = None
        try:
            async with QuickBooksClient(
                realm_id, tokens.access_token, QUICKBOOKS_ENVIRONMENT, http_client=self.http_client
            ) as client:
                company_name = (await client.get_company_info()).get("CompanyName")
        except Exception as e:
            logger.warning(f"Failed to fetch company info: {e}")

        integration = self.repo.save_connection(
            self.db,
            user_id=user.id,
            realm_id=realm_id,
            tokens=tokens,
            company_name=company_name,
            environment=QUICKBOOKS_ENVIRONMENT,
        )
        logger.info(f"✅ QuickBooks connected successfully for user: {user.email}")
        return integration

    def get_status(self, user: User) -> ConnectionStatus:
        integration = self.repo.get_integration(self.db, user.id)
        if integration is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            company_name=integration.company_name,
            realm_id=integration.realm_id,
            environment=integration.environment,
            token_state=integration.token_state,
            expires_at=integration.token_expires_at,
            last_sync_at=integration.last_sync_at,
        )

    async def disconnect(self, user: User) -> None:
        integration = self.get_integration(user)
        try:
            # Revoking the refresh token revokes the access token with it
            await revoke_token(decrypt_token(integration.refresh_token), http_client=self.http_client)
        except Exception as e:
            logger.warning(f"⚠️ Could not revoke QuickBooks token for user {user.id}: {e}")
        self.repo.delete_integration(self.db, integration)
        logger.info(f"✅ QuickBooks disconnected for user: {user.email}")

    async def refresh(self, user: User) -> QuickBooksIntegration:
        integration = self.get_integration(user)
        await self.token_manager.force_refresh(integration, self.db)
        return self.get_integration(user)

    async def get_company_info(self, user: User) -> dict:
        integration = self.get_integration(user)
        async with await self.open_client(integration) as client:
            return await client.get_company_info()

    # Sync
    async def sync(self, user: User, sync_type: Optional[str] = None) -> SyncBatch:
        integration = self.get_integration(user)
        async with await self.open_client(integration) as client:
            reconciler = EntityReconciler(self.db, user, client, integration=integration)
            return await reconciler.run(sync_type)

    async def sync_order_status(self, user: User, order: WorkOrder) -> dict:
        """Create the order's invoice if it has none, then push the order status to it"""
        integration = self.get_integration(user)
        async with await self.open_client(integration) as client:
            invoice_created = False
            if not order.quickbooks_invoice_id:
                reconciler = EntityReconciler(self.db, user, client, integration=integration)
                invoice_created = await reconciler.create_invoice_for_order(order)

            mapper = InvoiceStateMapper(self.db, client, integration)
            result = await mapper.push_order_status(order)

        result["invoiceCreated"] = invoice_created
        return result

    async def push_status_if_linked(self, user: User, order: WorkOrder) -> Optional[dict]:
        """
        Push a local status change to QuickBooks when the order has an invoice and
        the user is connected. Returns the push result, or None when nothing was pushed.
        """
        if not order.quickbooks_invoice_id:
            return None
        integration = self.repo.get_integration(self.db, user.id)
        if integration is None:
            return None
        async with await self.open_client(integration) as client:
            return await InvoiceStateMapper(self.db, client, integration).push_order_status(order)

    # Webhooks
    async def handle_webhook(self, payload: WebhookPayload) -> WebhookResult:
        handler = WebhookIngestionHandler(self.db, self.token_manager, self.http_client)
        return await handler.handle(payload)

