"""
QuickBooks webhook ingestion
Turns Intuit change notifications into local payment-status updates. Read only
towards QuickBooks: the invoice is fetched and mapped back, nothing is written
remotely.
"""

import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from .client import QuickBooksClient
from .invoice_mapper import InvoiceStateMapper
from .repository import QuickBooksRepository
from .schemas import WebhookPayload, WebhookResult
from .tokens import TokenManager

logger = logging.getLogger(__name__)


def invoice_events(payload: WebhookPayload) -> list[tuple[str, str]]:
    """Unique (realmId, invoice id) pairs in delivery order"""
    seen: set[tuple[str, str]] = set()
    events = []
    for notification in payload.eventNotifications:
        if notification.dataChangeEvent is None:
            continue
        for entity in notification.dataChangeEvent.entities:
            if entity.name != "Invoice":
                continue
            key = (notification.realmId, entity.id)
            if key not in seen:
                seen.add(key)
                events.append(key)
    return events


class WebhookIngestionHandler:
    def __init__(
        self,
        db: Session,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.db = db
        self.token_manager = token_manager
        self.http_client = http_client

    async def handle(self, payload: WebhookPayload) -> WebhookResult:
        result = WebhookResult()
        for realm_id, invoice_id in invoice_events(payload):
            result.processed += 1
            await self._handle_invoice(realm_id, invoice_id, result)

        logger.info(
            f"✅ QuickBooks webhook processed={result.processed} updated={result.updated} "
            f"unmatched={result.unmatched} failed={result.failed}"
        )
        return result

    async def _handle_invoice(self, realm_id: str, invoice_id: str, result: WebhookResult) -> None:
        matched = False
        for integration in QuickBooksRepository.get_integrations_for_realm(self.db, realm_id):
            orders = QuickBooksRepository.get_orders_by_invoice_id(self.db, integration.user_id, invoice_id)
            if not orders:
                continue
            matched = True
            try:
                access_token = await self.token_manager.get_access_token(integration, self.db)
                async with QuickBooksClient(
                    integration.realm_id,
                    access_token,
                    integration.environment,
                    http_client=self.http_client,
                ) as client:
                    mapper = InvoiceStateMapper(self.db, client, integration)
                    for order in orders:
                        if await mapper.pull_invoice(order):
                            result.updated += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Failed to process QuickBooks invoice {invoice_id} (realm {realm_id}): {e}")
                result.failed += 1

        if not matched:
            logger.info(f"No local work order for QuickBooks invoice {invoice_id} (realm {realm_id})")
            result.unmatched += 1
